"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
References between documents are stored as string ids.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "Väntar på betalning"
    PAYMENT_RECEIVED = "Betalning mottagen"
    PROCESSING = "Under behandling"
    SHIPPED = "Skickad"
    DELIVERED = "Levererad"
    CANCELLED = "Avbruten"


class CodStatus(str, Enum):
    NOT_SHIPPED = "Ej skickad"
    SENT_TO_AGENT = "Skickad till ombud"
    AT_AGENT = "Hos ombud"
    READY_FOR_PICKUP = "Redo för upphämtning"
    PICKED_UP = "Upphämtad"
    RETURNED = "Returnerad"


class PaymentType(str, Enum):
    COD = "COD"
    ONLINE = "Online"


class Address(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str
    first_name: str
    last_name: str
    email: EmailStr
    street: str
    city: str
    state: str
    zipcode: str
    country: str
    phone: str


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    cart_items: Dict[str, int] = {}


class Product(BaseModel):
    name: str
    description: List[str] = []
    category: str
    price: float = Field(..., ge=0)
    offer_price: float = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    in_stock: bool = False
    image: List[str] = []

    @model_validator(mode="after")
    def derive_in_stock(self):
        # in_stock always follows quantity
        self.in_stock = self.quantity > 0
        return self


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class CodDetails(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    tracking_number: str
    estimated_delivery: datetime
    cod_amount: float
    cod_status: CodStatus = CodStatus.NOT_SHIPPED


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    items: List[OrderItem]
    amount: float = Field(..., ge=0)
    address_id: str
    payment_type: PaymentType
    delivery_date: datetime
    is_paid: bool = False
    status: OrderStatus = OrderStatus.AWAITING_PAYMENT
    cod_details: Optional[CodDetails] = None
