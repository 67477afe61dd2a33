import hashlib
import logging
import os
from datetime import date
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

import config
import database
from cart import Cart
from database import create_document, get_db, get_documents, now_utc, parse_object_id, to_public
from errors import (
    AuthenticationError,
    NotFoundError,
    PersistenceError,
    SignatureVerificationError,
    StoreError,
    ValidationError,
)
from inventory import sync_in_stock
from notifications import dispatch_order_confirmation
from orders import (
    delete_order,
    list_all_orders,
    list_user_orders,
    place_order,
    update_cod_status,
    update_status,
)
from payments import StripeProvider, get_payment_provider
from schemas import Address, PaymentType, Product, User
from webhooks import handle_event

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES = {
    AuthenticationError: 401,
    SignatureVerificationError: 400,
    PersistenceError: 503,
}


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Business failures come back as a success flag, not a transport error."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 200)
    return JSONResponse(status_code=status_code, content={"success": False, "message": str(exc)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ---------------------- Utilities ----------------------

def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def current_user(x_user_token: Optional[str] = Header(None), db: Database = Depends(get_db)) -> Dict[str, Any]:
    if not x_user_token:
        raise AuthenticationError("Login required")
    try:
        user = db["user"].find_one({"_id": parse_object_id(x_user_token)}, {"password_hash": 0})
    except ValidationError:
        raise AuthenticationError("Invalid token")
    if not user:
        raise AuthenticationError("User not found")
    return to_public(user)


def require_seller(x_seller_key: Optional[str] = Header(None)) -> None:
    if x_seller_key != config.SELLER_KEY:
        raise AuthenticationError("Unauthorized")


def find_product(db: Database, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": parse_object_id(product_id)})
    if not product:
        raise NotFoundError("product", product_id)
    return to_public(product)


# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    name: str
    email: str
    password: str


class LoginBody(BaseModel):
    email: str
    password: str


class ProductBody(BaseModel):
    name: str
    description: List[str] = []
    category: str
    price: float = Field(..., ge=0)
    offer_price: float = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    image: List[str] = []


class ProductUpdateBody(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[List[str]] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    offer_price: Optional[float] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)
    image: Optional[List[str]] = None


class StockBody(BaseModel):
    id: str
    in_stock: bool
    quantity: Optional[int] = Field(None, ge=0)


class IdBody(BaseModel):
    id: str


class AddressBody(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipcode: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class CartProductBody(BaseModel):
    product_id: str


class CartQuantityBody(BaseModel):
    product_id: str
    quantity: int


class CartUpdateBody(BaseModel):
    cart_items: Dict[str, int] = {}


class OrderLineBody(BaseModel):
    product_id: str
    quantity: int = 1


class PlaceOrderBody(BaseModel):
    items: List[OrderLineBody] = []
    address_id: Optional[str] = None
    delivery_date: Optional[date] = None


class StatusBody(BaseModel):
    status: str


class CodStatusBody(BaseModel):
    cod_status: str


# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


# ---------------------- Users ----------------------

@app.post("/user/register")
def register(body: RegisterBody, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise ValidationError("Email already registered")
    try:
        user = User(name=body.name, email=body.email, password_hash=hash_password(body.password))
    except PydanticValidationError:
        raise ValidationError("Invalid email")
    token = create_document(db, "user", user)
    return {"success": True, "token": token, "user": {"_id": token, "name": user.name, "email": user.email}}


@app.post("/user/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or user.get("password_hash") != hash_password(body.password):
        raise AuthenticationError("Invalid credentials")
    token = str(user["_id"])
    return {"success": True, "token": token, "user": {"_id": token, "name": user.get("name"), "email": user["email"]}}


@app.get("/user/is-auth")
def is_auth(user: Dict[str, Any] = Depends(current_user)):
    return {"success": True, "user": user}


# ---------------------- Products ----------------------

@app.get("/product/list")
def product_list(db: Database = Depends(get_db)):
    return {"success": True, "products": get_documents(db, "product", sort=[("created_at", -1)])}


@app.get("/product/{product_id}")
def product_by_id(product_id: str, db: Database = Depends(get_db)):
    return {"success": True, "product": find_product(db, product_id)}


@app.post("/product/add", dependencies=[Depends(require_seller)])
def add_product(body: ProductBody, db: Database = Depends(get_db)):
    product = Product(**body.model_dump())
    new_id = create_document(db, "product", product)
    logger.info("Product %s added (%s, qty %s)", new_id, product.name, product.quantity)
    return {"success": True, "message": "Product Added Successfully", "_id": new_id}


@app.post("/product/update", dependencies=[Depends(require_seller)])
def update_product(body: ProductUpdateBody, db: Database = Depends(get_db)):
    product_oid = parse_object_id(body.id)
    fields = body.model_dump(exclude={"id"}, exclude_none=True)
    fields["updated_at"] = now_utc()
    result = db["product"].update_one({"_id": product_oid}, {"$set": fields})
    if result.matched_count == 0:
        raise NotFoundError("product", body.id)
    sync_in_stock(db, product_oid)
    return {"success": True, "message": "Product Updated Successfully"}


@app.post("/product/stock", dependencies=[Depends(require_seller)])
def change_stock(body: StockBody, db: Database = Depends(get_db)):
    if not body.in_stock:
        quantity = 0
    elif not body.quantity:
        quantity = config.RESTOCK_DEFAULT_QUANTITY
    else:
        quantity = body.quantity
    result = db["product"].update_one(
        {"_id": parse_object_id(body.id)},
        {"$set": {"quantity": quantity, "in_stock": quantity > 0, "updated_at": now_utc()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("product", body.id)
    return {"success": True, "message": "Stock Updated", "quantity": quantity}


@app.post("/product/delete", dependencies=[Depends(require_seller)])
def delete_product(body: IdBody, db: Database = Depends(get_db)):
    result = db["product"].delete_one({"_id": parse_object_id(body.id)})
    if result.deleted_count == 0:
        raise NotFoundError("product", body.id)
    return {"success": True, "message": "Product Deleted Successfully"}


# ---------------------- Addresses ----------------------

@app.post("/address/add")
def add_address(body: AddressBody, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    data = body.model_dump()
    missing = [name for name, value in data.items() if not value]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    try:
        address = Address(user_id=user["_id"], **data)
    except PydanticValidationError:
        raise ValidationError("Invalid address")
    new_id = create_document(db, "address", address)
    return {"success": True, "message": "Address saved", "address": to_public(db["address"].find_one({"_id": ObjectId(new_id)}))}


@app.get("/address/get")
def get_addresses(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    addresses = get_documents(db, "address", {"user_id": user["_id"]}, sort=[("created_at", -1)])
    return {"success": True, "addresses": addresses}


# ---------------------- Cart ----------------------

def _cart_products(db: Database, cart: Cart) -> List[Dict[str, Any]]:
    ids = []
    for product_id in cart.items:
        try:
            ids.append(ObjectId(product_id))
        except (InvalidId, TypeError):
            continue
    return [to_public(p) for p in db["product"].find({"_id": {"$in": ids}})]


def _cart_response(db: Database, cart: Cart) -> Dict[str, Any]:
    products = _cart_products(db, cart)
    return {"success": True, "cart_items": cart.to_dict(), "count": cart.count(), "amount": cart.amount(products)}


def _save_cart(db: Database, user: Dict[str, Any], cart: Cart) -> None:
    db["user"].update_one(
        {"_id": ObjectId(user["_id"])},
        {"$set": {"cart_items": cart.to_dict(), "updated_at": now_utc()}},
    )


@app.get("/cart")
def get_cart(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    return _cart_response(db, Cart(user.get("cart_items")))


@app.post("/cart/add")
def add_to_cart(body: CartProductBody, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    cart = Cart(user.get("cart_items"))
    cart.add(find_product(db, body.product_id))
    _save_cart(db, user, cart)
    return _cart_response(db, cart)


@app.post("/cart/remove")
def remove_from_cart(body: CartProductBody, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    cart = Cart(user.get("cart_items"))
    cart.remove(body.product_id)
    _save_cart(db, user, cart)
    return _cart_response(db, cart)


@app.post("/cart/set")
def set_cart_quantity(body: CartQuantityBody, user: Dict[str, Any] = Depends(current_user),
                      db: Database = Depends(get_db)):
    cart = Cart(user.get("cart_items"))
    if body.quantity <= 0:
        cart.items.pop(body.product_id, None)
    else:
        cart.update(find_product(db, body.product_id), body.quantity)
    _save_cart(db, user, cart)
    return _cart_response(db, cart)


@app.post("/cart/update")
def update_cart(body: CartUpdateBody, user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    # last write wins; the client's mapping is clamped to live stock
    cart = Cart(body.cart_items)
    if cart.reconcile(_cart_products(db, cart)):
        logger.info("Cart for user %s adjusted to available stock", user["_id"])
    _save_cart(db, user, cart)
    return _cart_response(db, cart)


# ---------------------- Orders ----------------------

@app.post("/order/cod")
def place_order_cod(body: PlaceOrderBody, background_tasks: BackgroundTasks,
                    user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    placed = place_order(db, user["_id"], body.items, body.address_id, body.delivery_date, PaymentType.COD)
    background_tasks.add_task(dispatch_order_confirmation, db, placed.order)
    return {"success": True, "message": "Order Placed Successfully", "order": placed.order}


@app.post("/order/stripe")
def place_order_stripe(body: PlaceOrderBody, background_tasks: BackgroundTasks,
                       origin: Optional[str] = Header(None),
                       user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db),
                       provider: StripeProvider = Depends(get_payment_provider)):
    placed = place_order(db, user["_id"], body.items, body.address_id, body.delivery_date, PaymentType.ONLINE,
                         provider=provider, origin=origin)
    background_tasks.add_task(dispatch_order_confirmation, db, placed.order)
    return {"success": True, "url": placed.url, "order_id": placed.order["_id"]}


@app.get("/order/user")
def user_orders(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    return {"success": True, "orders": list_user_orders(db, user["_id"])}


@app.get("/order/seller", dependencies=[Depends(require_seller)])
def seller_orders(db: Database = Depends(get_db)):
    return {"success": True, "orders": list_all_orders(db)}


@app.put("/order/{order_id}", dependencies=[Depends(require_seller)])
def update_order(order_id: str, body: StatusBody, db: Database = Depends(get_db)):
    return {"success": True, "message": "Order status updated", "order": update_status(db, order_id, body.status)}


@app.put("/order/{order_id}/cod-status", dependencies=[Depends(require_seller)])
def update_order_cod_status(order_id: str, body: CodStatusBody, db: Database = Depends(get_db)):
    order = update_cod_status(db, order_id, body.cod_status)
    return {"success": True, "message": "COD status updated", "order": order}


@app.delete("/order/{order_id}", dependencies=[Depends(require_seller)])
def remove_order(order_id: str, db: Database = Depends(get_db)):
    result = delete_order(db, order_id)
    return {"success": True, "message": "Order deleted", **result}


# ---------------------- Payment Webhook ----------------------

@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         db: Database = Depends(get_db),
                         provider: StripeProvider = Depends(get_payment_provider)):
    payload = await request.body()
    try:
        event = provider.construct_event(payload, stripe_signature)
    except SignatureVerificationError as e:
        logger.warning("Rejected webhook: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    try:
        outcome = await run_in_threadpool(handle_event, db, event)
    except (NotFoundError, ValidationError) as e:
        logger.warning("Webhook %s (%s) not applied: %s", event.get("id"), event.get("type"), e)
        outcome = "failed"
    logger.info("Webhook %s (%s): %s", event.get("id"), event.get("type"), outcome)
    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
