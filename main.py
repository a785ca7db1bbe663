import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from bson import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import catalog
import orders
from database import create_document, db, ensure_indexes, serialize_doc
from errors import NotFoundError, ShopError
from notifications import JOIN_EVENT, ORDER_STATUS_EVENT, hub
from schemas import Product as ProductSchema, User as UserSchema
from storage import StorageError
from whatsapp import send_order_notification

# Environment / Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
FRONTEND_URL = os.getenv("FRONTEND_URL", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(LOG_LEVEL)),
)
logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes()
    yield


app = FastAPI(title="Baby Shop API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Error envelope -----------------------
@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(PyMongoError)
@app.exception_handler(StorageError)
@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("internal_error", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Utility functions
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(BaseModel):
    username: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    role: str
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def public_user(user: dict) -> dict:
    user = serialize_doc(user)
    user.pop("passwordHash", None)
    return user


def user_from_token(token: Optional[str]) -> Optional[dict]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None or not ObjectId.is_valid(user_id):
        return None
    return db["user"].find_one({"_id": ObjectId(user_id)})


def get_current_user(token: str = Depends(oauth2_scheme)):
    user = user_from_token(token)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


# Admin guard
def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return user


def ensure_owner(user: dict, user_id: str):
    if str(user["_id"]) != user_id and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not allowed")


# Routes
@app.get("/")
def root():
    return {"message": "Baby Shop API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "realtime_rooms": len(hub.rooms()),
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


# Auth endpoints
@app.post("/auth/register", response_model=UserOut)
def register(payload: UserCreate):
    if db["user"].find_one({"$or": [{"username": payload.username}, {"email": payload.email}]}):
        raise HTTPException(status_code=400, detail="Username or email already exists")

    user = UserSchema(
        username=payload.username,
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        name=payload.name,
        phone=payload.phone,
        address=payload.address,
    )
    user_id = create_document("user", user)
    logger.info("user_registered", user_id=user_id)
    return public_user(db["user"].find_one({"_id": ObjectId(user_id)}))


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends()):
    user = db["user"].find_one({"username": form_data.username})
    if not user or not verify_password(form_data.password, user.get("passwordHash", "")):
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    access_token = create_access_token({"sub": str(user["_id"])})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me", response_model=UserOut)
def me(user=Depends(get_current_user)):
    return public_user(user)


# Profile endpoints
@app.get("/user/profile/{user_id}", response_model=UserOut)
def get_profile(user_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    profile = db["user"].find_one({"_id": ObjectId(user_id)}) if ObjectId.is_valid(user_id) else None
    if not profile:
        raise NotFoundError("User not found")
    return public_user(profile)


@app.put("/user/profile/{user_id}", response_model=UserOut)
def update_profile(user_id: str, payload: ProfileUpdate, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    changes = payload.model_dump(exclude_none=True)
    changes["updatedAt"] = datetime.now(timezone.utc)
    res = db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": changes}) if ObjectId.is_valid(user_id) else None
    if res is None or res.matched_count == 0:
        raise NotFoundError("User not found")
    return public_user(db["user"].find_one({"_id": ObjectId(user_id)}))


# Catalog endpoints
@app.get("/user/products")
def list_products():
    return {"products": catalog.list_products()}


@app.get("/user/products/on-offer")
def list_products_on_offer():
    return {"products": catalog.products_on_offer()}


@app.get("/user/products/category/{category}")
def list_products_by_category(category: str):
    return {"products": catalog.products_by_category(category)}


@app.get("/user/product/{product_id}")
def get_product(product_id: str):
    return {"product": catalog.get_product(product_id)}


@app.get("/user/categories")
def list_categories():
    return {"categories": catalog.list_categories()}


@app.get("/user/offers")
def list_active_offers():
    return {"offers": catalog.list_offers(active_only=True)}


@app.post("/admin/product", status_code=201, dependencies=[Depends(require_admin)])
async def create_product(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[float] = Form(None, ge=0),
    original_price: Optional[float] = Form(None, ge=0, alias="originalPrice"),
    size: Optional[str] = Form(None),
    count: Optional[str] = Form(None),
    stock: Optional[int] = Form(None, ge=0),
    on_offer: bool = Form(False, alias="onOffer"),
    out_of_stock: bool = Form(False, alias="outOfStock"),
    image: Optional[UploadFile] = File(None),
):
    fields = {
        "name": name, "description": description, "category": category, "price": price,
        "original_price": original_price, "size": size, "count": count, "stock": stock,
        "on_offer": on_offer, "out_of_stock": out_of_stock,
    }
    product = await catalog.create_product(fields, image)
    return {"message": "Product created", "product": product}


@app.put("/admin/product/{product_id}", dependencies=[Depends(require_admin)])
async def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[float] = Form(None, ge=0),
    original_price: Optional[float] = Form(None, ge=0, alias="originalPrice"),
    size: Optional[str] = Form(None),
    count: Optional[str] = Form(None),
    stock: Optional[int] = Form(None, ge=0),
    on_offer: Optional[bool] = Form(None, alias="onOffer"),
    out_of_stock: Optional[bool] = Form(None, alias="outOfStock"),
    image: Optional[UploadFile] = File(None),
):
    fields = {
        "name": name, "description": description, "category": category, "price": price,
        "original_price": original_price, "size": size, "count": count, "stock": stock,
        "on_offer": on_offer, "out_of_stock": out_of_stock,
    }
    product = await catalog.update_product(product_id, fields, image)
    return {"message": "Product updated", "product": product}


@app.delete("/admin/product/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str):
    catalog.delete_product(product_id)
    return {"message": "Product deleted"}


@app.get("/admin/offers", dependencies=[Depends(require_admin)])
def list_all_offers():
    return {"offers": catalog.list_offers(active_only=False)}


@app.post("/admin/offer", status_code=201)
async def create_offer(
    is_active: bool = Form(True, alias="isActive"),
    image: Optional[UploadFile] = File(None),
    admin=Depends(require_admin),
):
    offer = await catalog.create_offer(image, is_active, created_by=str(admin["_id"]))
    return {"message": "Offer created", "offer": offer}


@app.put("/admin/offer/{offer_id}", dependencies=[Depends(require_admin)])
async def update_offer(
    offer_id: str,
    is_active: Optional[bool] = Form(None, alias="isActive"),
    image: Optional[UploadFile] = File(None),
):
    offer = await catalog.update_offer(offer_id, is_active, image)
    return {"message": "Offer updated", "offer": offer}


@app.delete("/admin/offer/{offer_id}", dependencies=[Depends(require_admin)])
def delete_offer(offer_id: str):
    catalog.delete_offer(offer_id)
    return {"message": "Offer deleted"}


# Cart endpoints (per-user)
class CartItemIn(BaseModel):
    userId: str
    productId: str
    quantity: int = Field(1, ge=1)


class CartQuantityIn(BaseModel):
    quantity: int = Field(..., ge=1)


@app.post("/user/cart", status_code=201)
def add_to_cart(payload: CartItemIn, user=Depends(get_current_user)):
    ensure_owner(user, payload.userId)
    item = carts.add_item(payload.userId, payload.productId, payload.quantity)
    return {"message": "Added to cart", "item": item}


@app.get("/user/cart/total/{user_id}")
def get_cart_total(user_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    return carts.cart_total(user_id)


@app.get("/user/cart/{user_id}")
def get_cart(user_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    return {"cart": carts.get_cart(user_id)}


@app.delete("/user/cart/clear/{user_id}")
def clear_cart(user_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    removed = carts.clear_cart(user_id)
    return {"message": "Cart cleared", "removed": removed}


@app.put("/user/cart/{user_id}/{product_id}")
def update_cart_quantity(user_id: str, product_id: str, payload: CartQuantityIn, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    return {"message": "Cart updated", "item": carts.update_quantity(user_id, product_id, payload.quantity)}


@app.delete("/user/cart/{user_id}/{product_id}")
def remove_from_cart(user_id: str, product_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    carts.remove_item(user_id, product_id)
    return {"message": "Removed from cart"}


# Checkout / Orders
@app.post("/user/order/{user_id}", status_code=201)
def place_order(user_id: str, payload: orders.CheckoutIn, background_tasks: BackgroundTasks, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    order = orders.place_order(user_id, payload)
    background_tasks.add_task(
        send_order_notification, order["orderId"], order["customerInfo"]["name"], order["totalAmount"]
    )
    return {"message": "Order placed successfully", "order": order}


@app.get("/user/orders/{user_id}")
def list_user_orders(user_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    return {"orders": orders.list_user_orders(user_id)}


@app.get("/user/order/{user_id}/{order_id}")
def get_user_order(user_id: str, order_id: str, user=Depends(get_current_user)):
    ensure_owner(user, user_id)
    return {"order": orders.get_user_order(user_id, order_id)}


class StatusIn(BaseModel):
    status: Optional[str] = None


@app.get("/admin/orders", dependencies=[Depends(require_admin)])
def list_all_orders():
    return {"orders": orders.list_all_orders()}


@app.get("/admin/orders/stats", dependencies=[Depends(require_admin)])
def get_order_stats():
    return orders.order_stats()


@app.put("/admin/orders/{order_id}/status", dependencies=[Depends(require_admin)])
async def update_order_status(order_id: str, payload: StatusIn):
    order = await run_in_threadpool(orders.update_order_status, order_id, payload.status)
    delivered = await hub.publish(order["userId"], ORDER_STATUS_EVENT, orders.status_event(order))
    logger.info("order_status_pushed", order_id=order["orderId"], user_id=order["userId"], delivered=delivered)
    return {"message": "Order status updated successfully", "order": order}


# Real-time channel
@app.websocket("/ws")
async def notifications_socket(websocket: WebSocket, token: Optional[str] = None):
    """Join frames carry the target userId and a bearer token, in the frame or as ?token=."""
    await websocket.accept()
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict) or message.get("event") != JOIN_EVENT or not message.get("userId"):
                continue
            user_id = str(message["userId"])
            user = await run_in_threadpool(user_from_token, message.get("token") or token)
            if not user or (str(user["_id"]) != user_id and user.get("role") != "admin"):
                logger.warning("room_join_refused", user_id=user_id)
                await websocket.send_json({"event": "join-refused", "error": "Not allowed"})
                continue
            room = hub.join(websocket, user_id)
            await websocket.send_json({"event": "joined", "room": room})
    except WebSocketDisconnect:
        pass
    finally:
        hub.leave(websocket)


# Simple seed endpoint to fill an empty catalog with demo products (admin only)
DEMO_PRODUCTS = [
    {"name": "Gentle Baby Diapers", "description": "Soft, breathable diapers", "category": "diapers", "price": 75, "original_price": 90, "size": "NB", "count": "40", "stock": 50, "on_offer": True},
    {"name": "Baby Diapers Jumbo", "description": "Overnight protection", "category": "diapers", "price": 120, "size": "M", "count": "64", "stock": 30},
    {"name": "Sensitive Baby Wipes", "description": "Fragrance free wipes", "category": "wipes", "price": 18, "count": "72", "stock": 100},
    {"name": "Baby Lotion", "description": "Daily moisturising lotion", "category": "skincare", "price": 32, "size": "200ml", "stock": 40},
    {"name": "Tear-Free Shampoo", "description": "Mild shampoo for newborns", "category": "skincare", "price": 28, "size": "300ml", "stock": 35},
    {"name": "Feeding Bottle", "description": "Anti-colic bottle", "category": "feeding", "price": 45, "size": "260ml", "stock": 20},
]


@app.post("/seed", dependencies=[Depends(require_admin)])
def seed():
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    for p in DEMO_PRODUCTS:
        create_document("product", ProductSchema(**p))
    return {"seeded": True, "products": db["product"].count_documents({})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
