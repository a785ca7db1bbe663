"""
Database Schemas for the baby-care shop

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name. Fields are snake_case in Python and camelCase in MongoDB
and on the wire.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

ORDER_STATUSES = ("pending", "processing", "delivered", "cancelled")

OrderStatus = Literal["pending", "processing", "delivered", "cancelled"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(CamelModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Literal["customer", "admin"] = "customer"
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class Product(CamelModel):
    name: str
    description: str
    category: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0, description="Pre-discount price for display")
    size: Optional[str] = None
    count: Optional[str] = None
    stock: int = Field(0, ge=0)
    on_offer: bool = False
    out_of_stock: bool = False
    image: Optional[str] = Field(None, description="Object key in the image bucket")


class CartItem(CamelModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderItem(CamelModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    size: Optional[str] = None
    count: Optional[str] = None


class CustomerInfo(CamelModel):
    name: str
    phone: str
    address: str


class Delivery(CamelModel):
    date: str
    comment: Optional[str] = None


class Order(CamelModel):
    user_id: str
    order_id: str
    items: List[OrderItem]
    customer_info: CustomerInfo
    delivery: Delivery
    payment_method: str
    total_amount: float = Field(..., gt=0)
    status: OrderStatus = "pending"
    created_at: datetime
    updated_at: datetime


class Offer(CamelModel):
    image: str
    is_active: bool = True
    created_by: Optional[str] = None
