"""
Order placement, order queries and the admin status update path.

Placement runs a read-only check pass over every line before anything is
written, then persists the order and takes stock with a conditional
decrement per product. If any decrement loses a race the decrements already
applied are put back and the order row is removed, so a failed checkout
leaves no trace.
"""
import os
import secrets
import string
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import db, serialize_doc
from errors import NotFoundError, StockConflictError, ValidationError
from schemas import ORDER_STATUSES, CustomerInfo, Delivery, Order as OrderSchema, OrderItem

logger = structlog.get_logger(__name__)

STRICT_STATUS_TRANSITIONS = os.getenv("STRICT_STATUS_TRANSITIONS", "false").lower() in ("1", "true", "yes")

ALLOWED_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

ORDER_ID_ATTEMPTS = 5
_BASE36 = string.digits + string.ascii_lowercase


# ----------------------- Checkout payload -----------------------
class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerInfoIn(_Payload):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class DeliveryIn(_Payload):
    date: Optional[str] = None
    comment: Optional[str] = None


class CheckoutItemIn(_Payload):
    # either a product id or the product document the cart was rendered with
    product_id: Union[str, Dict[str, Any]]
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    count: Optional[Union[str, int]] = None

    def resolved_product_id(self) -> str:
        if isinstance(self.product_id, dict):
            return str(self.product_id.get("_id") or self.product_id.get("id") or "")
        return self.product_id

    def display_name(self) -> str:
        if isinstance(self.product_id, dict) and self.product_id.get("name"):
            return str(self.product_id["name"])
        return self.resolved_product_id() or "Unknown Product"


class CheckoutIn(_Payload):
    customer_info: Optional[CustomerInfoIn] = None
    delivery: Optional[DeliveryIn] = None
    payment_method: Optional[str] = None
    cart_items: List[CheckoutItemIn] = Field(default_factory=list)
    total_amount: Optional[float] = None


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate_checkout(payload: CheckoutIn) -> None:
    """Reject the payload on the first missing piece, in a fixed order."""
    info = payload.customer_info
    if info is None or _blank(info.name) or _blank(info.phone) or _blank(info.address):
        raise ValidationError("Customer information is required")
    if payload.delivery is None or _blank(payload.delivery.date):
        raise ValidationError("Delivery date required")
    if not payload.cart_items:
        raise ValidationError("Cart is empty")
    if _blank(payload.payment_method):
        raise ValidationError("Payment method is required")
    if payload.total_amount is None or payload.total_amount <= 0:
        raise ValidationError("Valid total amount is required")


def generate_order_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


# ----------------------- Placement -----------------------
def _check_lines(payload: CheckoutIn) -> List[OrderItem]:
    """Resolve every cart line against current stock without writing anything."""
    lines: List[OrderItem] = []
    requested: Dict[str, int] = {}
    products: Dict[str, dict] = {}

    for item in payload.cart_items:
        product_id = item.resolved_product_id()
        if not ObjectId.is_valid(product_id):
            raise NotFoundError(f"Product {item.display_name()} not found")
        product = products.get(product_id) or db["product"].find_one({"_id": ObjectId(product_id)})
        if not product:
            raise NotFoundError(f"Product {item.display_name()} not found")
        products[product_id] = product

        requested[product_id] = requested.get(product_id, 0) + item.quantity
        stock = int(product.get("stock", 0))
        if stock < requested[product_id]:
            raise StockConflictError(product.get("name", product_id), stock, requested[product_id])

        count = item.count if item.count is not None else product.get("count")
        lines.append(OrderItem(
            product_id=product_id,
            quantity=item.quantity,
            price=float(product.get("price", 0)),
            size=item.size or product.get("size") or "NB",
            count=str(count) if count not in (None, "") else "1",
        ))
    return lines


def _take_stock(lines: List[OrderItem]) -> None:
    """Decrement stock per product only while enough remains; undo on failure."""
    wanted: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity

    taken: List[tuple] = []
    try:
        for product_id, quantity in wanted.items():
            oid = ObjectId(product_id)
            res = db["product"].update_one(
                {"_id": oid, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updatedAt": datetime.now(timezone.utc)}},
            )
            if res.modified_count == 0:
                current = db["product"].find_one({"_id": oid}) or {}
                raise StockConflictError(current.get("name", product_id), int(current.get("stock", 0)), quantity)
            taken.append((oid, quantity))
    except Exception:
        _restore_stock(taken)
        raise


def _restore_stock(taken: List[tuple]) -> None:
    for oid, quantity in taken:
        db["product"].update_one({"_id": oid}, {"$inc": {"stock": quantity}})


def _insert_order(doc: dict) -> ObjectId:
    for _ in range(ORDER_ID_ATTEMPTS):
        try:
            return db["order"].insert_one(doc).inserted_id
        except DuplicateKeyError:
            logger.warning("order_id_collision", order_id=doc["orderId"])
            doc.pop("_id", None)
            doc["orderId"] = generate_order_id()
    raise RuntimeError("Could not allocate a unique order id")


def place_order(user_id: str, payload: CheckoutIn) -> dict:
    validate_checkout(payload)
    lines = _check_lines(payload)

    computed = round(sum(line.price * line.quantity for line in lines), 2)
    if abs(computed - round(payload.total_amount, 2)) > 0.01:
        raise ValidationError(
            "Total amount does not match cart",
            details={"expected": computed, "received": payload.total_amount},
        )

    now = datetime.now(timezone.utc)
    order = OrderSchema(
        user_id=user_id,
        order_id=generate_order_id(),
        items=lines,
        customer_info=CustomerInfo(**payload.customer_info.model_dump()),
        delivery=Delivery(**payload.delivery.model_dump()),
        payment_method=payload.payment_method,
        total_amount=payload.total_amount,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    doc = order.model_dump(by_alias=True)
    inserted_id = _insert_order(doc)

    try:
        _take_stock(lines)
    except Exception as exc:
        db["order"].delete_one({"_id": inserted_id})
        logger.info("order_rolled_back", order_id=doc["orderId"], user_id=user_id, reason=type(exc).__name__)
        raise

    try:
        cleared = db["cartitem"].delete_many({"userId": user_id}).deleted_count
    except PyMongoError:
        logger.exception("cart_clear_failed", user_id=user_id)
        cleared = 0

    logger.info(
        "order_placed",
        order_id=doc["orderId"], user_id=user_id,
        total=payload.total_amount, lines=len(lines), cart_rows_cleared=cleared,
    )
    return serialize_doc(db["order"].find_one({"_id": inserted_id}))


# ----------------------- Queries -----------------------
def _attach_products(orders: List[dict]) -> List[dict]:
    ids = {item["productId"] for o in orders for item in o.get("items", []) if ObjectId.is_valid(item.get("productId", ""))}
    products = {}
    if ids:
        cursor = db["product"].find({"_id": {"$in": [ObjectId(i) for i in ids]}})
        products = {str(p["_id"]): serialize_doc(p) for p in cursor}

    resolved = []
    for order in orders:
        order = serialize_doc(order)
        order["items"] = [{**item, "product": products.get(item.get("productId"))} for item in order.get("items", [])]
        resolved.append(order)
    return resolved


def list_user_orders(user_id: str) -> List[dict]:
    return _attach_products(list(db["order"].find({"userId": user_id}).sort("createdAt", -1)))


def list_all_orders() -> List[dict]:
    return _attach_products(list(db["order"].find({}).sort("createdAt", -1)))


def get_user_order(user_id: str, order_ref: str) -> dict:
    order = db["order"].find_one({**_order_filter(order_ref), "userId": user_id})
    if not order:
        raise NotFoundError("Order not found")
    return _attach_products([order])[0]


def order_stats() -> dict:
    total_orders = db["order"].count_documents({})
    delivered_orders = db["order"].count_documents({"status": "delivered"})
    sales = list(db["order"].aggregate([
        {"$match": {"status": "delivered"}},
        {"$group": {"_id": None, "total": {"$sum": "$totalAmount"}}},
    ]))
    total_sales = sales[0]["total"] if sales else 0
    return {"totalOrders": total_orders, "deliveredOrders": delivered_orders, "totalSales": total_sales}


# ----------------------- Admin status update -----------------------
def _order_filter(order_ref: str) -> dict:
    if ObjectId.is_valid(order_ref):
        return {"_id": ObjectId(order_ref)}
    return {"orderId": order_ref}


def check_transition(current: str, target: str) -> None:
    if not STRICT_STATUS_TRANSITIONS or current == target:
        return
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Invalid status transition from {current} to {target}")


def update_order_status(order_ref: str, status: Optional[str]) -> dict:
    if not order_ref or not status:
        raise ValidationError("Order ID and status are required")
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid status. Must be one of: " + ", ".join(ORDER_STATUSES))

    filt = _order_filter(order_ref)
    if STRICT_STATUS_TRANSITIONS:
        current = db["order"].find_one(filt, {"status": 1})
        if not current:
            raise NotFoundError("Order not found")
        check_transition(current.get("status", "pending"), status)

    order = db["order"].find_one_and_update(
        filt,
        {"$set": {"status": status, "updatedAt": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFoundError("Order not found")
    logger.info("order_status_updated", order_id=order["orderId"], status=status)
    return _attach_products([order])[0]


def status_event(order: dict) -> dict:
    return {
        "orderId": order["id"],
        "orderNumber": order["orderId"],
        "newStatus": order["status"],
        "order": order,
    }

