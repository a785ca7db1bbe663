"""Per-user shopping carts, one `cartitem` row per (user, product)."""
from datetime import datetime, timezone
from typing import Dict

import structlog
from pymongo import ReturnDocument

from database import db, serialize_doc, to_object_id
from errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


def _products_by_id(product_ids) -> Dict[str, dict]:
    oids = [to_object_id(pid, "Product") for pid in set(product_ids) if pid]
    if not oids:
        return {}
    return {str(p["_id"]): serialize_doc(p) for p in db["product"].find({"_id": {"$in": oids}})}


def add_item(user_id: str, product_id: str, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    if not db["product"].find_one({"_id": to_object_id(product_id, "Product")}):
        raise NotFoundError("Product not found")

    now = datetime.now(timezone.utc)
    item = db["cartitem"].find_one_and_update(
        {"userId": user_id, "productId": product_id},
        {
            "$inc": {"quantity": quantity},
            "$set": {"updatedAt": now},
            "$setOnInsert": {"createdAt": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("cart_item_added", user_id=user_id, product_id=product_id, quantity=item["quantity"])
    return serialize_doc(item)


def get_cart(user_id: str) -> dict:
    rows = list(db["cartitem"].find({"userId": user_id}).sort("createdAt", 1))
    products = _products_by_id(r["productId"] for r in rows)
    items = []
    for row in rows:
        item = serialize_doc(row)
        item["product"] = products.get(row["productId"])
        items.append(item)
    return {"userId": user_id, "items": items}


def cart_total(user_id: str) -> dict:
    cart = get_cart(user_id)
    total = 0.0
    for item in cart["items"]:
        if item["product"]:
            total += float(item["product"].get("price", 0)) * item["quantity"]
    return {"total": round(total, 2), "itemCount": sum(i["quantity"] for i in cart["items"])}


def update_quantity(user_id: str, product_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    item = db["cartitem"].find_one_and_update(
        {"userId": user_id, "productId": product_id},
        {"$set": {"quantity": quantity, "updatedAt": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not item:
        raise NotFoundError("Cart item not found")
    return serialize_doc(item)


def remove_item(user_id: str, product_id: str) -> None:
    res = db["cartitem"].delete_one({"userId": user_id, "productId": product_id})
    if res.deleted_count == 0:
        raise NotFoundError("Cart item not found")


def clear_cart(user_id: str) -> int:
    res = db["cartitem"].delete_many({"userId": user_id})
    return res.deleted_count
