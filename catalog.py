"""Products and promotional offer banners."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import UploadFile
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

import storage
from database import create_document, db, get_documents, serialize_doc, to_object_id
from errors import NotFoundError, ValidationError
from schemas import Offer as OfferSchema, Product as ProductSchema

logger = structlog.get_logger(__name__)

PRODUCT_FIELDS = (
    "name", "description", "category", "price", "original_price", "size",
    "count", "stock", "on_offer", "out_of_stock",
)


def _validate_product(data: Dict[str, Any]) -> ProductSchema:
    try:
        return ProductSchema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid product", details=exc.errors(include_url=False, include_context=False)) from exc


# ----------------------- Products -----------------------
def list_products() -> List[dict]:
    return [serialize_doc(p) for p in get_documents("product")]


def get_product(product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    return serialize_doc(product)


def products_by_category(category: str) -> List[dict]:
    products = [serialize_doc(p) for p in db["product"].find({"category": category})]
    if not products:
        raise NotFoundError("No products in this category")
    return products


def products_on_offer() -> List[dict]:
    products = [serialize_doc(p) for p in db["product"].find({"onOffer": True})]
    if not products:
        raise NotFoundError("No products on offer")
    return products


def list_categories() -> List[str]:
    return sorted(c for c in db["product"].distinct("category") if c)


async def create_product(fields: Dict[str, Any], image: Optional[UploadFile] = None) -> dict:
    missing = [f for f in ("name", "description", "price", "category") if fields.get(f) in (None, "")]
    if missing:
        raise ValidationError("Name, description, price, category required", details={"missing": missing})

    product = _validate_product({k: v for k, v in fields.items() if v is not None})
    if image is not None:
        product.image = await storage.upload_image(image, "product")
    pid = await run_in_threadpool(create_document, "product", product)
    logger.info("product_created", product_id=pid, name=product.name)
    return await run_in_threadpool(get_product, pid)


def _apply_product_update(oid, existing: dict, update: Dict[str, Any], replaced_image: bool) -> None:
    update["updatedAt"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": oid}, {"$set": update})
    if replaced_image:
        storage.delete_image(existing.get("image"))


async def update_product(product_id: str, fields: Dict[str, Any], image: Optional[UploadFile] = None) -> dict:
    oid = to_object_id(product_id, "Product")
    existing = await run_in_threadpool(db["product"].find_one, {"_id": oid})
    if not existing:
        raise NotFoundError("Product not found")

    changes = {k: v for k, v in fields.items() if k in PRODUCT_FIELDS and v is not None}
    merged = ProductSchema.model_validate(existing).model_dump()
    merged.update(changes)
    updated = _validate_product(merged)

    update = {to_camel(k): getattr(updated, k) for k in changes}
    if image is not None:
        update["image"] = await storage.upload_image(image, "product")
    await run_in_threadpool(_apply_product_update, oid, existing, update, image is not None)
    logger.info("product_updated", product_id=product_id, fields=sorted(update))
    return await run_in_threadpool(get_product, product_id)


def delete_product(product_id: str) -> None:
    oid = to_object_id(product_id, "Product")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise NotFoundError("Product not found")
    storage.delete_image(product.get("image"))
    db["product"].delete_one({"_id": oid})
    logger.info("product_deleted", product_id=product_id)


# ----------------------- Offers -----------------------
def list_offers(active_only: bool = True) -> List[dict]:
    filt = {"isActive": True} if active_only else {}
    return [serialize_doc(o) for o in db["offer"].find(filt).sort("createdAt", -1)]


def get_offer(offer_id: str) -> dict:
    offer = db["offer"].find_one({"_id": to_object_id(offer_id, "Offer")})
    if not offer:
        raise NotFoundError("Offer not found")
    return serialize_doc(offer)


async def create_offer(image: Optional[UploadFile], is_active: bool, created_by: Optional[str] = None) -> dict:
    if image is None:
        raise ValidationError("Image is required")
    key = await storage.upload_image(image, "offer")
    offer = OfferSchema(image=key, is_active=is_active, created_by=created_by)
    oid = await run_in_threadpool(create_document, "offer", offer)
    logger.info("offer_created", offer_id=oid, active=is_active)
    return await run_in_threadpool(get_offer, oid)


def _apply_offer_update(oid, offer: dict, update: Dict[str, Any]) -> None:
    db["offer"].update_one({"_id": oid}, {"$set": update})
    if "image" in update:
        storage.delete_image(offer.get("image"))


async def update_offer(offer_id: str, is_active: Optional[bool], image: Optional[UploadFile] = None) -> dict:
    oid = to_object_id(offer_id, "Offer")
    offer = await run_in_threadpool(db["offer"].find_one, {"_id": oid})
    if not offer:
        raise NotFoundError("Offer not found")

    update: Dict[str, Any] = {"updatedAt": datetime.now(timezone.utc)}
    if is_active is not None:
        update["isActive"] = is_active
    if image is not None:
        update["image"] = await storage.upload_image(image, "offer")
    await run_in_threadpool(_apply_offer_update, oid, offer, update)
    return await run_in_threadpool(get_offer, offer_id)


def delete_offer(offer_id: str) -> None:
    oid = to_object_id(offer_id, "Offer")
    offer = db["offer"].find_one({"_id": oid})
    if not offer:
        raise NotFoundError("Offer not found")
    storage.delete_image(offer.get("image"))
    db["offer"].delete_one({"_id": oid})
    logger.info("offer_deleted", offer_id=offer_id)
