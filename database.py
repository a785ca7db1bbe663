"""
Database access

Single MongoDB client shared by the whole app. `db` is None when no
DATABASE_URL is configured so the app can still boot and report its health.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import NotFoundError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "babyshop")

client = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _require_db():
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping createdAt/updatedAt, and return its id."""
    database = _require_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("createdAt", now)
    data_dict["updatedAt"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(value: Any, label: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise NotFoundError(f"{label} not found")
    return ObjectId(str(value))


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def ensure_indexes():
    database = _require_db()
    database["order"].create_index("orderId", unique=True)
    database["order"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database["cartitem"].create_index([("userId", ASCENDING), ("productId", ASCENDING)], unique=True)
