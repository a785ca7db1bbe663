import asyncio
import os

import mongomock
import pymongo
import pytest

# point the app at an in-memory MongoDB before any app module is imported
os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "babyshop_test"
pymongo.MongoClient = mongomock.MongoClient

from fastapi.testclient import TestClient  # noqa: E402

import storage  # noqa: E402
from database import create_document, db  # noqa: E402
from main import app, create_access_token  # noqa: E402
from schemas import Product  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    yield


@pytest.fixture
def client(clean_db):
    with TestClient(app) as c:
        yield c


def make_user(username, role="customer", **extra):
    doc = {
        "username": username,
        "email": f"{username}@babyshop.qa",
        "passwordHash": "unused",
        "role": role,
        **extra,
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def token_for(user):
    return create_access_token({"sub": str(user["_id"])})


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


def make_product(name="Gentle Baby Diapers", price=75, stock=10, **extra):
    fields = {"description": f"{name} description", "category": "diapers", **extra}
    return create_document("product", Product(name=name, price=price, stock=stock, **fields))


def product_stock(product_id):
    from bson import ObjectId

    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


def checkout_payload(items, total, **overrides):
    payload = {
        "customerInfo": {"name": "Mona", "phone": "+97455500000", "address": "Doha, Street 5"},
        "delivery": {"date": "2026-10-20", "comment": "after 5pm"},
        "paymentMethod": "cash",
        "cartItems": items,
        "totalAmount": total,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def customer():
    return make_user("mona")


@pytest.fixture
def admin():
    return make_user("boss", role="admin")


def on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class FakeBucket:
    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.blocked_loop = []

    def put_object(self, Bucket, Key, Body, ContentType):
        self.blocked_loop.append(on_event_loop())
        self.objects[Key] = (Body, ContentType)

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)
        self.objects.pop(Key, None)


@pytest.fixture
def bucket(monkeypatch):
    fake = FakeBucket()
    monkeypatch.setattr(storage, "get_client", lambda: fake)
    return fake
