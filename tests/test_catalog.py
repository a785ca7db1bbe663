from bson import ObjectId

from conftest import auth_headers, make_product
from database import db

PNG = ("diapers.png", b"\x89PNG fake image", "image/png")


def create_product(client, admin, files=None, **fields):
    data = {"name": "Baby Lotion", "description": "Daily lotion", "category": "skincare", "price": "32", "stock": "40"}
    data.update(fields)
    return client.post("/admin/product", data=data, files=files, headers=auth_headers(admin))


def test_create_product_uploads_image(client, admin, bucket):
    resp = create_product(client, admin, files={"image": PNG}, onOffer="true", originalPrice="40")

    assert resp.status_code == 201
    product = resp.json()["product"]
    assert product["price"] == 32
    assert product["originalPrice"] == 40
    assert product["stock"] == 40
    assert product["onOffer"] is True
    assert product["image"].startswith("product-") and product["image"].endswith(".png")
    assert bucket.objects[product["image"]] == (PNG[1], "image/png")
    assert bucket.blocked_loop == [False]


def test_create_product_requires_core_fields(client, admin, bucket):
    resp = client.post("/admin/product", data={"name": "Lotion"}, headers=auth_headers(admin))

    assert resp.status_code == 400
    assert resp.json()["error"] == "Name, description, price, category required"
    assert db["product"].count_documents({}) == 0


def test_only_images_are_accepted(client, admin, bucket):
    resp = create_product(client, admin, files={"image": ("notes.txt", b"hello", "text/plain")})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Only image files allowed"
    assert bucket.objects == {}


def test_negative_stock_is_rejected(client, admin):
    resp = create_product(client, admin, stock="-1")

    assert resp.status_code == 400


def test_customers_cannot_manage_products(client, customer):
    resp = create_product(client, customer)

    assert resp.status_code == 403


def test_update_replaces_image_and_keeps_other_fields(client, admin, bucket):
    product = create_product(client, admin, files={"image": PNG}).json()["product"]

    resp = client.put(
        f"/admin/product/{product['id']}",
        data={"price": "29.5", "outOfStock": "true"},
        files={"image": ("new.jpg", b"jpeg bytes", "image/jpeg")},
        headers=auth_headers(admin),
    )

    updated = resp.json()["product"]
    assert resp.status_code == 200
    assert updated["price"] == 29.5
    assert updated["outOfStock"] is True
    assert updated["name"] == "Baby Lotion"
    assert updated["image"].endswith(".jpg")
    assert bucket.deleted == [product["image"]]


def test_update_unknown_product(client, admin):
    resp = client.put(f"/admin/product/{ObjectId()}", data={"price": "1"}, headers=auth_headers(admin))

    assert resp.status_code == 404


def test_delete_product_removes_image(client, admin, bucket):
    product = create_product(client, admin, files={"image": PNG}).json()["product"]

    resp = client.delete(f"/admin/product/{product['id']}", headers=auth_headers(admin))

    assert resp.status_code == 200
    assert bucket.deleted == [product["image"]]
    assert client.get(f"/user/product/{product['id']}").status_code == 404


def test_browse_products(client):
    make_product("Gentle Baby Diapers", category="diapers", on_offer=True)
    make_product("Tear-Free Shampoo", category="skincare")

    assert len(client.get("/user/products").json()["products"]) == 2
    assert [p["name"] for p in client.get("/user/products/on-offer").json()["products"]] == ["Gentle Baby Diapers"]
    assert [p["name"] for p in client.get("/user/products/category/skincare").json()["products"]] == ["Tear-Free Shampoo"]
    assert client.get("/user/categories").json()["categories"] == ["diapers", "skincare"]


def test_empty_category_is_not_found(client):
    resp = client.get("/user/products/category/toys")

    assert resp.status_code == 404
    assert resp.json()["error"] == "No products in this category"


def test_invalid_product_id_is_not_found(client):
    assert client.get("/user/product/not-an-id").status_code == 404


def test_offer_lifecycle(client, admin, bucket):
    created = client.post(
        "/admin/offer", data={"isActive": "true"}, files={"image": PNG}, headers=auth_headers(admin)
    )
    offer = created.json()["offer"]
    assert created.status_code == 201
    assert offer["image"].startswith("offer-")
    assert offer["createdBy"] == str(admin["_id"])
    assert [o["id"] for o in client.get("/user/offers").json()["offers"]] == [offer["id"]]

    client.put(f"/admin/offer/{offer['id']}", data={"isActive": "false"}, headers=auth_headers(admin))
    assert client.get("/user/offers").json()["offers"] == []
    assert len(client.get("/admin/offers", headers=auth_headers(admin)).json()["offers"]) == 1

    assert client.delete(f"/admin/offer/{offer['id']}", headers=auth_headers(admin)).status_code == 200
    assert bucket.deleted == [offer["image"]]
    assert client.delete(f"/admin/offer/{offer['id']}", headers=auth_headers(admin)).status_code == 404


def test_offer_requires_image(client, admin, bucket):
    resp = client.post("/admin/offer", data={"isActive": "true"}, headers=auth_headers(admin))

    assert resp.status_code == 400
    assert resp.json()["error"] == "Image is required"


def test_seed_fills_empty_catalog_once(client, admin):
    first = client.post("/seed", headers=auth_headers(admin)).json()
    second = client.post("/seed", headers=auth_headers(admin)).json()

    assert first["seeded"] is True and first["products"] > 0
    assert second["seeded"] is False
