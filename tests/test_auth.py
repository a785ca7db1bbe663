from conftest import auth_headers


def register(client, **overrides):
    body = {"username": "mona", "email": "mona@babyshop.qa", "password": "s3cret!", "name": "Mona", "address": "Doha"}
    body.update(overrides)
    return client.post("/auth/register", json=body)


def test_register_login_and_me(client):
    created = register(client)
    assert created.status_code == 200
    assert "passwordHash" not in created.json()
    assert created.json()["role"] == "customer"

    token = client.post("/auth/login", data={"username": "mona", "password": "s3cret!"}).json()["access_token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert me.json()["id"] == created.json()["id"]
    assert me.json()["address"] == "Doha"


def test_duplicate_registration(client):
    register(client)

    resp = register(client, username="mona2")

    assert resp.status_code == 400
    assert resp.json()["error"] == "Username or email already exists"


def test_wrong_password(client):
    register(client)

    resp = client.post("/auth/login", data={"username": "mona", "password": "nope"})

    assert resp.status_code == 400


def test_bad_token(client):
    resp = client.get("/auth/me", headers={"Authorization": "Bearer garbage"})

    assert resp.status_code == 401
    assert resp.json()["error"] == "Could not validate credentials"


def test_profile_update(client, customer):
    resp = client.put(
        f"/user/profile/{customer['_id']}",
        json={"phone": "+97455511111"},
        headers=auth_headers(customer),
    )

    assert resp.status_code == 200
    assert resp.json()["phone"] == "+97455511111"


def test_health_endpoint(client):
    body = client.get("/test").json()

    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"
