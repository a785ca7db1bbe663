import httpx
from fastapi.testclient import TestClient

from conftest import auth_headers, checkout_payload, make_product
from main import app
from tracker import OrderBoard, OrderPoller


def snapshot(order_id="o1", status="pending", updated="2026-10-18T10:00:00", created="2026-10-18T09:00:00"):
    return {"id": order_id, "orderId": f"ORD-{order_id}", "status": status, "updatedAt": updated, "createdAt": created}


def test_same_snapshot_twice_is_a_noop():
    board = OrderBoard()

    assert board.apply_snapshot(snapshot()) is True
    assert board.apply_snapshot(snapshot()) is False
    assert board.get("o1")["status"] == "pending"


def test_stale_poll_does_not_undo_a_push():
    board = OrderBoard()
    board.apply_snapshot(snapshot())
    pushed = snapshot(status="delivered", updated="2026-10-18T11:00:00")

    assert board.apply_event({"orderId": "o1", "orderNumber": "ORD-o1", "newStatus": "delivered", "order": pushed})
    assert board.apply_orders([snapshot()]) == []
    assert board.get("o1")["status"] == "delivered"


def test_event_without_order_body_updates_status_once():
    board = OrderBoard()
    board.apply_snapshot(snapshot())
    event = {"orderId": "o1", "orderNumber": "ORD-o1", "newStatus": "processing"}

    assert board.apply_event(event) is True
    assert board.apply_event(event) is False
    assert board.apply_event({**event, "orderId": "unknown"}) is False
    assert board.get("o1")["status"] == "processing"


def test_orders_are_listed_newest_first():
    board = OrderBoard()
    board.apply_orders([
        snapshot("old", created="2026-10-01T09:00:00"),
        snapshot("new", created="2026-10-17T09:00:00"),
    ])

    assert [o["id"] for o in board.orders()] == ["new", "old"]


def mock_client(handler):
    return httpx.Client(base_url="http://shop.test", transport=httpx.MockTransport(handler))


def test_poll_once_feeds_the_board():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"orders": [snapshot()]})

    board = OrderBoard()
    poller = OrderPoller("http://shop.test", "u1", board, client=mock_client(handler))

    assert poller.poll_once() == ["o1"]
    assert poller.poll_once() == []
    assert calls == ["/user/orders/u1", "/user/orders/u1"]


def test_hidden_page_does_not_poll():
    def handler(request):
        raise AssertionError("should not be called")

    poller = OrderPoller("http://shop.test", "u1", OrderBoard(), client=mock_client(handler), is_visible=lambda: False)

    assert poller.poll_once() == []


def test_poll_errors_are_swallowed():
    poller = OrderPoller("http://shop.test", "u1", OrderBoard(), client=mock_client(lambda r: httpx.Response(500)))

    assert poller.poll_once() == []


def test_poll_catches_up_after_missed_push(client, admin, customer):
    pid = make_product(price=10, stock=5)
    placed = client.post(
        f"/user/order/{customer['_id']}",
        json=checkout_payload([{"productId": pid, "quantity": 1}], 10),
        headers=auth_headers(customer),
    ).json()["order"]
    board = OrderBoard()
    poller = OrderPoller("", str(customer["_id"]), board, client=TestClient(app, headers=auth_headers(customer)))
    poller.poll_once()

    client.put(f"/admin/orders/{placed['id']}/status", json={"status": "processing"}, headers=auth_headers(admin))

    assert poller.poll_once() == [placed["id"]]
    assert board.get(placed["id"])["status"] == "processing"
