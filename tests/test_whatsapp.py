import json

import httpx
import pytest

import whatsapp


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(whatsapp, "WHATSAPP_ACCESS_TOKEN", "secret-token")
    monkeypatch.setattr(whatsapp, "WHATSAPP_PHONE_NUMBER_ID", "12345")
    monkeypatch.setattr(whatsapp, "ADMIN_PHONE", "97455512345")


def test_unconfigured_sends_nothing():
    assert whatsapp.send_order_notification("ORD-1", "Mona", 150) is False


def test_sends_template_message(configured):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})

    client = httpx.Client(transport=httpx.MockTransport(handler))

    assert whatsapp.send_order_notification("ORD-1", "Mona", 150, client=client) is True
    request = seen[0]
    assert request.url == "https://graph.facebook.com/v20.0/12345/messages"
    assert request.headers["Authorization"] == "Bearer secret-token"
    body = json.loads(request.content)
    assert body["to"] == "97455512345"
    assert [p["text"] for p in body["template"]["components"][1]["parameters"]] == ["ORD-1", "Mona", "150"]


def test_api_error_returns_false(configured):
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(401, json={"error": "bad token"})))

    assert whatsapp.send_order_notification("ORD-1", "Mona", 150, client=client) is False


def test_missing_order_details_skip_sending(configured):
    def handler(request):
        raise AssertionError("should not be called")

    client = httpx.Client(transport=httpx.MockTransport(handler))

    assert whatsapp.send_order_notification("ORD-1", "", 150, client=client) is False
