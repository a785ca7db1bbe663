"""WhatsApp order notification to the store's admin phone."""
import os
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID")
ADMIN_PHONE = os.getenv("ADMIN_PHONE")
WHATSAPP_TEMPLATE = os.getenv("WHATSAPP_TEMPLATE", "desoft")
GRAPH_API_URL = "https://graph.facebook.com/v20.0"


def build_message(order_number: str, customer_name: str, total_amount) -> dict:
    return {
        "messaging_product": "whatsapp",
        "to": ADMIN_PHONE,
        "type": "template",
        "template": {
            "name": WHATSAPP_TEMPLATE,
            "language": {"code": "en"},
            "components": [
                {"type": "header", "parameters": [{"type": "text", "text": str(order_number)}]},
                {
                    "type": "body",
                    "parameters": [
                        {"type": "text", "text": str(order_number)},
                        {"type": "text", "text": customer_name},
                        {"type": "text", "text": f"{total_amount}"},
                    ],
                },
            ],
        },
    }


def send_order_notification(order_number: str, customer_name: str, total_amount, client: Optional[httpx.Client] = None) -> bool:
    """Tell the store about a new order. Never raises; returns whether it was sent."""
    if not (WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID and ADMIN_PHONE):
        return False
    if not (order_number and customer_name and total_amount):
        return False

    url = f"{GRAPH_API_URL}/{WHATSAPP_PHONE_NUMBER_ID}/messages"
    headers = {"Authorization": f"Bearer {WHATSAPP_ACCESS_TOKEN}"}
    http = client or httpx.Client(timeout=10.0)
    try:
        response = http.post(url, json=build_message(order_number, customer_name, total_amount), headers=headers)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("whatsapp_notification_failed", order_id=order_number, error=str(exc))
        return False
    finally:
        if client is None:
            http.close()
    logger.info("whatsapp_notification_sent", order_id=order_number)
    return True
