"""
Client-side order tracking.

`OrderBoard` is the single place order state is applied, whether it came from
a push event or a poll. Applying the same snapshot twice is a no-op and a
snapshot older than the one on the board is ignored, so the two feeds can
arrive in any order.
"""
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


def _parse_ts(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


class OrderBoard:
    def __init__(self):
        self._orders: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def apply_snapshot(self, order: dict) -> bool:
        """Store `order` unless it is stale or identical. Returns True when the board changed."""
        order_id = order.get("id")
        if not order_id:
            return False
        with self._lock:
            current = self._orders.get(order_id)
            if current is not None:
                seen, incoming = _parse_ts(current.get("updatedAt")), _parse_ts(order.get("updatedAt"))
                if seen and incoming and incoming < seen:
                    return False
                if current == order:
                    return False
            self._orders[order_id] = dict(order)
            return True

    def apply_orders(self, orders: Iterable[dict]) -> List[str]:
        return [o["id"] for o in orders if self.apply_snapshot(o)]

    def apply_event(self, event: dict) -> bool:
        """Apply an `orderStatusUpdate` payload ({orderId, orderNumber, newStatus, order})."""
        order = event.get("order")
        if order:
            return self.apply_snapshot(order)
        with self._lock:
            current = self._orders.get(event.get("orderId"))
            if current is None or current.get("status") == event.get("newStatus"):
                return False
            self._orders[current["id"]] = {**current, "status": event["newStatus"]}
            return True

    def get(self, order_id: str) -> Optional[dict]:
        return self._orders.get(order_id)

    def orders(self) -> List[dict]:
        with self._lock:
            snapshot = list(self._orders.values())
        return sorted(snapshot, key=lambda o: _parse_ts(o.get("createdAt")) or datetime.min, reverse=True)


class OrderPoller:
    """Re-fetch a user's orders on a fixed interval while the page is visible."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        board: OrderBoard,
        token: Optional[str] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        is_visible: Callable[[], bool] = lambda: True,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.user_id = user_id
        self.board = board
        self.interval = interval
        self.is_visible = is_visible
        self._client = client or httpx.Client(base_url=base_url, headers=headers, timeout=10.0)
        self._owns_client = client is None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> List[str]:
        if not self.is_visible():
            return []
        try:
            response = self._client.get(f"/user/orders/{self.user_id}")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("order_poll_failed", user_id=self.user_id, error=str(exc))
            return []
        changed = self.board.apply_orders(response.json().get("orders", []))
        if changed:
            logger.info("orders_refreshed", user_id=self.user_id, changed=changed)
        return changed

    def _run(self):
        while not self._stop.wait(self.interval):
            self.poll_once()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.poll_once()
        self._thread = threading.Thread(target=self._run, name=f"order-poller-{self.user_id}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None

    def close(self) -> None:
        self.stop()
        if self._owns_client:
            self._client.close()
