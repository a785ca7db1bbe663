"""
Real-time order notifications.

Every WebSocket joins the room of the user it belongs to and the admin status
path publishes into that room only. Membership lives in this process; a
connection that disconnects or fails a send is dropped from every room.
Delivery is best effort, clients catch up by polling their orders.
"""
from collections import defaultdict
from typing import Any, Dict, Protocol, Set

import structlog
from fastapi.encoders import jsonable_encoder

logger = structlog.get_logger(__name__)

ORDER_STATUS_EVENT = "orderStatusUpdate"
JOIN_EVENT = "join-user-room"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def room_name(user_id: str) -> str:
    return f"user-{user_id}"


class NotificationHub:
    def __init__(self):
        self._rooms: Dict[str, Set[Connection]] = defaultdict(set)

    def join(self, connection: Connection, user_id: str) -> str:
        room = room_name(user_id)
        self._rooms[room].add(connection)
        logger.info("room_joined", room=room, members=len(self._rooms[room]))
        return room

    def leave(self, connection: Connection) -> None:
        for room in list(self._rooms):
            members = self._rooms[room]
            members.discard(connection)
            if not members:
                del self._rooms[room]

    def members(self, user_id: str) -> Set[Connection]:
        return set(self._rooms.get(room_name(user_id), ()))

    def rooms(self) -> Dict[str, int]:
        return {room: len(members) for room, members in self._rooms.items()}

    async def publish(self, user_id: str, event: str, payload: Dict[str, Any]) -> int:
        """Send `event` to every connection in the user's room, returning how many got it."""
        targets = self.members(user_id)
        if not targets:
            return 0

        message = jsonable_encoder({"event": event, "data": payload})
        delivered = 0
        for connection in targets:
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning("push_failed", room=room_name(user_id), error=str(exc))
                self.leave(connection)
        logger.info("event_published", room=room_name(user_id), event_name=event, delivered=delivered)
        return delivered


hub = NotificationHub()
