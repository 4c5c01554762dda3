import json
import logging
from typing import Dict, List

from fastapi import WebSocket

from realtime_chat.errors import NotificationDeliveryError
from realtime_chat.schemas.notification import NotificationRecord


logger = logging.getLogger(__name__)


class ConnectionManager:
    """Open UI sockets per user, used for session snapshots and in-app alerts."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        if user_id not in self.active_connections:
            self.active_connections[user_id] = []
        self.active_connections[user_id].append(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        if user_id in self.active_connections:
            try:
                self.active_connections[user_id].remove(websocket)
            except ValueError:
                pass
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    def is_connected(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    async def send_personal_message(self, receiver_id: str, message: str) -> int:
        """Send to every socket of ``receiver_id``; returns how many accepted it."""
        sent = 0
        for conn in list(self.active_connections.get(receiver_id, [])):
            try:
                await conn.send_text(message)
                sent += 1
            except Exception as exc:
                logger.debug("Dropping dead socket for %s: %s", receiver_id, exc)
                self.disconnect(receiver_id, conn)
        return sent


def local_alert_sender(manager: ConnectionManager):
    """In-app alert delivery through the recipient's open sockets."""

    async def _send(record: NotificationRecord) -> None:
        frame = json.dumps({"type": "notification", "notification": record.model_dump(mode="json")})
        if await manager.send_personal_message(record.recipient_id, frame) == 0:
            raise NotificationDeliveryError(f"{record.recipient_id} has no open connection")

    return _send
