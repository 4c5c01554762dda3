from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple


EventHandler = Callable[[str], Awaitable[None]]


class Subscription(Protocol):

    async def cancel(self) -> None: ...


class ChatBackend(Protocol):
    """Storage/realtime/push collaborator consumed by the messaging core.

    ``ChatService`` is the MongoDB + Redis + FCM implementation; tests use
    in-memory fakes with the same shape.
    """

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    async def list_messages(
        self, conversation_id: str, limit: int = 50, cursor: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]: ...

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]: ...

    async def delete_message(
        self, conversation_id: str, message_id: str, sender_id: str
    ) -> Optional[Dict[str, Any]]: ...

    async def mark_conversation_read(self, conversation_id: str, reader_id: str, read_at: datetime) -> int: ...

    async def subscribe_to_conversation(self, conversation_id: str, on_event: EventHandler) -> Subscription: ...

    async def broadcast(self, conversation_id: str, payload: str) -> None: ...

    async def get_profiles_presence(self, user_ids: List[str]) -> List[Dict[str, Any]]: ...

    async def set_own_presence(self, user_id: str, is_online: bool) -> None: ...

    async def get_notification_preferences(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def save_notification(self, record: Dict[str, Any]) -> None: ...

    async def claim_notification(self, subject_id: str, recipient_id: str) -> bool:
        """True for the first caller across all processes, False afterwards."""
        ...

    async def send_push_notification(
        self, recipient_ids: List[str], title: str, body: str, data: Dict[str, Any]
    ) -> None: ...
