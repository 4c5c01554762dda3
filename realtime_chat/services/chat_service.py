import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout
from redis.exceptions import ConnectionError as RedisConnectionError

from realtime_chat.errors import NotificationDeliveryError, TransientNetworkError
from realtime_chat.repositories.conversation_repository import ConversationRepository
from realtime_chat.repositories.device_repository import DeviceRepository
from realtime_chat.repositories.message_repository import MessageRepository
from realtime_chat.repositories.notification_repository import NotificationRepository
from realtime_chat.repositories.profile_repository import ProfileRepository
from realtime_chat.schemas.events import MessageEvent, dump_event
from realtime_chat.services.protocols import EventHandler
from realtime_chat.utils.realtime_bus import BusSubscription, RedisBus, conversation_channel, notification_claim_key


logger = logging.getLogger(__name__)

_TRANSIENT = (AutoReconnect, ConnectionFailure, NetworkTimeout, RedisConnectionError)


class ChatService:
    """MongoDB + Redis + FCM backend for the messaging core.

    Persisted messages are re-broadcast on the conversation channel so that
    every subscriber, the sender included, sees the same insert event.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        profile_repo: ProfileRepository,
        notification_repo: NotificationRepository,
        device_repo: DeviceRepository,
        bus: RedisBus,
        push,
        presence_ttl_seconds: int = 60,
        notification_claim_ttl_seconds: int = 86400,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._profile_repo = profile_repo
        self._notification_repo = notification_repo
        self._device_repo = device_repo
        self._bus = bus
        self._push = push
        self._presence_ttl = presence_ttl_seconds
        self._claim_ttl = notification_claim_ttl_seconds

    # -- messages ----------------------------------------------------------

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            row, created = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                client_message_id=client_message_id,
            )
        except _TRANSIENT as exc:
            raise TransientNetworkError(str(exc)) from exc
        if created:
            await self._conversation_repo.update_on_new_message(conversation_id, row["_id"], row["created_at"])
            await self._publish_row(conversation_id, row, "insert")
        return row

    async def delete_message(self, conversation_id: str, message_id: str, sender_id: str) -> Optional[Dict[str, Any]]:
        try:
            row = await self._message_repo.soft_delete(message_id, sender_id)
        except _TRANSIENT as exc:
            raise TransientNetworkError(str(exc)) from exc
        if row is not None:
            await self._publish_row(conversation_id, row, "update")
        return row

    async def mark_conversation_read(self, conversation_id: str, reader_id: str, read_at: datetime) -> int:
        try:
            return await self._message_repo.mark_read(conversation_id, reader_id, read_at)
        except _TRANSIENT as exc:
            raise TransientNetworkError(str(exc)) from exc

    async def list_messages(
        self, conversation_id: str, limit: int = 50, cursor: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        return await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, cursor=cursor)

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        convo = await self._conversation_repo.get_by_id(conversation_id)
        if convo is None:
            raise LookupError(f"conversation {conversation_id} not found")
        return convo

    async def _publish_row(self, conversation_id: str, row: Dict[str, Any], action: str) -> None:
        event = MessageEvent(action=action, row=_jsonable(row))
        try:
            await self._bus.publish(conversation_channel(conversation_id), dump_event(event))
        except Exception as exc:
            # the row is persisted; subscribers catch up on their next history load
            logger.warning("Publishing message %s on %s failed: %s", row.get("_id"), conversation_id, exc)

    # -- realtime ----------------------------------------------------------

    async def subscribe_to_conversation(self, conversation_id: str, on_event: EventHandler) -> BusSubscription:
        try:
            return await self._bus.subscribe(conversation_channel(conversation_id), on_event)
        except _TRANSIENT as exc:
            raise TransientNetworkError(str(exc)) from exc

    async def broadcast(self, conversation_id: str, payload: str) -> None:
        await self._bus.publish(conversation_channel(conversation_id), payload)

    # -- presence ----------------------------------------------------------

    async def get_profiles_presence(self, user_ids: List[str]) -> List[Dict[str, Any]]:
        rows = {row["user_id"]: row for row in await self._profile_repo.get_presence(user_ids)}
        online = set(await self._bus.online_users(user_ids))
        result = []
        for user_id in user_ids:
            row = rows.get(user_id, {})
            # the redis key expires on its own when heartbeats stop
            result.append({
                "user_id": user_id,
                "is_online": user_id in online,
                "last_seen": row.get("last_seen"),
            })
        return result

    async def set_own_presence(self, user_id: str, is_online: bool) -> None:
        last_seen = await self._profile_repo.set_presence(user_id, is_online)
        if is_online:
            await self._bus.set_presence(user_id, ttl_seconds=self._presence_ttl)
        else:
            await self._bus.clear_presence(user_id)
        logger.debug("Presence of %s set to %s at %s", user_id, "online" if is_online else "offline", last_seen)

    # -- notifications -----------------------------------------------------

    async def get_notification_preferences(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._notification_repo.get_preferences(user_id)

    async def save_notification(self, record: Dict[str, Any]) -> None:
        await self._notification_repo.save(record)

    async def claim_notification(self, subject_id: str, recipient_id: str) -> bool:
        # every app instance evaluates the same echo; the redis key picks one
        return await self._bus.claim(notification_claim_key(subject_id, recipient_id), self._claim_ttl)

    async def send_push_notification(
        self, recipient_ids: List[str], title: str, body: str, data: Dict[str, Any]
    ) -> None:
        if not self._push.enabled:
            raise NotificationDeliveryError("push delivery is not configured")
        tokens = await self._device_repo.get_tokens(recipient_ids, platform="fcm")
        rejected = await self._push.send_fcm(tokens, title, body, data)
        if rejected:
            logger.info("%d of %d push tokens rejected for %s", len(rejected), len(tokens), ",".join(recipient_ids))


def _jsonable(row: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in row.items():
        if hasattr(value, "isoformat"):
            out[key] = value.isoformat()
        elif key == "_id":
            out[key] = str(value)
        else:
            out[key] = value
    return out
