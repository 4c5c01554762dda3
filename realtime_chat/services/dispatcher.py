import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as SchemaError

from realtime_chat.errors import TransientNetworkError, ValidationError
from realtime_chat.schemas.events import MessageEvent, parse_event
from realtime_chat.schemas.message import Message, MessageType
from realtime_chat.services.conversation_cache import ConversationCache
from realtime_chat.services.message_store import MessageStore
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.services.protocols import ChatBackend, Subscription


logger = logging.getLogger(__name__)

OtherEventHandler = Callable[[Any], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationDispatcher:
    """Sends messages for one local user in one conversation and applies the feed.

    The dispatcher exclusively owns its ``MessageStore``. Every backend submit
    for a given idempotency key is single-flight, and the sender's own echo
    from the realtime feed is reconciled rather than appended.
    """

    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        backend: ChatBackend,
        store: MessageStore,
        bridge: Optional[NotificationBridge] = None,
        conversations: Optional[ConversationCache] = None,
        max_message_length: int = 4000,
        now_func: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.store = store
        self._backend = backend
        self._bridge = bridge
        self._conversations = conversations or ConversationCache(backend)
        self._max_length = max_message_length
        self._now = now_func
        self._inflight: Dict[str, asyncio.Task] = {}
        self._subscription: Optional[Subscription] = None
        self._on_other_event: Optional[OtherEventHandler] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # -- sending -----------------------------------------------------------

    def _validate(self, content: str, message_type: Any) -> MessageType:
        try:
            kind = MessageType(message_type)
        except ValueError:
            raise ValidationError(f"unsupported message type: {message_type!r}")
        if content is None or not str(content).strip():
            raise ValidationError("message content is empty")
        if len(content) > self._max_length:
            raise ValidationError(f"message content exceeds {self._max_length} characters")
        return kind

    async def send(self, content: str, message_type: MessageType | str = MessageType.TEXT) -> Optional[Message]:
        """Show a message immediately, then persist it.

        Raises ``ValidationError`` before anything is stored. Backend failures
        never raise; they leave the message in the ``failed`` state.
        """
        kind = self._validate(content, message_type)
        if self._closed:
            return None
        optimistic = Message.optimistic(
            conversation_id=self.conversation_id,
            sender_id=self.user_id,
            content=content,
            message_type=kind,
            created_at=self._now(),
        )
        key = self.store.append(optimistic)
        if key is None:
            return None
        return await self._submit(key)

    async def retry(self, message_id: str) -> Optional[Message]:
        """Re-submit a failed message under its original idempotency key."""
        if self._closed:
            return None
        message = self.store.get(message_id)
        if message is None:
            raise LookupError(f"no message {message_id!r} in conversation {self.conversation_id}")
        key = message.idempotency_key
        if key in self._inflight:
            return await self._submit(key)
        if message.status != "failed":
            return message
        self.store.mark_retrying(key)
        return await self._submit(key)

    def _submit(self, key: str) -> "asyncio.Future[Optional[Message]]":
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._deliver(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return asyncio.shield(task)

    async def _deliver(self, key: str) -> Optional[Message]:
        message = self.store.get(key)
        if message is None:
            return None
        try:
            row = await self._backend.create_message(
                conversation_id=self.conversation_id,
                sender_id=self.user_id,
                content=message.content,
                message_type=message.type.value,
                client_message_id=key,
            )
        except Exception as exc:
            retryable = isinstance(exc, TransientNetworkError)
            logger.warning("Send of %s in %s failed (retryable=%s): %s", key, self.conversation_id, retryable, exc)
            return self.store.mark_failed(key, str(exc) or exc.__class__.__name__, retryable)
        try:
            confirmed = Message.from_row(row, idempotency_key=key)
        except (KeyError, ValueError, SchemaError) as exc:
            logger.error("Backend returned an unusable row for %s: %s", key, exc)
            return self.store.mark_failed(key, "invalid server response", retryable=False)
        merged = self.store.reconcile(confirmed)
        if merged is not None:
            await self._notify(merged)
        return merged

    # -- realtime feed -----------------------------------------------------

    async def start(self, on_other_event: Optional[OtherEventHandler] = None) -> None:
        if self._closed or self._subscription is not None:
            return
        self._on_other_event = on_other_event
        self._subscription = await self._backend.subscribe_to_conversation(self.conversation_id, self._on_event)
        logger.debug("Dispatcher for %s/%s subscribed", self.conversation_id, self.user_id)

    async def resubscribe(self) -> None:
        if self._closed:
            return
        await self._cancel_subscription()
        self._subscription = await self._backend.subscribe_to_conversation(self.conversation_id, self._on_event)

    async def _on_event(self, raw: str) -> None:
        if self._closed:
            return
        try:
            event = parse_event(raw)
        except (SchemaError, ValueError) as exc:
            logger.warning("Dropping malformed event on %s: %s", self.conversation_id, exc)
            return
        if isinstance(event, MessageEvent):
            await self.apply_row(event.row)
        elif self._on_other_event is not None:
            try:
                await self._on_other_event(event)
            except Exception:
                logger.exception("Event handler failed on %s", self.conversation_id)

    async def apply_row(self, row: Dict[str, Any], notify: bool = True) -> Optional[Message]:
        """Reconcile one persisted row from the feed or a history page.

        History pages pass ``notify=False`` so old rows never raise alerts.
        """
        if self._closed:
            return None
        try:
            server = Message.from_row(row)
        except (KeyError, ValueError, SchemaError) as exc:
            logger.warning("Dropping malformed message row on %s: %s", self.conversation_id, exc)
            return None
        merged = self.store.reconcile(server)
        if merged is not None and notify:
            await self._notify(merged)
        return merged

    async def _notify(self, message: Message) -> None:
        if self._bridge is None or not message.is_confirmed:
            return
        try:
            participants = await self._conversations.participants(self.conversation_id)
        except Exception as exc:
            logger.warning("Could not load participants of %s: %s", self.conversation_id, exc)
            return
        recipients = [p for p in participants if p != message.sender_id]
        try:
            await self._bridge.notify_recipients(message, recipients)
        except Exception:
            logger.exception("Notifying recipients of %s in %s failed", message.id, self.conversation_id)

    # -- teardown ----------------------------------------------------------

    async def _cancel_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.cancel()
        except Exception as exc:
            logger.warning("Unsubscribe from %s failed: %s", self.conversation_id, exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._cancel_subscription()
        self.store.close()
        self._on_other_event = None
