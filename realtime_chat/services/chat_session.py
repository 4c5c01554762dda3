import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from realtime_chat.errors import ChatError, TransientNetworkError, ValidationError
from realtime_chat.schemas.events import PresenceFrame, ReadFrame, TypingFrame, ViewingFrame, dump_event
from realtime_chat.schemas.message import Message, MessageType
from realtime_chat.services.conversation_cache import ConversationCache
from realtime_chat.services.dispatcher import ConversationDispatcher
from realtime_chat.services.message_store import MessageStore
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.services.presence import PresenceStore, PresenceSubscription
from realtime_chat.services.protocols import ChatBackend
from realtime_chat.services.typing import TypingTracker


logger = logging.getLogger(__name__)

SessionListener = Callable[["ChatSession"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatSession:
    """One open conversation for one local user.

    Wires a dispatcher, its message store and a typing tracker to the shared
    presence store and notification bridge, and exposes the snapshots a UI
    renders. Listeners are called after any change to those snapshots.
    """

    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        backend: ChatBackend,
        presence: PresenceStore,
        bridge: NotificationBridge,
        conversations: Optional[ConversationCache] = None,
        reconcile_window_seconds: float = 10.0,
        typing_window_seconds: float = 3.0,
        max_message_length: int = 4000,
        page_size: int = 50,
        now_func: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._backend = backend
        self._presence = presence
        self._bridge = bridge
        self._conversations = conversations or ConversationCache(backend)
        self._page_size = page_size
        self._now = now_func

        self.store = MessageStore(conversation_id, reconcile_window_seconds)
        self.dispatcher = ConversationDispatcher(
            conversation_id,
            user_id,
            backend,
            self.store,
            bridge=bridge,
            conversations=self._conversations,
            max_message_length=max_message_length,
            now_func=now_func,
        )
        self.typing = TypingTracker(user_id, self._broadcast_typing, typing_window_seconds, now_func)

        self.other_user_id: Optional[str] = None
        self._presence_sub: Optional[PresenceSubscription] = None
        self._listeners: List[SessionListener] = []
        self._cursor: Optional[str] = None
        self._history_exhausted = False
        self._opened = False
        self._closed = False
        self._holding_view = False

        self.store.add_listener(lambda _store: self._changed())
        self.typing.add_listener(self._on_typing_changed)

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> "ChatSession":
        if self._opened or self._closed:
            return self
        self._opened = True
        participants = await self._conversations.participants(self.conversation_id)
        others = [p for p in participants if p != self.user_id]
        self.other_user_id = others[0] if others else None

        await self._load_latest()
        await self.dispatcher.start(self._on_frame)

        if self.other_user_id is not None:
            self._presence_sub = self._presence.subscribe([self.other_user_id], self._on_presence)

        self._bridge.mark_conversation_opened(self.user_id, self.conversation_id)
        await self.set_app_state(True)
        await self.mark_read()
        logger.info("Opened conversation %s for %s", self.conversation_id, self.user_id)
        return self

    async def reconnect(self) -> None:
        """Re-establish the feed after a transport drop and re-sync the latest page."""
        if self._closed:
            return
        self._conversations.invalidate(self.conversation_id)
        await self.dispatcher.resubscribe()
        await self._load_latest()
        if self.other_user_id is not None:
            await self._presence.refresh([self.other_user_id])
        self._changed()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._presence.unsubscribe(self._presence_sub)
        self._presence_sub = None
        if self._leave_view():
            await self._announce_viewing(None)
        await self.typing.close()
        await self.dispatcher.close()
        self._listeners.clear()
        logger.info("Closed conversation %s for %s", self.conversation_id, self.user_id)

    @property
    def closed(self) -> bool:
        return self._closed

    # -- snapshots ---------------------------------------------------------

    def messages(self) -> List[Dict[str, Any]]:
        return [m.to_view() for m in self.store.visible()]

    def presence(self) -> Dict[str, Any]:
        if self.other_user_id is None:
            return {"isOnline": False, "lastSeen": None}
        return self._presence.get(self.other_user_id).to_view()

    def other_is_typing(self) -> bool:
        return self.typing.is_typing(self.conversation_id, exclude=self.user_id)

    def badge_count(self) -> int:
        return self._bridge.unread_count(self.user_id)

    def unread_count(self) -> int:
        """Messages from the other side in this conversation not yet marked read."""
        return self.store.unread_for(self.user_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "messages": self.messages(),
            "presence": self.presence(),
            "otherIsTyping": self.other_is_typing(),
            "badgeCount": self.badge_count(),
            "unreadCount": self.unread_count(),
        }

    # -- user actions ------------------------------------------------------

    async def send(self, content: str, message_type: MessageType | str = MessageType.TEXT) -> Optional[Message]:
        message = await self.dispatcher.send(content, message_type)
        await self.typing.stop_typing(self.conversation_id)
        return message

    async def retry(self, message_id: str) -> Optional[Message]:
        return await self.dispatcher.retry(message_id)

    async def delete(self, message_id: str) -> Optional[Message]:
        """Soft-delete one of the local user's confirmed messages."""
        message = self.store.get(message_id)
        if message is None or not message.is_confirmed:
            raise LookupError(f"no confirmed message {message_id}")
        if message.sender_id != self.user_id:
            raise ValidationError("only the sender can delete a message")
        try:
            row = await self._backend.delete_message(self.conversation_id, message.server_id, self.user_id)
        except ChatError:
            raise
        except Exception as exc:
            logger.warning("Delete of %s in %s failed: %s", message_id, self.conversation_id, exc)
            raise TransientNetworkError(str(exc) or exc.__class__.__name__) from exc
        if row is None:
            # already deleted elsewhere; the update event will arrive on the feed
            return self.store.get(message_id)
        return await self.dispatcher.apply_row(row, notify=False)

    async def start_typing(self) -> bool:
        return await self.typing.start_typing(self.conversation_id)

    async def stop_typing(self) -> bool:
        return await self.typing.stop_typing(self.conversation_id)

    async def set_app_state(self, foreground: bool) -> None:
        if self._closed:
            return
        self._presence.report_app_state(self.user_id, foreground)
        await self._broadcast(PresenceFrame(user_id=self.user_id, is_online=foreground, last_seen=self._now()))
        if foreground:
            self._enter_view()
            await self._announce_viewing(self.conversation_id)
        elif self._leave_view():
            await self._announce_viewing(None)

    async def mark_read(self) -> int:
        """Mark everything received so far as read, here and for the sender."""
        if self._closed:
            return 0
        read_at = self._now()
        try:
            marked = await self._backend.mark_conversation_read(self.conversation_id, self.user_id, read_at)
        except Exception as exc:
            logger.warning("Marking %s read for %s failed: %s", self.conversation_id, self.user_id, exc)
            return 0
        self.store.mark_read(self.user_id, read_at)
        await self._broadcast(ReadFrame(conversation_id=self.conversation_id, reader_id=self.user_id, read_at=read_at))
        return marked

    async def load_older(self) -> int:
        """Fetch the page before the oldest loaded message. Returns rows applied."""
        if self._closed or self._history_exhausted:
            return 0
        return await self._load_page(self._cursor)

    @property
    def has_more_history(self) -> bool:
        return not self._history_exhausted

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    # -- internals ---------------------------------------------------------

    async def _load_latest(self) -> None:
        self._history_exhausted = False
        await self._load_page(None)

    async def _load_page(self, cursor: Optional[str]) -> int:
        try:
            rows, next_cursor = await self._backend.list_messages(self.conversation_id, self._page_size, cursor)
        except Exception as exc:
            logger.warning("History load for %s failed: %s", self.conversation_id, exc)
            return 0
        applied = 0
        for row in rows:
            if await self.dispatcher.apply_row(row, notify=False) is not None:
                applied += 1
        # only the first page or an older page moves the cursor back
        if cursor is not None or self._cursor is None:
            self._cursor = next_cursor
        if next_cursor is None:
            self._history_exhausted = True
        return applied

    async def _on_frame(self, event: Any) -> None:
        if isinstance(event, TypingFrame):
            self.typing.observe(event)
        elif isinstance(event, PresenceFrame):
            self._presence.ingest(event.user_id, event.is_online, event.last_seen)
            if event.user_id == self.other_user_id:
                self._changed()
        elif isinstance(event, ViewingFrame):
            if event.user_id != self.user_id:
                self._bridge.viewing.set(event.user_id, event.conversation_id)
        elif isinstance(event, ReadFrame):
            # also covers the same user reading on another socket
            self.store.mark_read(event.reader_id, event.read_at)

    def _on_presence(self, _snapshot: Dict[str, Any]) -> None:
        self._changed()

    def _on_typing_changed(self, conversation_id: str) -> None:
        if conversation_id == self.conversation_id:
            self._changed()

    async def _broadcast_typing(self, frame: TypingFrame) -> None:
        await self._backend.broadcast(self.conversation_id, dump_event(frame))

    def _enter_view(self) -> None:
        if not self._holding_view:
            self._holding_view = True
            self._bridge.viewing.enter(self.user_id, self.conversation_id)

    def _leave_view(self) -> bool:
        # other sockets of the same user may still hold the conversation
        if not self._holding_view:
            return False
        self._holding_view = False
        return self._bridge.viewing.leave(self.user_id, self.conversation_id)

    async def _announce_viewing(self, conversation_id: Optional[str]) -> None:
        await self._broadcast(ViewingFrame(user_id=self.user_id, conversation_id=conversation_id))

    async def _broadcast(self, frame: Any) -> None:
        try:
            await self._backend.broadcast(self.conversation_id, dump_event(frame))
        except Exception as exc:
            logger.warning("Broadcast on %s failed: %s", self.conversation_id, exc)

    def _changed(self) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session listener failed for %s", self.conversation_id)
