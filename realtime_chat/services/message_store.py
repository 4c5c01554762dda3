import bisect
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from realtime_chat.schemas.message import Message


logger = logging.getLogger(__name__)

Listener = Callable[["MessageStore"], None]


@dataclass
class _Entry:
    # ordering position, fixed when the entry is first inserted
    position: Tuple[datetime, int]
    message: Message


class MessageStore:
    """Ordered, deduplicated message log for a single conversation.

    Entries are kept sorted by ``(created_at, insertion sequence)``. An entry
    keeps the position it was inserted at for its whole life: reconciliation
    swaps the message in place instead of re-sorting, so an optimistic message
    does not jump when the server assigns it a slightly different timestamp.
    """

    def __init__(self, conversation_id: str, reconcile_window_seconds: float = 10.0) -> None:
        self.conversation_id = conversation_id
        self._window = timedelta(seconds=reconcile_window_seconds)
        self._entries: List[_Entry] = []
        self._by_key: Dict[str, _Entry] = {}
        self._by_server_id: Dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._listeners: List[Listener] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._entries)

    # -- reads -------------------------------------------------------------

    def get(self, message_id: str) -> Optional[Message]:
        entry = self._find(message_id)
        return entry.message if entry else None

    def all(self) -> List[Message]:
        return [e.message for e in self._entries]

    def visible(self) -> List[Message]:
        return [e.message for e in self._entries if not e.message.is_deleted]

    def oldest_confirmed(self) -> Optional[Message]:
        for entry in self._entries:
            if entry.message.is_confirmed:
                return entry.message
        return None

    # -- writes ------------------------------------------------------------

    def append(self, optimistic: Message) -> Optional[str]:
        """Insert a locally created message and return its idempotency key."""
        if self._closed:
            return None
        key = optimistic.idempotency_key
        if not key:
            raise ValueError("optimistic messages need an idempotency key")
        if key in self._by_key:
            return key
        entry = self._insert(optimistic)
        self._by_key[key] = entry
        self._changed()
        return key

    def reconcile(self, server_message: Message) -> Optional[Message]:
        """Merge a server-confirmed message into the log.

        Returns the stored message, or ``None`` once the store is closed.
        """
        if self._closed:
            return None
        if server_message.conversation_id != self.conversation_id:
            logger.debug("Ignoring message %s for conversation %s", server_message.id, server_message.conversation_id)
            return None

        entry = self._match(server_message)
        if entry is None:
            entry = self._insert(server_message)
            merged = server_message
        else:
            merged = entry.message.confirmed_by(server_message)
            entry.message = merged

        if merged.idempotency_key:
            self._by_key[merged.idempotency_key] = entry
        if merged.server_id:
            self._by_server_id[merged.server_id] = entry
        self._changed()
        return merged

    def mark_failed(self, key: str, reason: str, retryable: bool = True) -> Optional[Message]:
        if self._closed:
            return None
        entry = self._by_key.get(key)
        if entry is None:
            return None
        if entry.message.status != "pending":
            # the echo won the race against the failure report
            return entry.message
        entry.message = entry.message.failed(reason, retryable)
        self._changed()
        return entry.message

    def mark_retrying(self, key: str) -> Optional[Message]:
        if self._closed:
            return None
        entry = self._by_key.get(key)
        if entry is None:
            return None
        entry.message = entry.message.retried()
        self._changed()
        return entry.message

    def mark_read(self, reader_id: str, read_at: datetime) -> int:
        """Stamp confirmed messages from other senders created up to ``read_at``."""
        if self._closed:
            return 0
        marked = 0
        for entry in self._entries:
            message = entry.message
            if not message.is_confirmed or message.read_at is not None:
                continue
            if message.sender_id == reader_id or message.created_at > read_at:
                continue
            entry.message = message.read(read_at)
            marked += 1
        if marked:
            self._changed()
        return marked

    def unread_for(self, user_id: str) -> int:
        return sum(
            1
            for e in self._entries
            if e.message.is_confirmed
            and not e.message.is_deleted
            and e.message.read_at is None
            and e.message.sender_id != user_id
        )

    def remove(self, message_id: str) -> bool:
        if self._closed:
            return False
        entry = self._find(message_id)
        if entry is None:
            return False
        self._entries.remove(entry)
        message = entry.message
        if message.idempotency_key:
            self._by_key.pop(message.idempotency_key, None)
        if message.server_id:
            self._by_server_id.pop(message.server_id, None)
        self._changed()
        return True

    # -- observers ---------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()

    # -- internals ---------------------------------------------------------

    def _find(self, message_id: str) -> Optional[_Entry]:
        return self._by_key.get(message_id) or self._by_server_id.get(message_id)

    def _match(self, server_message: Message) -> Optional[_Entry]:
        if server_message.server_id and server_message.server_id in self._by_server_id:
            return self._by_server_id[server_message.server_id]
        if server_message.idempotency_key:
            return self._by_key.get(server_message.idempotency_key)
        return self._match_by_content(server_message)

    def _match_by_content(self, server_message: Message) -> Optional[_Entry]:
        # Echoes without a client key (another session of the same user, or a
        # backend that drops the key) pair with the oldest unconfirmed local
        # entry carrying the same sender and content inside the window.
        for entry in self._entries:
            local = entry.message
            if local.is_confirmed:
                continue
            if local.sender_id != server_message.sender_id or local.content != server_message.content:
                continue
            if abs(local.created_at - server_message.created_at) <= self._window:
                return entry
        return None

    def _insert(self, message: Message) -> _Entry:
        entry = _Entry(position=(message.created_at, next(self._seq)), message=message)
        index = bisect.bisect_right([e.position for e in self._entries], entry.position)
        self._entries.insert(index, entry)
        return entry

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Message store listener failed for conversation %s", self.conversation_id)
