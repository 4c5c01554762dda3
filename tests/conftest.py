from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from realtime_chat.errors import TransientNetworkError
from realtime_chat.schemas.events import MessageEvent, dump_event
from realtime_chat.services.conversation_cache import ConversationCache
from realtime_chat.services.notification_bridge import NotificationBridge
from realtime_chat.services.presence import PresenceStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSubscription:

    def __init__(self, backend: "FakeBackend", conversation_id: str, handler) -> None:
        self._backend = backend
        self.conversation_id = conversation_id
        self.handler = handler
        self.cancelled = False

    async def cancel(self) -> None:
        self.cancelled = True
        subs = self._backend.subscriptions[self.conversation_id]
        if self in subs:
            subs.remove(self)


class FakeBackend:
    """In-memory backend with synchronous pub/sub fan-out."""

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock or FakeClock()
        self.conversations: Dict[str, Dict[str, Any]] = {
            "c1": {"_id": "c1", "participants": ["alice", "bob"]},
        }
        self.rows: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.ids = count(42)
        self.echo = True
        self.fail_next: List[Exception] = []
        # raise after persisting, as if the response was lost
        self.lose_ack_next = False
        self.gate: Optional[asyncio.Event] = None
        self.create_calls: List[Optional[str]] = []
        self.subscriptions: Dict[str, List[FakeSubscription]] = defaultdict(list)
        self.broadcasts: List[Tuple[str, str]] = []
        self.presence_rows: Dict[str, Dict[str, Any]] = {}
        self.presence_calls = 0
        self.presence_error: Optional[Exception] = None
        self.own_presence_writes: List[Tuple[str, bool]] = []
        self.preferences: Dict[str, Dict[str, Any]] = {}
        self.preferences_error: Optional[Exception] = None
        self.saved_notifications: List[Dict[str, Any]] = []
        self.save_error: Optional[Exception] = None
        self.push_calls: List[Tuple[List[str], str, str, Dict[str, Any]]] = []
        self.push_error: Optional[Exception] = None
        self.conversation_loads = 0
        self.claims: set = set()
        self.claim_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.read_calls: List[Tuple[str, str, datetime]] = []
        self.read_error: Optional[Exception] = None

    # -- messages ----------------------------------------------------------

    def make_row(self, conversation_id: str, sender_id: str, content: str, created_at: Optional[datetime] = None,
                 client_message_id: Optional[str] = None, message_type: str = "text") -> Dict[str, Any]:
        return {
            "_id": str(next(self.ids)),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "message_type": message_type,
            "created_at": (created_at or self.clock()).isoformat(),
            "client_message_id": client_message_id,
            "deleted_at": None,
            "read_at": None,
        }

    async def create_message(self, conversation_id, sender_id, content, message_type, client_message_id=None):
        self.create_calls.append(client_message_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            raise self.fail_next.pop(0)
        for row in self.rows[conversation_id]:
            if client_message_id and row["client_message_id"] == client_message_id:
                return dict(row)
        row = self.make_row(conversation_id, sender_id, content, client_message_id=client_message_id,
                            message_type=message_type)
        self.rows[conversation_id].append(row)
        if self.echo:
            await self.publish_row(row)
        if self.lose_ack_next:
            self.lose_ack_next = False
            raise TransientNetworkError("response lost")
        return dict(row)

    async def publish_row(self, row: Dict[str, Any], action: str = "insert") -> None:
        await self.broadcast(row["conversation_id"], dump_event(MessageEvent(action=action, row=row)))

    async def list_messages(self, conversation_id, limit=50, cursor=None):
        rows = sorted(self.rows[conversation_id], key=lambda r: (r["created_at"], r["_id"]))
        end = len(rows) if cursor is None else int(cursor)
        start = max(0, end - limit)
        next_cursor = str(start) if start > 0 else None
        return [dict(r) for r in rows[start:end]], next_cursor

    async def get_conversation(self, conversation_id):
        self.conversation_loads += 1
        if conversation_id not in self.conversations:
            raise LookupError(conversation_id)
        return dict(self.conversations[conversation_id])

    async def delete_message(self, conversation_id, message_id, sender_id):
        if self.delete_error is not None:
            raise self.delete_error
        for row in self.rows[conversation_id]:
            if row["_id"] == message_id and row["sender_id"] == sender_id and row["deleted_at"] is None:
                row["deleted_at"] = self.clock().isoformat()
                if self.echo:
                    await self.publish_row(row, "update")
                return dict(row)
        return None

    async def mark_conversation_read(self, conversation_id, reader_id, read_at):
        self.read_calls.append((conversation_id, reader_id, read_at))
        if self.read_error is not None:
            raise self.read_error
        marked = 0
        for row in self.rows[conversation_id]:
            if row["sender_id"] != reader_id and row["read_at"] is None and row["deleted_at"] is None:
                row["read_at"] = read_at.isoformat()
                marked += 1
        return marked

    # -- realtime ----------------------------------------------------------

    async def subscribe_to_conversation(self, conversation_id, on_event):
        sub = FakeSubscription(self, conversation_id, on_event)
        self.subscriptions[conversation_id].append(sub)
        return sub

    async def broadcast(self, conversation_id, payload):
        self.broadcasts.append((conversation_id, payload))
        for sub in list(self.subscriptions[conversation_id]):
            await sub.handler(payload)

    # -- presence ----------------------------------------------------------

    async def get_profiles_presence(self, user_ids):
        self.presence_calls += 1
        if self.presence_error is not None:
            raise self.presence_error
        return [dict(self.presence_rows[u], user_id=u) for u in user_ids if u in self.presence_rows]

    async def set_own_presence(self, user_id, is_online):
        self.own_presence_writes.append((user_id, is_online))

    # -- notifications -----------------------------------------------------

    async def get_notification_preferences(self, user_id):
        if self.preferences_error is not None:
            raise self.preferences_error
        return self.preferences.get(user_id)

    async def save_notification(self, record):
        if self.save_error is not None:
            raise self.save_error
        self.saved_notifications.append(record)

    async def claim_notification(self, subject_id, recipient_id):
        if self.claim_error is not None:
            raise self.claim_error
        key = (subject_id, recipient_id)
        if key in self.claims:
            return False
        self.claims.add(key)
        return True

    async def send_push_notification(self, recipient_ids, title, body, data):
        self.push_calls.append((list(recipient_ids), title, body, data))
        if self.push_error is not None:
            raise self.push_error


class AlertSink:

    def __init__(self) -> None:
        self.records = []
        self.error: Optional[Exception] = None

    async def __call__(self, record) -> None:
        if self.error is not None:
            raise self.error
        self.records.append(record)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def backend(clock: FakeClock) -> FakeBackend:
    return FakeBackend(clock)


@pytest_asyncio.fixture()
async def presence(backend: FakeBackend, clock: FakeClock):
    store = PresenceStore(backend, ttl_seconds=60, poll_interval_seconds=30, report_debounce_seconds=30, now_func=clock)
    yield store
    await store.close()


@pytest.fixture()
def alerts() -> AlertSink:
    return AlertSink()


@pytest.fixture()
def bridge(backend: FakeBackend, presence: PresenceStore, alerts: AlertSink, clock: FakeClock) -> NotificationBridge:
    return NotificationBridge(backend, presence, local_alert=alerts, default_timezone="UTC", now_func=clock)


@pytest.fixture()
def conversations(backend: FakeBackend) -> ConversationCache:
    return ConversationCache(backend)
