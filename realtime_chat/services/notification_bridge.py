import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError as SchemaError

from realtime_chat.errors import NotificationDeliveryError
from realtime_chat.schemas.message import Message, MessageType
from realtime_chat.schemas.notification import (
    NotificationChannel,
    NotificationKind,
    NotificationPayload,
    NotificationPreferences,
    NotificationRecord,
)
from realtime_chat.services.presence import PresenceStore
from realtime_chat.services.protocols import ChatBackend


logger = logging.getLogger(__name__)

LocalAlert = Callable[[NotificationRecord], Awaitable[None]]

_MEDIA_BODIES = {
    MessageType.PHOTO: "Sent a photo",
    MessageType.VOICE: "Sent a voice message",
    MessageType.GIF: "Sent a GIF",
    MessageType.STICKER: "Sent a sticker",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def minutes_of_day(value: str) -> int:
    hours, minutes = value.strip().split(":")[:2]
    h, m = int(hours), int(minutes)
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"not a time of day: {value!r}")
    return h * 60 + m


def in_quiet_hours(start: Optional[str], end: Optional[str], local_now: datetime) -> bool:
    """True when ``local_now`` falls inside the daily [start, end] window.

    Both bounds are inclusive. A window whose start is later than its end wraps
    past midnight; equal bounds mean no window.
    """
    if not start or not end:
        return False
    start_min, end_min = minutes_of_day(start), minutes_of_day(end)
    if start_min == end_min:
        return False
    current = local_now.hour * 60 + local_now.minute
    if start_min < end_min:
        return start_min <= current <= end_min
    return current >= start_min or current <= end_min


class Decision(str, Enum):

    LOCAL = "local"
    PUSH = "push"
    DUPLICATE = "duplicate"
    SENDER = "sender"
    DELETED = "deleted"
    VIEWING = "viewing"
    PREFERENCE = "preference"
    QUIET_HOURS = "quiet_hours"


@dataclass
class NotificationOutcome:
    decision: Decision
    record: Optional[NotificationRecord] = None

    @property
    def notified(self) -> bool:
        return self.decision in (Decision.LOCAL, Decision.PUSH)


class ViewingRegistry:
    """Which conversation each user currently has on screen.

    Local sessions ``enter``/``leave`` and are counted, so a user with two open
    sockets on one conversation keeps viewing it until both have left.
    ``set``/``clear`` apply announcements from other processes and never
    override a local hold.
    """

    def __init__(self) -> None:
        self._viewing: Dict[str, str] = {}
        self._holds: Dict[Tuple[str, str], int] = {}

    def enter(self, user_id: str, conversation_id: str) -> None:
        key = (user_id, conversation_id)
        self._holds[key] = self._holds.get(key, 0) + 1
        self._viewing[user_id] = conversation_id

    def leave(self, user_id: str, conversation_id: str) -> bool:
        """Drop one local hold. Returns True when the user stopped viewing."""
        key = (user_id, conversation_id)
        remaining = self._holds.get(key, 0) - 1
        if remaining > 0:
            self._holds[key] = remaining
            return False
        self._holds.pop(key, None)
        if self._viewing.get(user_id) != conversation_id:
            return False
        for held_user, held_conversation in self._holds:
            if held_user == user_id:
                # fall back to another conversation still open on screen
                self._viewing[user_id] = held_conversation
                return False
        self._viewing.pop(user_id, None)
        return True

    def held(self, user_id: str, conversation_id: str) -> bool:
        return self._holds.get((user_id, conversation_id), 0) > 0

    def set(self, user_id: str, conversation_id: Optional[str]) -> None:
        if conversation_id is not None:
            self._viewing[user_id] = conversation_id
            return
        current = self._viewing.get(user_id)
        if current is not None:
            self.clear(user_id, current)

    def clear(self, user_id: str, conversation_id: str) -> None:
        if self._viewing.get(user_id) == conversation_id and not self.held(user_id, conversation_id):
            self._viewing.pop(user_id, None)

    def current(self, user_id: str) -> Optional[str]:
        return self._viewing.get(user_id)

    def is_viewing(self, user_id: str, conversation_id: str) -> bool:
        return self._viewing.get(user_id) == conversation_id


class NotificationBridge:
    """Decides whether a confirmed message becomes an alert, and delivers it.

    Decisions are remembered per (subject, recipient) so a replayed echo or a
    retried send never produces a second alert. Delivery problems are logged
    and recorded on the record; they never reach the caller.
    """

    def __init__(
        self,
        backend: ChatBackend,
        presence: PresenceStore,
        viewing: Optional[ViewingRegistry] = None,
        local_alert: Optional[LocalAlert] = None,
        default_timezone: str = "UTC",
        now_func: Callable[[], datetime] = _utcnow,
        max_remembered: int = 10_000,
    ) -> None:
        self._backend = backend
        self._presence = presence
        self.viewing = viewing or ViewingRegistry()
        self._local_alert = local_alert
        self._default_tz = default_timezone
        self._now = now_func
        self._max_remembered = max_remembered
        self._decided: "OrderedDict[Tuple[str, str], Decision | None]" = OrderedDict()
        self._records: Dict[str, NotificationRecord] = {}
        self._record_by_key: Dict[Tuple[str, str], str] = {}

    def set_local_alert(self, local_alert: Optional[LocalAlert]) -> None:
        self._local_alert = local_alert

    # -- entry points ------------------------------------------------------

    async def notify_recipients(self, message: Message, recipient_ids: Iterable[str]) -> List[NotificationOutcome]:
        return [await self.evaluate_message(message, recipient_id) for recipient_id in recipient_ids]

    async def evaluate_message(self, message: Message, recipient_id: str) -> NotificationOutcome:
        if message.is_deleted:
            return NotificationOutcome(Decision.DELETED)
        body = _MEDIA_BODIES.get(message.type) or message.content[:100]
        payload = NotificationPayload(
            conversation_id=message.conversation_id,
            message_id=message.id,
            type=NotificationKind.MESSAGE.value,
        )
        return await self._evaluate(
            subject_id=message.id,
            recipient_id=recipient_id,
            sender_id=message.sender_id,
            kind=NotificationKind.MESSAGE,
            title="New message",
            body=body,
            payload=payload,
        )

    async def notify_match(self, recipient_id: str, match_id: str, matched_name: str = "Someone") -> NotificationOutcome:
        payload = NotificationPayload(message_id=None, conversation_id=None, type=NotificationKind.MATCH.value)
        return await self._evaluate(
            subject_id=f"match:{match_id}",
            recipient_id=recipient_id,
            sender_id=None,
            kind=NotificationKind.MATCH,
            title="New match",
            body=f"You matched with {matched_name}",
            payload=payload,
        )

    # -- decision ----------------------------------------------------------

    async def _evaluate(
        self,
        subject_id: str,
        recipient_id: str,
        sender_id: Optional[str],
        kind: NotificationKind,
        title: str,
        body: str,
        payload: NotificationPayload,
    ) -> NotificationOutcome:
        key = (subject_id, recipient_id)
        if key in self._decided:
            record_id = self._record_by_key.get(key)
            return NotificationOutcome(Decision.DUPLICATE, self._records.get(record_id) if record_id else None)
        # reserve before the first await so a concurrent echo sees the key
        self._remember(key, None)
        try:
            return await self._route(key, sender_id, kind, title, body, payload)
        except Exception:
            # release the reservation; a replayed echo may try again
            self._decided.pop(key, None)
            raise

    async def _route(
        self,
        key: Tuple[str, str],
        sender_id: Optional[str],
        kind: NotificationKind,
        title: str,
        body: str,
        payload: NotificationPayload,
    ) -> NotificationOutcome:
        recipient_id = key[1]
        if sender_id is not None and recipient_id == sender_id:
            return self._decide(key, Decision.SENDER)

        online = self._presence.is_online(recipient_id)
        if online and payload.conversation_id and self.viewing.is_viewing(recipient_id, payload.conversation_id):
            return self._decide(key, Decision.VIEWING)

        preferences = await self._preferences(recipient_id)
        if not preferences.allows(kind):
            return self._decide(key, Decision.PREFERENCE)
        if self._quiet_now(preferences):
            logger.info("Quiet hours for %s, skipping %s notification", recipient_id, kind.value)
            return self._decide(key, Decision.QUIET_HOURS)

        channel = NotificationChannel.LOCAL if online else NotificationChannel.PUSH
        if channel is NotificationChannel.PUSH and not preferences.push_enabled:
            return self._decide(key, Decision.PREFERENCE)
        if not await self._claim(key):
            logger.info("Notification %s for %s already claimed by another instance", key[0], recipient_id)
            return self._decide(key, Decision.DUPLICATE)

        record = NotificationRecord(
            recipient_id=recipient_id,
            title=title,
            body=body,
            payload=payload,
            kind=kind,
            channel=channel,
            created_at=self._now(),
        )
        self._records[record.id] = record
        self._record_by_key[key] = record.id
        outcome = self._decide(key, Decision(channel.value), record)

        await self._deliver(record)
        await self._log_history(record)
        return outcome

    def _decide(self, key: Tuple[str, str], decision: Decision, record: NotificationRecord | None = None) -> NotificationOutcome:
        self._remember(key, decision)
        if decision not in (Decision.LOCAL, Decision.PUSH):
            logger.debug("Suppressed notification %s for %s: %s", key[0], key[1], decision.value)
        return NotificationOutcome(decision, record)

    def _remember(self, key: Tuple[str, str], decision: Decision | None) -> None:
        self._decided[key] = decision
        self._decided.move_to_end(key)
        while len(self._decided) > self._max_remembered:
            old_key, _ = self._decided.popitem(last=False)
            record_id = self._record_by_key.pop(old_key, None)
            if record_id is not None:
                record = self._records.get(record_id)
                if record is not None and not record.is_unread:
                    self._records.pop(record_id, None)

    async def _claim(self, key: Tuple[str, str]) -> bool:
        """Take the shared (subject, recipient) slot so only one process delivers."""
        try:
            return bool(await self._backend.claim_notification(key[0], key[1]))
        except Exception as exc:
            logger.warning("Could not claim notification %s for %s, delivering anyway: %s", key[0], key[1], exc)
            return True

    async def _preferences(self, recipient_id: str) -> NotificationPreferences:
        try:
            row = await self._backend.get_notification_preferences(recipient_id)
        except Exception as exc:
            logger.warning("Could not load notification preferences for %s: %s", recipient_id, exc)
            return NotificationPreferences()
        if not row:
            return NotificationPreferences()
        try:
            return NotificationPreferences.model_validate(row)
        except SchemaError as exc:
            logger.warning("Malformed notification preferences for %s, using defaults: %s", recipient_id, exc)
            return NotificationPreferences()

    def _quiet_now(self, preferences: NotificationPreferences) -> bool:
        tz_name = preferences.timezone or self._default_tz
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, using %s", tz_name, self._default_tz)
            tz = ZoneInfo(self._default_tz)
        try:
            return in_quiet_hours(preferences.quiet_hours_start, preferences.quiet_hours_end, self._now().astimezone(tz))
        except ValueError as exc:
            logger.warning("Ignoring malformed quiet hours: %s", exc)
            return False

    # -- delivery ----------------------------------------------------------

    async def _deliver(self, record: NotificationRecord) -> None:
        try:
            if record.channel is NotificationChannel.LOCAL:
                if self._local_alert is None:
                    raise NotificationDeliveryError("no in-app alert handler registered")
                await self._local_alert(record)
            else:
                data: Dict[str, Any] = {
                    "type": record.payload.type,
                    "conversation_id": record.payload.conversation_id or "",
                    "message_id": record.payload.message_id or "",
                    "notification_id": record.id,
                }
                await self._backend.send_push_notification([record.recipient_id], record.title, record.body, data)
        except Exception as exc:
            logger.warning("Notification %s to %s failed via %s: %s", record.id, record.recipient_id, record.channel.value, exc)
            record.mark_failed(str(exc))
            return
        record.mark_delivered(self._now())

    async def _log_history(self, record: NotificationRecord) -> None:
        try:
            await self._backend.save_notification(record.model_dump(mode="json"))
        except Exception as exc:
            logger.warning("Could not write notification history for %s: %s", record.id, exc)

    # -- record state ------------------------------------------------------

    def get(self, record_id: str) -> Optional[NotificationRecord]:
        return self._records.get(record_id)

    def records(self, recipient_id: Optional[str] = None) -> List[NotificationRecord]:
        items = [r for r in self._records.values() if recipient_id is None or r.recipient_id == recipient_id]
        return sorted(items, key=lambda r: r.created_at)

    def unread_count(self, recipient_id: str) -> int:
        return sum(1 for r in self._records.values() if r.recipient_id == recipient_id and r.is_unread)

    def mark_delivered(self, record_id: str) -> Optional[NotificationRecord]:
        record = self._records.get(record_id)
        if record is not None:
            record.mark_delivered(self._now())
        return record

    def mark_opened(self, record_id: str) -> Optional[NotificationRecord]:
        record = self._records.get(record_id)
        if record is not None:
            record.mark_opened(self._now())
        return record

    def mark_conversation_opened(self, recipient_id: str, conversation_id: str) -> int:
        opened = 0
        for record in self._records.values():
            if record.recipient_id != recipient_id or record.payload.conversation_id != conversation_id:
                continue
            if record.is_unread:
                record.mark_opened(self._now())
                opened += 1
        return opened
