from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from realtime_chat.errors import InvalidTransitionError


class NotificationKind(str, Enum):

    MESSAGE = "message"
    MATCH = "match"
    TYPING = "typing"


class NotificationChannel(str, Enum):

    LOCAL = "local"
    PUSH = "push"


class NotificationStatus(str, Enum):

    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    FAILED = "failed"


_NEXT_STATES = {
    NotificationStatus.SENT: {NotificationStatus.DELIVERED, NotificationStatus.OPENED, NotificationStatus.FAILED},
    NotificationStatus.DELIVERED: {NotificationStatus.OPENED},
    NotificationStatus.OPENED: set(),
    NotificationStatus.FAILED: set(),
}


class NotificationPayload(BaseModel):

    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    type: str = NotificationKind.MESSAGE.value


class NotificationRecord(BaseModel):

    id: str = Field(default_factory=lambda: uuid4().hex)
    recipient_id: str
    title: str
    body: str
    payload: NotificationPayload
    kind: NotificationKind = NotificationKind.MESSAGE
    channel: NotificationChannel = NotificationChannel.PUSH
    status: NotificationStatus = NotificationStatus.SENT
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_unread(self) -> bool:
        return self.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED)

    def _move(self, target: NotificationStatus) -> None:
        if target not in _NEXT_STATES[self.status]:
            raise InvalidTransitionError("notification", self.status.value, target.value)
        self.status = target

    def mark_delivered(self, at: datetime | None = None) -> None:
        self._move(NotificationStatus.DELIVERED)
        self.delivered_at = at or datetime.now(timezone.utc)

    def mark_opened(self, at: datetime | None = None) -> None:
        self._move(NotificationStatus.OPENED)
        self.opened_at = at or datetime.now(timezone.utc)

    def mark_failed(self, error: str) -> None:
        self._move(NotificationStatus.FAILED)
        self.error = error


class NotificationPreferences(BaseModel):
    """Per-recipient notification settings; a missing row means defaults."""

    push_enabled: bool = True
    message_notifications: bool = True
    match_notifications: bool = True
    typing_notifications: bool = True
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: Optional[str] = None

    def allows(self, kind: NotificationKind) -> bool:
        if kind is NotificationKind.MESSAGE:
            return self.message_notifications
        if kind is NotificationKind.MATCH:
            return self.match_notifications
        return self.typing_notifications
