from datetime import datetime
from typing import Any, Dict, Literal, Optional, TypedDict


NotificationStatus = Literal["sent", "delivered", "opened", "failed"]


class NotificationDocument(TypedDict, total=False):
    _id: str
    recipient_id: str
    title: str
    body: str
    kind: Literal["message", "match", "typing"]
    channel: Literal["local", "push"]
    payload: Dict[str, Any]
    status: NotificationStatus
    created_at: datetime
    delivered_at: Optional[datetime]
    opened_at: Optional[datetime]
    error: Optional[str]


class NotificationPreferencesDocument(TypedDict, total=False):
    _id: str
    user_id: str
    push_enabled: bool
    message_notifications: bool
    match_notifications: bool
    typing_notifications: bool
    # "HH:MM", recipient local time
    quiet_hours_start: Optional[str]
    quiet_hours_end: Optional[str]
    timezone: Optional[str]
