from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from realtime_chat.errors import PresenceStaleError


class PresenceStatus(str, Enum):

    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class PresenceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    is_online: bool = False
    # last heartbeat reported by the backend
    last_seen: Optional[datetime] = None
    # local time the record was last refreshed
    observed_at: Optional[datetime] = None

    @property
    def status(self) -> PresenceStatus:
        if self.observed_at is None:
            return PresenceStatus.UNKNOWN
        return PresenceStatus.ONLINE if self.is_online else PresenceStatus.OFFLINE

    @property
    def freshness(self) -> Optional[datetime]:
        return self.last_seen or self.observed_at

    def ensure_fresh(self, now: datetime, ttl: timedelta) -> "PresenceRecord":
        if self.is_online and self.freshness is not None and now - self.freshness > ttl:
            raise PresenceStaleError(f"presence for {self.user_id} is older than {ttl}")
        return self

    def demoted(self) -> "PresenceRecord":
        return self.model_copy(update={"is_online": False})

    def to_view(self) -> Dict[str, Any]:
        return {
            "isOnline": self.is_online,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
        }
