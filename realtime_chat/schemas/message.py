from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from realtime_chat.errors import InvalidTransitionError


class MessageType(str, Enum):

    TEXT = "text"
    PHOTO = "photo"
    VOICE = "voice"
    GIF = "gif"
    STICKER = "sticker"


class Pending(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["pending"] = "pending"
    attempt: int = 1


class Sent(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["sent"] = "sent"
    server_id: str


class Failed(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failed"] = "failed"
    reason: str
    retryable: bool = True
    attempt: int = 1


DeliveryState = Annotated[Union[Pending, Sent, Failed], Field(discriminator="status")]


def new_idempotency_key() -> str:
    return uuid4().hex


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class Message(BaseModel):
    """One chat message as seen by the client.

    ``state`` carries the delivery lifecycle. Instances are immutable; every
    transition returns a new ``Message`` so that a stored entry can only change
    through the store that owns it.
    """

    model_config = ConfigDict(frozen=True)

    idempotency_key: Optional[str] = None
    conversation_id: str
    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    created_at: datetime
    deleted_at: Optional[datetime] = None
    # set once the other participant opened the conversation past this message
    read_at: Optional[datetime] = None
    state: DeliveryState = Field(default_factory=Pending)

    @classmethod
    def optimistic(
        cls,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        created_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> "Message":
        return cls(
            idempotency_key=idempotency_key or new_idempotency_key(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=message_type,
            created_at=created_at or datetime.now(timezone.utc),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any], idempotency_key: str | None = None) -> "Message":
        """Build a confirmed message from a backend row or realtime payload."""
        server_id = row.get("_id") or row.get("id")
        if server_id is None:
            raise ValueError("server row has no id")
        deleted_at = row.get("deleted_at")
        read_at = row.get("read_at")
        return cls(
            idempotency_key=row.get("client_message_id") or idempotency_key,
            conversation_id=str(row["conversation_id"]),
            sender_id=str(row["sender_id"]),
            content=row.get("content") or "",
            type=MessageType(row.get("message_type") or row.get("type") or MessageType.TEXT.value),
            created_at=parse_timestamp(row["created_at"]),
            deleted_at=parse_timestamp(deleted_at) if deleted_at else None,
            read_at=parse_timestamp(read_at) if read_at else None,
            state=Sent(server_id=str(server_id)),
        )

    @property
    def id(self) -> str:
        if isinstance(self.state, Sent):
            return self.state.server_id
        return self.idempotency_key or ""

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def server_id(self) -> Optional[str]:
        return self.state.server_id if isinstance(self.state, Sent) else None

    @property
    def is_confirmed(self) -> bool:
        return isinstance(self.state, Sent)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def confirmed_by(self, server: "Message") -> "Message":
        """Adopt the authoritative server copy, keeping the local idempotency key.

        Allowed from every state: a late echo may confirm a message that was
        already marked failed, and update events refresh a sent one.
        """
        if not isinstance(server.state, Sent):
            raise InvalidTransitionError("message", self.status, server.status)
        return server.model_copy(update={
            "idempotency_key": self.idempotency_key or server.idempotency_key,
            "read_at": server.read_at or self.read_at,
        })

    def read(self, read_at: datetime) -> "Message":
        if self.read_at is not None:
            return self
        return self.model_copy(update={"read_at": read_at})

    def failed(self, reason: str, retryable: bool = True) -> "Message":
        if not isinstance(self.state, Pending):
            raise InvalidTransitionError("message", self.status, "failed")
        return self.model_copy(
            update={"state": Failed(reason=reason, retryable=retryable, attempt=self.state.attempt)}
        )

    def retried(self) -> "Message":
        if not isinstance(self.state, Failed):
            raise InvalidTransitionError("message", self.status, "pending")
        return self.model_copy(update={"state": Pending(attempt=self.state.attempt + 1)})

    def to_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "type": self.type.value,
            "content": self.content,
            "senderId": self.sender_id,
            "createdAt": self.created_at.isoformat(),
            "readAt": self.read_at.isoformat() if self.read_at else None,
        }
