from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class MessageEvent(BaseModel):
    """Insert/update of a persisted message row, re-broadcast to every subscriber."""

    type: Literal["message"] = "message"
    action: Literal["insert", "update"] = "insert"
    row: Dict[str, Any]


class TypingFrame(BaseModel):

    type: Literal["typing"] = "typing"
    conversation_id: str
    user_id: str
    is_typing: bool
    expires_at: Optional[datetime] = None


class PresenceFrame(BaseModel):

    type: Literal["presence"] = "presence"
    user_id: str
    is_online: bool
    last_seen: Optional[datetime] = None


class ViewingFrame(BaseModel):

    type: Literal["viewing"] = "viewing"
    user_id: str
    conversation_id: Optional[str] = None


class ReadFrame(BaseModel):
    """Everything from other senders up to ``read_at`` was seen by ``reader_id``."""

    type: Literal["read"] = "read"
    conversation_id: str
    reader_id: str
    read_at: datetime


RealtimeEvent = Annotated[
    Union[MessageEvent, TypingFrame, PresenceFrame, ViewingFrame, ReadFrame],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(RealtimeEvent)


def parse_event(raw: str | bytes | Dict[str, Any]):
    if isinstance(raw, (str, bytes)):
        return _event_adapter.validate_json(raw)
    return _event_adapter.validate_python(raw)


def dump_event(event) -> str:
    return event.model_dump_json()
