from datetime import datetime
from typing import Literal, Optional, TypedDict


MessageKind = Literal["text", "photo", "voice", "gif", "sticker"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    message_type: MessageKind
    created_at: datetime
    # idempotency key chosen by the sending client
    client_message_id: Optional[str]
    deleted_at: Optional[datetime]
    read_at: Optional[datetime]
