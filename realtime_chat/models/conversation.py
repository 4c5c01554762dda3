from datetime import datetime
from typing import List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted pair of user ids
    participants: List[str]
    last_message_id: Optional[str]
    last_message_at: datetime
    created_at: datetime
