from datetime import datetime
from typing import Optional, TypedDict


class ProfileDocument(TypedDict, total=False):

    _id: str
    user_id: str
    is_online: bool
    # refreshed by every own-presence write, online or not
    last_seen: Optional[datetime]
