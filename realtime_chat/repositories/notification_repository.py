from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from realtime_chat.models.notification import NotificationDocument, NotificationPreferencesDocument
from realtime_chat.schemas.message import parse_timestamp


class NotificationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def history(self):
        return self._db["notification_history"]

    @property
    def preferences(self):
        return self._db["notification_preferences"]

    async def ensure_indexes(self) -> None:
        await self.history.create_index([("recipient_id", ASCENDING), ("created_at", DESCENDING)])
        await self.preferences.create_index([("user_id", ASCENDING)], unique=True)

    async def save(self, record: Dict[str, Any]) -> None:
        doc: NotificationDocument = dict(record)  # type: ignore[assignment]
        record_id = doc.pop("id")
        for field in ("created_at", "delivered_at", "opened_at"):
            if doc.get(field):
                doc[field] = parse_timestamp(doc[field])
        await self.history.update_one({"_id": record_id}, {"$set": doc}, upsert=True)

    async def get_preferences(self, user_id: str) -> Optional[NotificationPreferencesDocument]:
        return await self.preferences.find_one({"user_id": user_id}, {"_id": 0, "user_id": 0})
