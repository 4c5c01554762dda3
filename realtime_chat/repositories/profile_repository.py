from datetime import datetime, timezone
from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from realtime_chat.models.profile import ProfileDocument


class ProfileRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("profiles")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index([("user_id", ASCENDING)], unique=True)

    async def get_presence(self, user_ids: List[str]) -> List[ProfileDocument]:
        cur = self._collection.find(
            {"user_id": {"$in": user_ids}},
            {"_id": 0, "user_id": 1, "is_online": 1, "last_seen": 1},
        )
        return await cur.to_list(length=len(user_ids))

    async def set_presence(self, user_id: str, is_online: bool) -> datetime:
        now = datetime.now(timezone.utc)
        await self._collection.update_one(
            {"user_id": user_id},
            {"$set": {"is_online": is_online, "last_seen": now}},
            upsert=True,
        )
        return now
