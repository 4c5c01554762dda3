from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from realtime_chat.models.device import DeviceDocument, PushPlatform


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("platform", ASCENDING)])

    async def get_tokens(self, user_ids: List[str], platform: PushPlatform = "fcm") -> List[str]:
        cur = self.collection.find({"user_id": {"$in": user_ids}, "platform": platform}, {"token": 1})
        items: List[DeviceDocument] = await cur.to_list(length=100 * max(1, len(user_ids)))
        return list(dict.fromkeys(it["token"] for it in items if it.get("token")))
