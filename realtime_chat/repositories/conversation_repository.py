from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from realtime_chat.models.conversation import ConversationDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        convo = await self.collection.find_one({"_id": self._to_object_id(conversation_id)})
        if convo:
            convo["_id"] = str(convo["_id"])
        return convo

    async def update_on_new_message(self, conversation_id: str, message_id: str, sent_at: datetime) -> None:
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id)},
            {"$set": {"last_message_id": message_id, "last_message_at": sent_at}},
        )

    def _to_object_id(self, oid_hex: str):
        try:
            return ObjectId(oid_hex)
        except InvalidId:
            return oid_hex
