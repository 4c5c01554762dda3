from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from realtime_chat.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)])
        # one row per client idempotency key within a conversation
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("client_message_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"client_message_id": {"$type": "string"}},
        )

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        client_message_id: Optional[str] = None,
    ) -> Tuple[MessageDocument, bool]:
        """Persist a message; returns ``(row, created)``.

        A repeated ``client_message_id`` returns the row stored by the first
        attempt instead of inserting a second one.
        """
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "message_type": message_type,
            "created_at": datetime.now(timezone.utc),
            "client_message_id": client_message_id,
            "deleted_at": None,
            "read_at": None,
        }
        if client_message_id is None:
            result = await self.collection.insert_one(doc)
            doc["_id"] = str(result.inserted_id)
            return doc, True

        existing = await self.collection.find_one(
            {"conversation_id": conversation_id, "client_message_id": client_message_id}
        )
        if existing:
            existing["_id"] = str(existing["_id"])
            return existing, False
        saved = await self.collection.find_one_and_update(
            {"conversation_id": conversation_id, "client_message_id": client_message_id},
            {"$setOnInsert": doc},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        saved["_id"] = str(saved["_id"])
        return saved, True

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: ts_ms:oid
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = datetime.fromtimestamp(int(ts_str) / 1000.0, tz=timezone.utc)
                query["$or"] = [
                    {"created_at": {"$lt": ts}},
                    {"created_at": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId):
                raise ValueError(f"malformed history cursor: {cursor!r}")
        cur = self.collection.find(query).sort(sort).limit(limit)
        items = await cur.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            last_ts = int(last["created_at"].timestamp() * 1000)
            next_cursor = f"{last_ts}:{last['_id']}"
        # oldest first
        return list(reversed(items)), next_cursor

    async def soft_delete(self, message_id: str, sender_id: str) -> Optional[MessageDocument]:
        try:
            oid = ObjectId(message_id)
        except InvalidId:
            return None
        row = await self.collection.find_one_and_update(
            {"_id": oid, "sender_id": sender_id, "deleted_at": None},
            {"$set": {"deleted_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if row:
            row["_id"] = str(row["_id"])
        return row

    async def mark_read(self, conversation_id: str, reader_id: str, read_at: datetime) -> int:
        """Stamp every unread message the reader did not send; returns rows touched."""
        result = await self.collection.update_many(
            {
                "conversation_id": conversation_id,
                "sender_id": {"$ne": reader_id},
                "read_at": None,
                "created_at": {"$lte": read_at},
                "deleted_at": None,
            },
            {"$set": {"read_at": read_at}},
        )
        return result.modified_count
