from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from marketchat.database.store_errors import store_call
from marketchat.errors import ValidationError
from marketchat.models.message import MessageDocument
from marketchat.repositories.pagination import before_cursor, decode_cursor, encode_cursor
from marketchat.schemas.conversation import Message
from marketchat.utils.clock import to_bson


def _to_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid message id: {value!r}") from None


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("timestamp", ASCENDING), ("_id", ASCENDING)]
        )

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        timestamp: datetime,
        session=None,
    ) -> Message:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "timestamp": to_bson(timestamp),
        }
        async with store_call("save message"):
            result = await self.collection.insert_one(dict(doc), session=session)
        doc["_id"] = result.inserted_id
        return Message.from_document(doc)

    async def get(self, message_id: str) -> Optional[Message]:
        async with store_call("get message"):
            doc = await self.collection.find_one({"_id": _to_object_id(message_id)})
        return Message.from_document(doc) if doc else None

    async def delete_message(self, message_id: str) -> bool:
        async with store_call("delete message"):
            result = await self.collection.delete_one({"_id": _to_object_id(message_id)})
        return bool(result.deleted_count)

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Message], Optional[str]]:
        """Newest page first; items inside a page are chronological."""
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if cursor:
            ts, oid_hex = decode_cursor(cursor)
            query.update(before_cursor("timestamp", ts, _to_object_id(oid_hex)))
        sort = [("timestamp", -1), ("_id", -1)]
        async with store_call("list messages"):
            cur = self.collection.find(query).sort(sort).limit(limit)
            docs = await cur.to_list(length=limit)
        items = [Message.from_document(d) for d in docs]
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = encode_cursor(last.timestamp, last.id)
        return list(reversed(items)), next_cursor

    async def list_recent(self, conversation_id: str, limit: int = 500) -> List[Message]:
        items, _ = await self.get_messages_by_conversation(conversation_id, limit=limit)
        return items

    async def delete_for_conversations(self, conversation_ids: Iterable[str]) -> int:
        ids = list(conversation_ids)
        if not ids:
            return 0
        async with store_call("delete messages"):
            result = await self.collection.delete_many({"conversation_id": {"$in": ids}})
        return result.deleted_count or 0
