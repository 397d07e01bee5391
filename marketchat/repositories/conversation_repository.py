from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from marketchat.database.store_errors import store_call
from marketchat.models.conversation import ConversationDocument
from marketchat.repositories.pagination import before_cursor, decode_cursor, encode_cursor
from marketchat.schemas.conversation import Conversation
from marketchat.utils.clock import to_bson


INBOX_SORT = [("last_message_timestamp", DESCENDING), ("_id", DESCENDING)]


class ConversationRepository:
    """Conversation documents.

    Every mutation is a single-document atomic update. ``visible_to`` and
    ``read_by`` only change through ``$addToSet``/``$pull`` so that two
    participants writing at once never overwrite each other.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index(
            [("visible_to", ASCENDING), ("last_message_timestamp", DESCENDING)]
        )

    async def get(self, conversation_id: str, session=None) -> Optional[Conversation]:
        async with store_call("get conversation"):
            doc = await self.collection.find_one({"_id": conversation_id}, session=session)
        return Conversation.from_document(doc) if doc else None

    async def insert(self, doc: ConversationDocument) -> Conversation:
        # _id is the derived identity, so a concurrent insert fails with a
        # duplicate key and surfaces as ConflictError
        async with store_call("create conversation"):
            await self.collection.insert_one(dict(doc))
        return Conversation.from_document(doc)

    async def resurface_for(self, conversation_id: str, actor_id: str, now: datetime) -> Optional[Conversation]:
        """Add ``actor_id`` back to ``visible_to`` if it was hidden for them.

        Returns None when the conversation is missing or already visible.
        """
        async with store_call("resurface conversation"):
            doc = await self.collection.find_one_and_update(
                {"_id": conversation_id, "participants": actor_id, "visible_to": {"$ne": actor_id}},
                {
                    "$addToSet": {"visible_to": actor_id},
                    "$set": {"last_message_timestamp": to_bson(now)},
                },
                return_document=ReturnDocument.AFTER,
            )
        return Conversation.from_document(doc) if doc else None

    async def apply_new_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        timestamp: datetime,
        participants: Sequence[str],
        session=None,
    ) -> Optional[Conversation]:
        async with store_call("update conversation summary"):
            doc = await self.collection.find_one_and_update(
                {"_id": conversation_id, "participants": sender_id},
                {
                    "$set": {
                        "last_message_text": text,
                        "last_message_sender_id": sender_id,
                        "last_message_timestamp": to_bson(timestamp),
                        "read_by": [sender_id],
                    },
                    "$addToSet": {"visible_to": {"$each": list(participants)}},
                },
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        return Conversation.from_document(doc) if doc else None

    async def add_reader(self, conversation_id: str, actor_id: str) -> Optional[Conversation]:
        async with store_call("mark conversation read"):
            doc = await self.collection.find_one_and_update(
                {"_id": conversation_id, "participants": actor_id},
                {"$addToSet": {"read_by": actor_id}},
                return_document=ReturnDocument.AFTER,
            )
        return Conversation.from_document(doc) if doc else None

    async def remove_viewer(self, conversation_id: str, actor_id: str) -> Optional[Conversation]:
        async with store_call("hide conversation"):
            doc = await self.collection.find_one_and_update(
                {"_id": conversation_id, "participants": actor_id},
                {"$pull": {"visible_to": actor_id}},
                return_document=ReturnDocument.AFTER,
            )
        return Conversation.from_document(doc) if doc else None

    async def delete_if_invisible(self, conversation_id: str) -> bool:
        # conditional so a concurrent resurface wins over the purge
        async with store_call("purge conversation"):
            result = await self.collection.delete_one(
                {"_id": conversation_id, "visible_to": {"$size": 0}}
            )
        return bool(result.deleted_count)

    async def remove_participant(self, conversation_id: str, actor_id: str) -> Optional[List[str]]:
        """Drop ``actor_id`` from the thread; returns the remaining participants."""
        async with store_call("remove participant"):
            doc = await self.collection.find_one_and_update(
                {"_id": conversation_id},
                {"$pull": {"participants": actor_id, "visible_to": actor_id}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            return None
        return list(doc.get("participants") or [])

    async def delete_if_abandoned(self, conversation_id: str) -> bool:
        async with store_call("delete abandoned conversation"):
            result = await self.collection.delete_one(
                {"_id": conversation_id, "participants": {"$size": 0}}
            )
        return bool(result.deleted_count)

    async def ids_for_participant(self, actor_id: str) -> List[str]:
        async with store_call("list participant conversations"):
            cursor = self.collection.find({"participants": actor_id}, {"_id": 1})
            return [str(doc["_id"]) async for doc in cursor]

    async def find_visible_for(self, actor_id: str, limit: int = 1000) -> List[Conversation]:
        async with store_call("list visible conversations"):
            cursor = self.collection.find({"visible_to": actor_id}).sort(INBOX_SORT).limit(limit)
            docs = await cursor.to_list(length=limit)
        return [Conversation.from_document(d) for d in docs]

    async def has_unread_for(self, actor_id: str) -> bool:
        """Unread check over every visible thread, answered by the database."""
        async with store_call("check unread"):
            doc = await self.collection.find_one(
                {
                    "visible_to": actor_id,
                    "read_by": {"$ne": actor_id},
                    "last_message_sender_id": {"$ne": actor_id},
                },
                {"_id": 1},
            )
        return doc is not None

    async def list_for_user(
        self, user_id: str, limit: int = 20, cursor: Optional[str] = None
    ) -> Tuple[List[Conversation], Optional[str]]:
        query: Dict[str, Any] = {"visible_to": user_id}
        if cursor:
            ts, conversation_id = decode_cursor(cursor)
            query.update(before_cursor("last_message_timestamp", ts, conversation_id))

        async with store_call("list inbox"):
            cursor_db = self.collection.find(query).sort(INBOX_SORT).limit(limit)
            docs = await cursor_db.to_list(length=limit)
        items = [Conversation.from_document(d) for d in docs]
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = encode_cursor(last.last_message_timestamp, last.id)
        return items, next_cursor
