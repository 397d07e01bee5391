from typing import Any, Dict, Iterable, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.database.store_errors import store_call
from marketchat.models.device import PushPlatform
from marketchat.utils.clock import to_bson, utc_now


class DeviceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["devices"]

    async def register(self, user_id: str, platform: PushPlatform, token: str) -> Dict[str, Any]:
        async with store_call("register device"):
            await self.collection.update_one(
                {"user_id": user_id, "platform": platform, "token": token},
                {"$set": {"last_seen_at": to_bson(utc_now())}},
                upsert=True,
            )
        return {"user_id": user_id, "platform": platform, "token": token}

    async def get_tokens(self, user_ids: Iterable[str], platform: PushPlatform | None = None) -> List[str]:
        query: Dict[str, Any] = {"user_id": {"$in": list(user_ids)}}
        if platform:
            query["platform"] = platform
        async with store_call("list device tokens"):
            cur = self.collection.find(query)
            items = await cur.to_list(length=500)
        return [it["token"] for it in items]

    async def delete_for_user(self, user_id: str) -> int:
        async with store_call("delete devices"):
            result = await self.collection.delete_many({"user_id": user_id})
        return result.deleted_count or 0
