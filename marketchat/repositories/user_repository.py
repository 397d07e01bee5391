from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.database.store_errors import store_call


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_username(self, user_id: str) -> Optional[str]:
        async with store_call("get user"):
            user = await self._collection.find_one({"_id": user_id}, {"username": 1})
        if not user:
            return None
        return user.get("username") or None

    async def delete_user(self, user_id: str) -> bool:
        async with store_call("delete user"):
            result = await self._collection.delete_one({"_id": user_id})
        return bool(result.deleted_count)
