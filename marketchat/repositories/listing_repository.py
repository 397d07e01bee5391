from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.database.store_errors import store_call
from marketchat.models.listing import ListingDocument


class ListingRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("listings")

    async def get(self, listing_id: str) -> Optional[ListingDocument]:
        async with store_call("get listing"):
            return await self._collection.find_one({"_id": listing_id})

    async def list_by_seller(self, seller_id: str) -> List[ListingDocument]:
        async with store_call("list seller listings"):
            cursor = self._collection.find({"seller_id": seller_id})
            return [doc async for doc in cursor]

    async def delete_by_seller(self, seller_id: str) -> int:
        async with store_call("delete seller listings"):
            result = await self._collection.delete_many({"seller_id": seller_id})
        return result.deleted_count or 0
