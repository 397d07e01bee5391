import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from marketchat.config import get_settings


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> AsyncIOMotorDatabase:
    global _client, _database
    if _database is not None:
        return _database
    settings = get_settings()
    _client = AsyncIOMotorClient(settings.MONGO_URL, tz_aware=True)
    _database = _client[settings.MONGO_DB_NAME]
    logger.info("Connected to MongoDB database %s", settings.MONGO_DB_NAME)
    return _database


async def close_mongo_connection() -> None:
    global _client, _database
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _database = None


def get_database() -> AsyncIOMotorDatabase:
    if _database is None:
        raise RuntimeError("MongoDB is not connected; call connect_to_mongo() first")
    return _database


def get_client() -> Optional[AsyncIOMotorClient]:
    return _client


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
