"""Shared test fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from mongomock_motor import AsyncMongoMockClient

from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.device_repository import DeviceRepository
from marketchat.repositories.listing_repository import ListingRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.services.account_cleanup_service import AccountCleanupService
from marketchat.services.chat_service import ChatService
from marketchat.services.events import ChatEventPublisher
from marketchat.services.notification_dispatcher import NotificationDispatcher
from marketchat.services.subscriptions import InboxWatcher, ThreadWatcher
from marketchat.utils.realtime_bus import InProcessBus


USERS = [
    {"_id": "u1", "username": "alice"},
    {"_id": "u2", "username": "bob"},
    {"_id": "u3", "username": "carol"},
]

LISTINGS = [
    {"_id": "L9", "title": "Road bike", "seller_id": "u2", "image_urls": ["https://cdn.example.com/listings/L9/1.jpg"]},
    {"_id": "L7", "title": "Desk lamp", "seller_id": "u3", "image_urls": []},
    {
        "_id": "L5",
        "title": "Camping tent",
        "seller_id": "u1",
        "image_urls": [
            "https://cdn.example.com/listings/L5/1.jpg",
            "https://cdn.example.com/listings/L5/2.jpg",
        ],
    },
]


async def seed_marketplace(db) -> None:
    await db["users"].insert_many([dict(u) for u in USERS])
    await db["listings"].insert_many([dict(listing) for listing in LISTINGS])


@pytest.fixture
def db():
    return AsyncMongoMockClient()["marketchat_test"]


@pytest.fixture
async def marketplace(db):
    await seed_marketplace(db)
    return db


@pytest.fixture
def bus() -> InProcessBus:
    return InProcessBus()


@pytest.fixture
def bus_provider(bus):
    async def provider():
        return bus

    return provider


@pytest.fixture
def push() -> MagicMock:
    client = MagicMock()
    client.enabled = True
    client.send_fcm = AsyncMock(return_value=1)
    return client


@pytest.fixture
def dispatcher(db, push) -> NotificationDispatcher:
    return NotificationDispatcher(DeviceRepository(db), push_provider=AsyncMock(return_value=push))


@pytest.fixture
def service(marketplace, bus_provider, dispatcher) -> ChatService:
    db = marketplace
    return ChatService(
        ConversationRepository(db),
        MessageRepository(db),
        ListingRepository(db),
        UserRepository(db),
        ChatEventPublisher(bus_provider),
        dispatcher=dispatcher,
    )


@pytest.fixture
def inbox_watcher(db, bus_provider) -> InboxWatcher:
    return InboxWatcher(ConversationRepository(db), bus_provider=bus_provider)


@pytest.fixture
def thread_watcher(db, bus_provider) -> ThreadWatcher:
    return ThreadWatcher(ConversationRepository(db), MessageRepository(db), bus_provider=bus_provider)


@pytest.fixture
def media_store() -> MagicMock:
    store = MagicMock()
    store.delete_url = AsyncMock(return_value=True)
    return store


@pytest.fixture
def cleanup_service(marketplace, bus_provider, media_store) -> AccountCleanupService:
    db = marketplace
    return AccountCleanupService(
        ConversationRepository(db),
        MessageRepository(db),
        ListingRepository(db),
        UserRepository(db),
        DeviceRepository(db),
        ChatEventPublisher(bus_provider),
        media_store=media_store,
    )
