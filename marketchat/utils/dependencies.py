import secrets

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from marketchat.config import get_settings
from marketchat.database.connection import get_client, mongo_db_dependency
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
from marketchat.utils.media_store import get_media_store
from marketchat.utils.security import InvalidTokenError, decode_access_token


bearer = HTTPBearer()


async def get_current_actor(credentials: HTTPAuthorizationCredentials = Depends(bearer)) -> str:
    try:
        payload = decode_access_token(credentials.credentials)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload["sub"]


async def require_internal_key(x_internal_key: str = Header(default="")) -> None:
    expected = get_settings().INTERNAL_API_KEY
    if not x_internal_key or not secrets.compare_digest(x_internal_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def get_chat_service(db=Depends(mongo_db_dependency)) -> ChatService:
    settings = get_settings()
    return ChatService(
        ConversationRepository(db),
        MessageRepository(db),
        ListingRepository(db),
        UserRepository(db),
        ChatEventPublisher(),
        dispatcher=NotificationDispatcher(DeviceRepository(db)),
        client=get_client(),
        use_transactions=settings.MONGO_USE_TRANSACTIONS,
    )


def get_inbox_watcher(db=Depends(mongo_db_dependency)) -> InboxWatcher:
    return InboxWatcher(ConversationRepository(db), snapshot_limit=get_settings().THREAD_SNAPSHOT_LIMIT)


def get_thread_watcher(db=Depends(mongo_db_dependency)) -> ThreadWatcher:
    return ThreadWatcher(
        ConversationRepository(db),
        MessageRepository(db),
        snapshot_limit=get_settings().THREAD_SNAPSHOT_LIMIT,
    )


def get_account_cleanup_service(db=Depends(mongo_db_dependency)) -> AccountCleanupService:
    return AccountCleanupService(
        ConversationRepository(db),
        MessageRepository(db),
        ListingRepository(db),
        UserRepository(db),
        DeviceRepository(db),
        ChatEventPublisher(),
        media_store=get_media_store(),
    )


def get_device_repository(db=Depends(mongo_db_dependency)) -> DeviceRepository:
    return DeviceRepository(db)
