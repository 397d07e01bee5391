import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from marketchat.errors import ValidationError
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.device_repository import DeviceRepository
from marketchat.repositories.listing_repository import ListingRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.services.events import ChatEventPublisher
from marketchat.utils.media_store import NoopMediaStore


logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    actor_id: str
    conversations_updated: List[str] = field(default_factory=list)
    conversations_deleted: List[str] = field(default_factory=list)
    messages_deleted: int = 0
    listings_deleted: int = 0
    media_deleted: int = 0
    media_failed: int = 0
    devices_deleted: int = 0
    user_deleted: bool = False


class AccountCleanupService:
    """Re-runnable: every step is an independent per-document update."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        listing_repo: ListingRepository,
        user_repo: UserRepository,
        device_repo: DeviceRepository,
        publisher: ChatEventPublisher,
        media_store: Optional[Any] = None,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._listing_repo = listing_repo
        self._user_repo = user_repo
        self._device_repo = device_repo
        self._publisher = publisher
        self._media_store = media_store or NoopMediaStore()

    async def handle_account_deleted(self, deleted_actor_id: str) -> CleanupReport:
        if not deleted_actor_id:
            raise ValidationError("deletedActorId is required")
        logger.info("Starting cleanup for %s", deleted_actor_id)
        report = CleanupReport(actor_id=deleted_actor_id)

        await self._remove_from_conversations(deleted_actor_id, report)
        await self._delete_listings(deleted_actor_id, report)
        report.devices_deleted = await self._device_repo.delete_for_user(deleted_actor_id)
        report.user_deleted = await self._user_repo.delete_user(deleted_actor_id)

        logger.info(
            "Cleanup complete for %s: %d conversations updated, %d deleted, %d listings removed",
            deleted_actor_id,
            len(report.conversations_updated),
            len(report.conversations_deleted),
            report.listings_deleted,
        )
        return report

    async def _remove_from_conversations(self, actor_id: str, report: CleanupReport) -> None:
        for conversation_id in await self._conversation_repo.ids_for_participant(actor_id):
            remaining = await self._conversation_repo.remove_participant(conversation_id, actor_id)
            if remaining is None:
                continue
            if remaining:
                report.conversations_updated.append(conversation_id)
                await self._publisher.conversation_changed(conversation_id, remaining)
                continue
            if await self._conversation_repo.delete_if_abandoned(conversation_id):
                report.messages_deleted += await self._message_repo.delete_for_conversations([conversation_id])
                report.conversations_deleted.append(conversation_id)
                await self._publisher.conversation_deleted(conversation_id, [])

    async def _delete_listings(self, actor_id: str, report: CleanupReport) -> None:
        listings = await self._listing_repo.list_by_seller(actor_id)
        for listing in listings:
            for url in listing.get("image_urls") or []:
                try:
                    if await self._media_store.delete_url(url):
                        report.media_deleted += 1
                except Exception:
                    report.media_failed += 1
                    logger.warning("Image delete failed for listing %s", listing.get("_id"), exc_info=True)
        if listings:
            report.listings_deleted = await self._listing_repo.delete_by_seller(actor_id)
