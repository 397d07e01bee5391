import logging
from typing import Any, Optional, Tuple

from marketchat.errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from marketchat.models.conversation import ConversationDocument
from marketchat.models.listing import ListingDocument
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.listing_repository import ListingRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.schemas.conversation import (
    Conversation,
    InboxItem,
    InboxPage,
    Message,
    MessagePage,
    NewMessageEvent,
)
from marketchat.services import inbox_rules
from marketchat.services.events import ChatEventPublisher
from marketchat.services.notification_dispatcher import NotificationDispatcher
from marketchat.utils.clock import MonotonicClock, to_bson


logger = logging.getLogger(__name__)


def to_inbox_item(conversation: Conversation, actor_id: str) -> InboxItem:
    other = conversation.other_participant(actor_id)
    display_name = conversation.participant_display_names.get(other or "", inbox_rules.UNKNOWN_DISPLAY_NAME)
    return InboxItem(
        conversation=conversation,
        other_participant_id=other,
        display_name=display_name,
        display_last_message=inbox_rules.display_last_message(conversation.last_message_text),
        is_unread=conversation.is_unread(actor_id),
    )


class ChatService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        listing_repo: ListingRepository,
        user_repo: UserRepository,
        publisher: ChatEventPublisher,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[MonotonicClock] = None,
        client: Any = None,
        use_transactions: bool = False,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._listing_repo = listing_repo
        self._user_repo = user_repo
        self._publisher = publisher
        self._dispatcher = dispatcher
        self._clock = clock or MonotonicClock()
        self._client = client
        self._use_transactions = use_transactions and client is not None

    # -- conversation identity -------------------------------------------

    async def start_conversation_for_listing(
        self, actor_id: str, listing_id: str, other_id: Optional[str] = None
    ) -> Conversation:
        """Open the chat about ``listing_id``, by default with its seller."""
        listing = await self._require_listing(listing_id)
        other_id = other_id or listing.get("seller_id")
        if not other_id:
            raise ValidationError("Listing has no seller to contact")
        if other_id == actor_id:
            raise ValidationError("Cannot start a conversation with yourself")
        return await self.get_or_create_conversation(actor_id, other_id, listing_id, listing=listing)

    async def get_or_create_conversation(
        self,
        actor_id: str,
        other_id: str,
        listing_id: str,
        listing: Optional[ListingDocument] = None,
    ) -> Conversation:
        conversation_id = inbox_rules.conversation_id(actor_id, other_id, listing_id)
        try:
            return await self._get_or_create_once(conversation_id, actor_id, other_id, listing_id, listing)
        except ConflictError:
            logger.info("Concurrent create of conversation %s, re-reading", conversation_id)
        try:
            return await self._get_or_create_once(conversation_id, actor_id, other_id, listing_id, listing)
        except ConflictError as exc:
            raise TransientStoreError(f"Could not open conversation {conversation_id}") from exc

    async def _get_or_create_once(
        self,
        conversation_id: str,
        actor_id: str,
        other_id: str,
        listing_id: str,
        listing: Optional[ListingDocument],
    ) -> Conversation:
        resurfaced = await self._conversation_repo.resurface_for(conversation_id, actor_id, self._clock.now())
        if resurfaced is not None:
            logger.info("Conversation %s resurfaced for %s", conversation_id, actor_id)
            await self._publisher.conversation_changed(conversation_id, [actor_id])
            return resurfaced

        existing = await self._conversation_repo.get(conversation_id)
        if existing is not None:
            return existing

        if listing is None:
            listing = await self._require_listing(listing_id)
        now = self._clock.now()
        image_urls = listing.get("image_urls") or []
        doc: ConversationDocument = {
            "_id": conversation_id,
            "participants": sorted([actor_id, other_id]),
            "participant_display_names": {
                actor_id: await self._display_name(actor_id),
                other_id: await self._display_name(other_id),
            },
            "visible_to": sorted([actor_id, other_id]),
            "read_by": [],
            "listing_id": listing_id,
            "listing_title": listing.get("title") or "",
            "listing_image_url": image_urls[0] if image_urls else "",
            "last_message_text": "",
            "last_message_sender_id": None,
            "last_message_timestamp": to_bson(now),
            "created_at": to_bson(now),
        }
        conversation = await self._conversation_repo.insert(doc)
        logger.info("Created conversation %s for listing %s", conversation_id, listing_id)
        await self._publisher.conversation_changed(conversation_id, conversation.participants)
        return conversation

    # -- messages ----------------------------------------------------------

    async def send_message(self, conversation_id: str, sender_id: str, text: str) -> Message:
        text = inbox_rules.normalize_text(text)
        conversation = await self._require_conversation(conversation_id)
        if not conversation.is_participant(sender_id):
            raise ValidationError("Sender is not a participant of this conversation")

        if self._use_transactions:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    message, updated = await self._write_message(conversation, sender_id, text, session)
        else:
            message, updated = await self._write_message(conversation, sender_id, text, None)

        await self._publisher.message_sent(updated, message)
        await self._notify(
            NewMessageEvent(
                conversation_id=updated.id,
                sender_id=sender_id,
                recipient_ids=[p for p in updated.participants if p != sender_id],
                text=text,
                listing_title=updated.listing_title,
            )
        )
        return message

    async def _write_message(
        self, conversation: Conversation, sender_id: str, text: str, session
    ) -> Tuple[Message, Conversation]:
        timestamp = self._clock.now()
        message = await self._message_repo.save_message(
            conversation.id, sender_id, text, timestamp, session=session
        )
        updated = await self._conversation_repo.apply_new_message(
            conversation.id,
            sender_id,
            text,
            timestamp,
            participants=conversation.participants,
            session=session,
        )
        if updated is None:
            # deleted (or sender removed) between the read and the write
            if session is None:
                await self._message_repo.delete_message(message.id)
            raise NotFoundError(f"Conversation {conversation.id} not found")
        return message, updated

    async def _notify(self, event: NewMessageEvent) -> None:
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher.dispatch(event)
        except Exception:
            logger.exception("Notification dispatch failed for conversation %s", event.conversation_id)

    # -- read state and visibility ----------------------------------------

    async def mark_read(self, conversation_id: str, actor_id: str) -> Conversation:
        updated = await self._conversation_repo.add_reader(conversation_id, actor_id)
        if updated is None:
            conversation = await self._require_conversation(conversation_id)
            raise ValidationError(f"{actor_id} is not a participant of {conversation.id}")
        await self._publisher.conversation_changed(conversation_id, [actor_id])
        return updated

    async def hide_conversation(self, conversation_id: str, actor_id: str) -> bool:
        """Remove the thread from ``actor_id``'s inbox.

        Returns True when nobody can see the thread any more and it was
        purged together with its messages.
        """
        updated = await self._conversation_repo.remove_viewer(conversation_id, actor_id)
        if updated is None:
            conversation = await self._require_conversation(conversation_id)
            raise ValidationError(f"{actor_id} is not a participant of {conversation.id}")

        if updated.visible_to:
            await self._publisher.conversation_changed(conversation_id, [actor_id])
            return False

        purged = await self._conversation_repo.delete_if_invisible(conversation_id)
        if not purged:
            # resurfaced by a concurrent send
            await self._publisher.conversation_changed(conversation_id, [actor_id])
            return False
        deleted = await self._message_repo.delete_for_conversations([conversation_id])
        logger.info("Purged conversation %s and %d messages", conversation_id, deleted)
        await self._publisher.conversation_deleted(conversation_id, updated.participants)
        return True

    # -- queries -----------------------------------------------------------

    async def has_any_unread(self, actor_id: str) -> bool:
        return await self._conversation_repo.has_unread_for(actor_id)

    async def list_inbox(self, actor_id: str, limit: int = 20, cursor: Optional[str] = None) -> InboxPage:
        conversations, next_cursor = await self._conversation_repo.list_for_user(actor_id, limit=limit, cursor=cursor)
        return InboxPage(
            items=[to_inbox_item(c, actor_id) for c in conversations],
            next_cursor=next_cursor,
        )

    async def get_conversation(self, conversation_id: str, actor_id: str) -> Conversation:
        conversation = await self._require_conversation(conversation_id)
        if not conversation.is_participant(actor_id):
            # same answer as a missing thread; ids are guessable
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def get_history(
        self, conversation_id: str, actor_id: str, limit: int = 50, cursor: Optional[str] = None
    ) -> MessagePage:
        await self.get_conversation(conversation_id, actor_id)
        items, next_cursor = await self._message_repo.get_messages_by_conversation(
            conversation_id, limit=limit, cursor=cursor
        )
        return MessagePage(items=items, next_cursor=next_cursor)

    # -- helpers -----------------------------------------------------------

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self._conversation_repo.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def _require_listing(self, listing_id: str) -> ListingDocument:
        listing = await self._listing_repo.get(listing_id)
        if not listing:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    async def _display_name(self, actor_id: str) -> str:
        username = await self._user_repo.get_username(actor_id)
        if not username:
            logger.warning("No username for %s, using placeholder", actor_id)
            return inbox_rules.UNKNOWN_DISPLAY_NAME
        return username
