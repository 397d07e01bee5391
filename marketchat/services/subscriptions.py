import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import pydantic

from marketchat.errors import NotFoundError, TransientStoreError
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.schemas.conversation import (
    Conversation,
    InboxChange,
    InboxSnapshot,
    InboxUpdate,
    Message,
    ThreadChange,
    ThreadSnapshot,
    ThreadUpdate,
)
from marketchat.services.chat_service import to_inbox_item
from marketchat.services.events import EVENT_CONVERSATION, EVENT_DELETED, EVENT_MESSAGE
from marketchat.utils.realtime_bus import conversation_channel, get_bus, user_channel


logger = logging.getLogger(__name__)

BusProvider = Callable[[], Awaitable[Any]]
_CLOSED = None


class Subscription(ABC):
    """One snapshot, then incremental changes.

    The bus subscription is opened before the snapshot is read, so an event
    may repeat state the snapshot already holds.
    """

    def __init__(self, bus_provider: BusProvider, channel: str) -> None:
        self._bus_provider = bus_provider
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._sub = None
        self._task: Optional[asyncio.Task] = None
        self._snapshot_sent = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._sub is not None:
            return
        bus = await self._bus_provider()
        self._sub = await bus.subscribe(self._channel, self._queue.put)
        self._task = asyncio.create_task(self._sub.run())

    async def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._sub is not None:
            await self._sub.cancel()
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._closed:
            raise StopAsyncIteration
        await self.start()
        if not self._snapshot_sent:
            self._snapshot_sent = True
            return await self.snapshot()
        while True:
            raw = await self._queue.get()
            if raw is _CLOSED or self._closed:
                raise StopAsyncIteration
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError):
                payload = None
            if not isinstance(payload, dict):
                logger.warning("Dropping malformed event on %s", self._channel)
                continue
            update = await self._apply(payload)
            if update is not None:
                return update

    @abstractmethod
    async def snapshot(self):
        ...

    @abstractmethod
    async def _apply(self, payload: Dict[str, Any]):
        ...


class InboxSubscription(Subscription):

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        bus_provider: BusProvider,
        actor_id: str,
        snapshot_limit: int = 500,
    ) -> None:
        super().__init__(bus_provider, user_channel(actor_id))
        self._conversation_repo = conversation_repo
        self._actor_id = actor_id
        self._snapshot_limit = snapshot_limit
        self._state: Dict[str, Conversation] = {}

    async def snapshot(self) -> InboxSnapshot:
        conversations = await self._conversation_repo.find_visible_for(self._actor_id, limit=self._snapshot_limit)
        self._state = {c.id: c for c in conversations}
        # over the whole inbox, not just the threads in the snapshot
        has_unread = await self._conversation_repo.has_unread_for(self._actor_id)
        return InboxSnapshot(
            conversations=[to_inbox_item(c, self._actor_id) for c in conversations],
            has_unread=has_unread,
        )

    async def _apply(self, payload: Dict[str, Any]) -> Optional[InboxUpdate]:
        if payload.get("type") != EVENT_CONVERSATION:
            return None
        conversation_id = payload.get("conversationId")
        if not conversation_id:
            return None
        try:
            conversation = await self._conversation_repo.get(conversation_id)
            has_unread = await self._conversation_repo.has_unread_for(self._actor_id)
        except TransientStoreError:
            logger.warning("Could not refresh %s for inbox of %s", conversation_id, self._actor_id)
            return None

        if conversation is not None and self._actor_id in conversation.visible_to:
            kind = "modified" if conversation_id in self._state else "added"
            self._state[conversation_id] = conversation
            return InboxChange(
                kind=kind,
                conversation_id=conversation_id,
                item=to_inbox_item(conversation, self._actor_id),
                has_unread=has_unread,
            )
        if self._state.pop(conversation_id, None) is not None:
            return InboxChange(kind="removed", conversation_id=conversation_id, has_unread=has_unread)
        return None


class ThreadSubscription(Subscription):
    """Messages of one conversation, ascending; ends when it is purged."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        bus_provider: BusProvider,
        conversation_id: str,
        actor_id: str,
        snapshot_limit: int = 500,
    ) -> None:
        super().__init__(bus_provider, conversation_channel(conversation_id))
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._conversation_id = conversation_id
        self._actor_id = actor_id
        self._snapshot_limit = snapshot_limit
        self._seen: Set[str] = set()

    async def snapshot(self) -> ThreadSnapshot:
        conversation = await self._conversation_repo.get(self._conversation_id)
        if conversation is None or not conversation.is_participant(self._actor_id):
            await self.cancel()
            raise NotFoundError(f"Conversation {self._conversation_id} not found")
        messages = await self._message_repo.list_recent(self._conversation_id, limit=self._snapshot_limit)
        self._seen = {m.id for m in messages}
        return ThreadSnapshot(conversation=conversation, messages=messages)

    async def _apply(self, payload: Dict[str, Any]) -> Optional[ThreadUpdate]:
        kind = payload.get("type")
        if kind == EVENT_MESSAGE:
            try:
                message = Message.model_validate(payload.get("message"))
            except pydantic.ValidationError:
                logger.warning("Dropping invalid message event on %s", self._channel)
                return None
            if message.id in self._seen:
                return None
            self._seen.add(message.id)
            return ThreadChange(kind="message", conversation_id=self._conversation_id, message=message)
        if kind == EVENT_DELETED:
            await self.cancel()
            return ThreadChange(kind="deleted", conversation_id=self._conversation_id)
        if kind == EVENT_CONVERSATION:
            try:
                conversation = await self._conversation_repo.get(self._conversation_id)
            except TransientStoreError:
                logger.warning("Could not refresh conversation %s", self._conversation_id)
                return None
            if conversation is None:
                await self.cancel()
                return ThreadChange(kind="deleted", conversation_id=self._conversation_id)
            return ThreadChange(kind="conversation", conversation_id=self._conversation_id, conversation=conversation)
        return None


class InboxWatcher:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        bus_provider: BusProvider = get_bus,
        snapshot_limit: int = 500,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._bus_provider = bus_provider
        self._snapshot_limit = snapshot_limit

    def watch(self, actor_id: str) -> InboxSubscription:
        return InboxSubscription(self._conversation_repo, self._bus_provider, actor_id, self._snapshot_limit)


class ThreadWatcher:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        bus_provider: BusProvider = get_bus,
        snapshot_limit: int = 500,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._bus_provider = bus_provider
        self._snapshot_limit = snapshot_limit

    def watch(self, conversation_id: str, actor_id: str) -> ThreadSubscription:
        return ThreadSubscription(
            self._conversation_repo,
            self._message_repo,
            self._bus_provider,
            conversation_id,
            actor_id,
            self._snapshot_limit,
        )
