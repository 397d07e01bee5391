import json
import logging
from typing import Any, Callable, Awaitable, Dict, Iterable

from marketchat.schemas.conversation import Conversation, Message
from marketchat.utils.realtime_bus import conversation_channel, get_bus, user_channel


logger = logging.getLogger(__name__)

EVENT_CONVERSATION = "conversation"
EVENT_MESSAGE = "message"
EVENT_DELETED = "deleted"


class ChatEventPublisher:
    """Publishing is best effort: a bus failure is logged, never raised."""

    def __init__(self, bus_provider: Callable[[], Awaitable[Any]] = get_bus) -> None:
        self._bus_provider = bus_provider

    async def _publish(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            bus = await self._bus_provider()
            await bus.publish(channel, json.dumps(payload))
        except Exception:
            logger.warning("Failed to publish %s event on %s", payload.get("type"), channel, exc_info=True)

    async def conversation_changed(self, conversation_id: str, actor_ids: Iterable[str]) -> None:
        payload = {"type": EVENT_CONVERSATION, "conversationId": conversation_id}
        for actor_id in set(actor_ids):
            await self._publish(user_channel(actor_id), payload)
        await self._publish(conversation_channel(conversation_id), payload)

    async def message_sent(self, conversation: Conversation, message: Message) -> None:
        await self._publish(
            conversation_channel(conversation.id),
            {
                "type": EVENT_MESSAGE,
                "conversationId": conversation.id,
                "message": message.model_dump(mode="json", by_alias=True),
            },
        )
        payload = {"type": EVENT_CONVERSATION, "conversationId": conversation.id}
        for actor_id in conversation.participants:
            await self._publish(user_channel(actor_id), payload)

    async def conversation_deleted(self, conversation_id: str, actor_ids: Iterable[str]) -> None:
        await self._publish(
            conversation_channel(conversation_id),
            {"type": EVENT_DELETED, "conversationId": conversation_id},
        )
        payload = {"type": EVENT_CONVERSATION, "conversationId": conversation_id}
        for actor_id in set(actor_ids):
            await self._publish(user_channel(actor_id), payload)
