import logging
from typing import Any, Awaitable, Callable

from marketchat.repositories.device_repository import DeviceRepository
from marketchat.schemas.conversation import NewMessageEvent
from marketchat.utils.notifications import get_push


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Message"


class NotificationDispatcher:

    def __init__(self, device_repo: DeviceRepository, push_provider: Callable[[], Awaitable[Any]] = get_push) -> None:
        self._device_repo = device_repo
        self._push_provider = push_provider

    async def dispatch(self, event: NewMessageEvent) -> int:
        if not event.recipient_ids:
            return 0
        push = await self._push_provider()
        if not getattr(push, "enabled", False):
            return 0
        tokens = await self._device_repo.get_tokens(event.recipient_ids, platform="fcm")
        if not tokens:
            logger.debug("No device tokens for recipients of %s", event.conversation_id)
            return 0
        return await push.send_fcm(
            tokens,
            title=event.listing_title or DEFAULT_TITLE,
            body=event.text,
            data={"conversationId": event.conversation_id},
        )
