import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis

from marketchat.config import get_settings


logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]


def user_channel(actor_id: str) -> str:
    return f"user:{actor_id}"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class InProcessBus:
    """Pub/sub inside a single process; used when no Redis is configured."""

    enabled = True

    def __init__(self) -> None:
        self._handlers: Dict[str, List[MessageHandler]] = defaultdict(list)

    async def publish(self, channel: str, message: str) -> None:
        for handler in list(self._handlers.get(channel, ())):
            try:
                await handler(message)
            except Exception:
                logger.exception("Subscriber on %s failed", channel)

    async def subscribe(self, channel: str, on_message: MessageHandler):
        # registered before returning so nothing published afterwards is missed
        self._handlers[channel].append(on_message)
        handlers = self._handlers

        class _Sub:
            def __init__(self_inner) -> None:
                self_inner._stopped = asyncio.Event()

            async def run(self_inner):
                await self_inner._stopped.wait()

            async def cancel(self_inner):
                registered = handlers.get(channel)
                if registered and on_message in registered:
                    registered.remove(on_message)
                    if not registered:
                        del handlers[channel]
                self_inner._stopped.set()

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._handlers.get(channel, ()))


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: MessageHandler):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except Exception:
                        logger.warning("Redis subscription on %s interrupted", channel, exc_info=True)
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except Exception:
                    logger.warning("Failed to close Redis subscription on %s", channel, exc_info=True)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().REDIS_URL
    if url:
        _bus = RedisBus(url)
        logger.info("Realtime bus: Redis")
    else:
        _bus = InProcessBus()
        logger.info("Realtime bus: in-process")
    return _bus


def set_bus(bus: Optional[object]) -> None:
    global _bus
    _bus = bus
