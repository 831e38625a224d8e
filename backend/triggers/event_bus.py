"""Redis pub/sub domain event bus.

Product services publish ``{type, payload}`` events on a single channel.
:class:`EventBusSubscriber` listens on that channel and hands each event
to a callback (the automation rule matcher). :class:`EventPublisher` is
used by built-in actions to announce effects for the owning service.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis

from app.config import get_settings
from triggers.base import DomainEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[DomainEvent], Awaitable[None]]


def decode_message(raw_data) -> Optional[DomainEvent]:
    """Parse a pub/sub message body into a DomainEvent, or None if unusable."""
    try:
        if isinstance(raw_data, bytes):
            raw_data = raw_data.decode("utf-8")
        data = json.loads(raw_data) if raw_data else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Discarding undecodable event bus message")
        return None
    if not isinstance(data, dict) or not data.get("type"):
        logger.warning("Discarding event bus message without a type")
        return None
    try:
        return DomainEvent.from_dict(data)
    except (KeyError, ValueError) as exc:
        logger.warning("Discarding malformed event bus message: %s", exc)
        return None


class EventPublisher:
    """Publishes domain events to the bus. A no-op when the bus is disabled."""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None, enabled: Optional[bool] = None):
        settings = get_settings()
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel = channel or settings.EVENT_BUS_CHANNEL
        self.enabled = settings.EVENT_BUS_ENABLED if enabled is None else enabled
        self.published: deque = deque(maxlen=100)
        self._client = None

    async def publish(self, event: DomainEvent) -> bool:
        self.published.append(event)
        if not self.enabled:
            logger.debug("Event bus disabled, not publishing %s", event.type)
            return False
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url)
        await self._client.publish(self.channel, json.dumps(event.to_dict(), default=str))
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class EventBusSubscriber:
    """Background listener on the domain event channel."""

    def __init__(self, callback: EventCallback, redis_url: Optional[str] = None, channel: Optional[str] = None):
        settings = get_settings()
        self.callback = callback
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel = channel or settings.EVENT_BUS_CHANNEL
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._listen())
            logger.info("Started Redis subscriber for channel: %s", self.channel)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped Redis subscriber for channel: %s", self.channel)
        self._task = None

    async def _listen(self) -> None:
        redis_client = aioredis.from_url(self.redis_url)
        pubsub = redis_client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info("Listening on Redis channel: %s", self.channel)

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                event = decode_message(message["data"])
                if event is None:
                    continue
                try:
                    await self.callback(event)
                except Exception as exc:
                    logger.error("Failed to handle event %s: %s", event.type, exc, exc_info=True)
        except asyncio.CancelledError:
            logger.info("Redis listener cancelled for channel: %s", self.channel)
            raise
        except Exception as exc:
            logger.error("Redis listener error for channel %s: %s", self.channel, exc, exc_info=True)
        finally:
            await pubsub.aclose()
            await redis_client.aclose()


_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """Get or create the singleton publisher."""
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher
