"""Event Bus: Redis pub/sub carrying reply tokens and complete replies to channel adapters."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from pydantic import BaseModel

from livereply.core.events import OutgoingReply, StreamToken

logger = logging.getLogger(__name__)

# Channel names
CH_OUTGOING = "livereply:outgoing_reply"
CH_STREAM = "livereply:stream_token"


def _serialize(payload: BaseModel) -> str:
    return payload.model_dump_json()


def _deserialize(raw: bytes, model: type[BaseModel]) -> BaseModel:
    return model.model_validate_json(raw.decode("utf-8"))


class EventBus:
    """Redis-backed event bus. Publish events and subscribe with async handlers."""

    _channel_models: dict[str, type[BaseModel]] = {
        CH_OUTGOING: OutgoingReply,
        CH_STREAM: StreamToken,
    }

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._client: aioredis.Redis | None = None
        self._pubsub: aioredis.client.PubSub | None = None
        self._handlers: dict[str, list[Callable[..., Awaitable[None]]]] = {}
        self._running = False

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=False,
            )
            await self._client.ping()
        logger.info("EventBus connected to Redis")

    async def disconnect(self) -> None:
        if self._pubsub:
            await self._pubsub.close()
            self._pubsub = None
        if self._client:
            await self._client.close()
            self._client = None
        self._running = False

    async def publish_outgoing(self, payload: OutgoingReply) -> None:
        await self._ensure_connected()
        await self._client.publish(CH_OUTGOING, _serialize(payload))
        logger.debug("published outgoing_reply", extra={"task_id": payload.task_id})

    async def publish_stream_token(self, payload: StreamToken) -> None:
        await self._ensure_connected()
        await self._client.publish(CH_STREAM, _serialize(payload))

    async def _ensure_connected(self) -> None:
        if self._client is None:
            await self.connect()

    def subscribe_outgoing(self, handler: Callable[[OutgoingReply], Awaitable[None]]) -> None:
        self._handlers.setdefault(CH_OUTGOING, []).append(handler)

    def subscribe_stream(self, handler: Callable[[StreamToken], Awaitable[None]]) -> None:
        self._handlers.setdefault(CH_STREAM, []).append(handler)

    async def run_listener(self) -> None:
        """Dispatch pub/sub messages to handlers, one at a time, until stop()."""
        await self._ensure_connected()
        self._pubsub = self._client.pubsub()
        channels = list(self._channel_models)
        await self._pubsub.subscribe(*channels)
        self._running = True
        logger.info("EventBus listener started", extra={"channels": channels})
        try:
            async for message in self._pubsub.listen():
                if not self._running:
                    break
                if message["type"] != "message":
                    continue
                ch = message["channel"]
                if isinstance(ch, bytes):
                    ch = ch.decode("utf-8")
                data = message.get("data")
                model_cls = self._channel_models.get(ch)
                if not model_cls or not data:
                    continue
                try:
                    payload = _deserialize(data, model_cls)
                except ValueError as e:
                    logger.warning("failed to deserialize event", extra={"channel": ch, "error": str(e)})
                    continue
                for handler in self._handlers.get(ch, []):
                    try:
                        await handler(payload)
                    except Exception as e:
                        logger.exception("handler failed for %s: %s", ch, e)
                if not self._running:
                    break
        finally:
            await self._pubsub.unsubscribe()
            self._running = False

    def stop(self) -> None:
        self._running = False
