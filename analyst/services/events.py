"""Run events and the bus that carries them from the worker to SSE connections.

The agent loop runs in an arq worker; the browser is connected to an API
process. Events therefore travel over Redis pub/sub, one channel per chat
session. An in-process bus with the same interface is used for single-process
development and for tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import StrEnum
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from redis.asyncio import Redis, from_url
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from analyst.core.config import get_settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "analyst:chat:"


class EventType(StrEnum):
    SESSION_CREATED = "session_created"
    USER_MESSAGE_CREATED = "user_message_created"
    AI_MESSAGE_CREATED = "ai_message_created"
    AGENT_EXPLANATION = "agent:explanation"
    AGENT_USING_TOOL = "agent:using_tool"
    AGENT_TOOL_RESULT = "agent:tool_result"
    TOKEN = "token"
    AGENT_FINAL_ANSWER = "agent:final_answer"
    AGENT_ERROR = "agent:error"
    ERROR = "error"
    END = "end"


class RunEvent(BaseModel):
    """One event of a turn, serialized as ``{type, sessionId, turnId, payload}``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: EventType
    session_id: str
    turn_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_sse(self) -> str:
        return format_sse(self.type, self.to_wire())


def format_sse(event: str, data: dict) -> str:
    """Format a single SSE event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def channel_for(session_id: str) -> str:
    return f"{CHANNEL_PREFIX}{session_id}"


# ── Bus interface ─────────────────────────────────────────────

class Subscription:
    async def next_event(self, timeout: float) -> RunEvent | None:
        """Wait up to ``timeout`` seconds for the next event; None when idle."""
        raise NotImplementedError


class EventBus:
    async def publish(self, event: RunEvent) -> None:
        raise NotImplementedError

    def subscribe(self, session_id: str) -> Any:
        """Async context manager yielding a Subscription for one session."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


# ── In-process bus ────────────────────────────────────────────

class _QueueSubscription(Subscription):
    def __init__(self) -> None:
        self.queue: asyncio.Queue[RunEvent] = asyncio.Queue()

    async def next_event(self, timeout: float) -> RunEvent | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except TimeoutError:
            return None


class InMemoryEventBus(EventBus):
    def __init__(self) -> None:
        self._subscribers: dict[str, set[_QueueSubscription]] = defaultdict(set)

    async def publish(self, event: RunEvent) -> None:
        for sub in list(self._subscribers.get(event.session_id, ())):
            sub.queue.put_nowait(event)

    @asynccontextmanager
    async def subscribe(self, session_id: str) -> AsyncIterator[Subscription]:
        sub = _QueueSubscription()
        self._subscribers[session_id].add(sub)
        try:
            yield sub
        finally:
            subs = self._subscribers.get(session_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))


# ── Redis pub/sub bus ─────────────────────────────────────────

class _RedisSubscription(Subscription):
    def __init__(self, pubsub: PubSub) -> None:
        self._pubsub = pubsub

    async def next_event(self, timeout: float) -> RunEvent | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=remaining
            )
            if message is None or message.get("type") != "message":
                continue
            try:
                return RunEvent.model_validate_json(message["data"])
            except ValueError:
                logger.warning("Dropping malformed event on %s", message.get("channel"))


class RedisEventBus(EventBus):
    def __init__(self, redis_url: str) -> None:
        self._redis: Redis = from_url(redis_url, decode_responses=True)

    async def publish(self, event: RunEvent) -> None:
        try:
            await self._redis.publish(
                channel_for(event.session_id),
                event.model_dump_json(by_alias=True),
            )
        except RedisError:
            logger.warning(
                "Failed to publish %s for turn %s", event.type, event.turn_id, exc_info=True
            )

    @asynccontextmanager
    async def subscribe(self, session_id: str) -> AsyncIterator[Subscription]:
        pubsub = self._redis.pubsub()
        channel = channel_for(session_id)
        await pubsub.subscribe(channel)
        try:
            yield _RedisSubscription(pubsub)
        finally:
            try:
                await pubsub.unsubscribe(channel)
            finally:
                await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()


@lru_cache
def get_event_bus() -> EventBus:
    settings = get_settings()
    if settings.event_bus_backend == "memory":
        return InMemoryEventBus()
    return RedisEventBus(settings.redis_url)
