"""Streaming gateway — relays one turn's events to an SSE connection.

Order matters: the bus subscription is opened *before* the turn is
enqueued, so no event the worker publishes can be missed. A client that
disconnects only stops this generator; the turn keeps running and its
result stays readable from the conversation store.
"""

import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from analyst.core.config import get_settings
from analyst.core.errors import AnalystError, NotFound
from analyst.models.message import MessageRead
from analyst.services.conversation_store import get_message
from analyst.services.events import EventBus, EventType, RunEvent

logger = logging.getLogger(__name__)

KEEPALIVE_COMMENT = ": keepalive\n\n"

SessionFactory = Callable[[], AsyncSession]


async def _terminal_end_event(
    session_factory: SessionFactory,
    session_id: uuid.UUID,
    turn_id: uuid.UUID,
) -> RunEvent | None:
    """An ``end`` event built from the stored message, if the turn is finished."""
    async with session_factory() as session:
        try:
            message = await get_message(session, turn_id, session_id)
        except NotFound:
            return RunEvent(
                type=EventType.ERROR,
                session_id=str(session_id),
                turn_id=str(turn_id),
                payload={"message": "This conversation no longer exists."},
            )
        if not message.is_terminal:
            return None
        return RunEvent(
            type=EventType.END,
            session_id=str(session_id),
            turn_id=str(turn_id),
            payload={"message": MessageRead.from_model(message).model_dump(mode="json")},
        )


async def relay_turn(
    bus: EventBus,
    session_factory: SessionFactory,
    session_id: uuid.UUID,
    turn_id: uuid.UUID,
    preamble: list[RunEvent] | None = None,
    on_subscribed: Callable[[], Awaitable[None]] | None = None,
) -> AsyncGenerator[str, None]:
    """Yield SSE frames for one turn until it ends."""
    keepalive = get_settings().stream_keepalive_seconds
    wanted_turn = str(turn_id)

    async with bus.subscribe(str(session_id)) as subscription:
        if on_subscribed is not None:
            try:
                await on_subscribed()
            except AnalystError as exc:
                logger.warning("Failed to start turn %s: %s", turn_id, exc.detail)
                yield RunEvent(
                    type=EventType.ERROR,
                    session_id=str(session_id),
                    turn_id=wanted_turn,
                    payload={"message": exc.detail},
                ).to_sse()
                return

        for event in preamble or []:
            yield event.to_sse()

        # Re-attaching to a turn that already finished. A turn started by
        # this request publishes its own events, so those are relayed instead.
        if on_subscribed is None:
            finished = await _terminal_end_event(session_factory, session_id, turn_id)
            if finished is not None:
                yield finished.to_sse()
                return

        while True:
            event = await subscription.next_event(keepalive)
            if event is None:
                finished = await _terminal_end_event(session_factory, session_id, turn_id)
                if finished is not None:
                    yield finished.to_sse()
                    return
                yield KEEPALIVE_COMMENT
                continue

            if event.turn_id != wanted_turn:
                continue
            yield event.to_sse()
            if event.type == EventType.END:
                return
