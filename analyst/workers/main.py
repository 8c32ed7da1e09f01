"""ARQ worker entrypoint."""

import logging

from arq import cron
from arq.connections import RedisSettings

from analyst.core.config import get_settings
from analyst.workers.chat_turn import run_chat_turn, sweep_stale_turns


def _redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    return RedisSettings.from_dsn(get_settings().redis_url)


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    logging.basicConfig(level=logging.INFO)
    from analyst.core.database import init_db
    await init_db()


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""
    from analyst.services.events import get_event_bus
    await get_event_bus().close()


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [run_chat_turn]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 20
    cron_jobs = [cron(sweep_stale_turns, minute=set(range(0, 60, 5)), run_at_startup=True)]
    # A turn still active after this long is swept as stale
    job_timeout = int(get_settings().stale_turn_seconds)
    # Turns are not retried by the queue
    max_tries = 1


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]
