import asyncio
import logging
import os
from collections.abc import Callable
from typing import Any

import psutil
import redis
from sqlalchemy.engine import Engine, create_engine

from portcullis.core.utils.config import Settings
from portcullis.utils.tools import execute_async_or_sync_method

# Startup steps: creating the tables and registering the configured clients

# A startup step is expected to finish well before its lock expires
STARTUP_LOCK_SECONDS = 120
# Once a step is done, its keys are kept long enough for slower workers to see them
DONE_KEY_SECONDS = 60


def get_sync_db_engine(settings: Settings) -> Engine:
    """
    Create a synchronous engine, used to create the tables at startup
    """
    if settings.SQLITE_DB:
        url = f"sqlite:///./{settings.SQLITE_DB}"
    else:
        url = f"postgresql+psycopg://{settings.POSTGRES_USER}:{settings.POSTGRES_PASSWORD}@{settings.POSTGRES_HOST}/{settings.POSTGRES_DB}"

    return create_engine(url, echo=settings.DATABASE_DEBUG)


async def run_startup_step_once(
    step: Callable[..., Any],
    lock_key: str,
    redis_client: redis.Redis | None,
    number_of_workers: int,
    logger: logging.Logger,
    done_key: str | None = None,
    **kwargs: Any,
) -> None:
    """
    Run the startup `step` in a single worker, with `kwargs` as arguments. `step` may be sync or async.

    The worker that sets `lock_key` first runs the step. If `done_key` is given, the other workers wait until it is set,
    so that no worker serves requests before the tables exist.

    Without Redis, or with a single worker, the step is run directly.
    """
    if not isinstance(redis_client, redis.Redis) or number_of_workers <= 1:
        await execute_async_or_sync_method(step, **kwargs)
        return

    if redis_client.set(lock_key, "1", nx=True, ex=STARTUP_LOCK_SECONDS):
        logger.info(f"Startup: Running {step.__name__}")
        await execute_async_or_sync_method(step, **kwargs)

        if done_key is not None:
            redis_client.set(done_key, "1", ex=DONE_KEY_SECONDS)
        redis_client.expire(lock_key, DONE_KEY_SECONDS)
        return

    if done_key is not None:
        while redis_client.get(done_key) is None:
            logger.debug(f"Startup: Waiting for {step.__name__} to finish")
            await asyncio.sleep(1)


def get_number_of_workers() -> int:
    """
    Count the live uvicorn workers, which are the children of our parent process
    """
    parent_process = psutil.Process(os.getppid())
    return len(
        [
            child
            for child in parent_process.children()
            if child.status() != psutil.STATUS_ZOMBIE
        ],
    )
