"""
arq worker deleting expired authorization codes and tokens.

Start it with `arq portcullis.worker.WorkerSettings`
"""

import logging

from arq import cron
from arq.connections import RedisSettings

from portcullis.core.auth.grant_orchestrator import GrantOrchestrator
from portcullis.core.utils.log import LogConfig
from portcullis.dependencies import get_settings
from portcullis.utils.state import (
    init_client_registry,
    init_code_ledger,
    init_engine,
    init_SessionLocal,
    init_token_ledger,
)
from portcullis.utils.tools import storage_guard

scheduler_logger = logging.getLogger("scheduler")

settings = get_settings()  # This file should only be run in production


async def startup(ctx):
    LogConfig().initialize_loggers(settings=settings)

    ctx["engine"] = init_engine(settings=settings)
    ctx["SessionLocal"] = init_SessionLocal(ctx["engine"])
    ctx["orchestrator"] = GrantOrchestrator(
        client_registry=init_client_registry(settings=settings),
        code_ledger=init_code_ledger(settings=settings),
        token_ledger=init_token_ledger(settings=settings),
    )
    ctx["storage_timeout"] = settings.STORAGE_TIMEOUT_SECONDS


async def shutdown(ctx):
    await ctx["engine"].dispose()


async def sweep_expired_grants(ctx):
    orchestrator: GrantOrchestrator = ctx["orchestrator"]
    async with ctx["SessionLocal"]() as db:
        try:
            deleted_codes, deleted_tokens = await orchestrator.sweep_expired(db=db)
            async with storage_guard("commit", ctx["storage_timeout"]):
                await db.commit()
        except Exception:
            await db.rollback()
            scheduler_logger.exception("Sweeper: Could not delete expired grants")
            raise

    scheduler_logger.info(
        f"Sweeper: Deleted {deleted_codes} authorization codes and {deleted_tokens} tokens",
    )


class WorkerSettings:
    functions = [sweep_expired_grants]
    cron_jobs = [
        cron(sweep_expired_grants, minute=settings.SWEEPER_MINUTE, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL or "redis://localhost:6379")
