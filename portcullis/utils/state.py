import logging
from datetime import timedelta
from typing import TypedDict

import redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from portcullis.core.auth.code_ledger import AuthorizationCodeLedger
from portcullis.core.auth.grant_orchestrator import GrantOrchestrator
from portcullis.core.auth.token_ledger import TokenLedger
from portcullis.core.clients.client_registry import ClientRegistry
from portcullis.core.utils.config import Settings
from portcullis.core.utils.security import IdentityProvider
from portcullis.types.sqlalchemy import SessionLocalType


class LifespanState(TypedDict):
    """
    The LifespanState is contained instead of the FastAPI app
    """

    # Database engine
    engine: AsyncEngine
    # Database session creator
    SessionLocal: SessionLocalType
    # We may not have a Redis Client if it was not configured
    redis_client: redis.Redis | None
    client_registry: ClientRegistry
    code_ledger: AuthorizationCodeLedger
    token_ledger: TokenLedger
    orchestrator: GrantOrchestrator
    identity_provider: IdentityProvider
    # Bound of every storage call, commits included
    storage_timeout: float


class RuntimeLifespanState(LifespanState):
    """
    Requests contains an extended version of the LifespanState for each request.
    """

    request_id: str


def init_engine(settings: Settings) -> AsyncEngine:
    """
    Return the (asynchronous) database engine, based on the settings
    """

    if settings.SQLITE_DB:
        SQLALCHEMY_DATABASE_URL = f"sqlite+aiosqlite:///./{settings.SQLITE_DB}"
    else:
        SQLALCHEMY_DATABASE_URL = f"postgresql+asyncpg://{settings.POSTGRES_USER}:{settings.POSTGRES_PASSWORD}@{settings.POSTGRES_HOST}/{settings.POSTGRES_DB}"

    return create_async_engine(
        SQLALCHEMY_DATABASE_URL,
        echo=settings.DATABASE_DEBUG,
    )


def init_SessionLocal(engine: AsyncEngine) -> SessionLocalType:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def init_redis_client(
    settings: Settings,
    portcullis_error_logger: logging.Logger,
) -> redis.Redis | None:
    """
    Initialize the Redis client if the settings specify a Redis connection.
    Returns None if Redis is not configured.
    """
    redis_client: redis.Redis | None = None
    if settings.REDIS_HOST:
        try:
            redis_client = redis.Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                password=settings.REDIS_PASSWORD,
                socket_keepalive=True,
            )
            redis_client.ping()  # Test the connection
        except redis.exceptions.ConnectionError:
            portcullis_error_logger.exception(
                "Redis connection error: Check the Redis configuration or the Redis server",
            )
            redis_client = None
    return redis_client


def disconnect_redis_client(redis_client: redis.Redis | None) -> None:
    if redis_client is not None:
        redis_client.close()


def init_client_registry(settings: Settings) -> ClientRegistry:
    return ClientRegistry(
        hash_rounds=settings.SECRET_HASH_ROUNDS,
        storage_timeout=settings.STORAGE_TIMEOUT_SECONDS,
    )


def init_code_ledger(settings: Settings) -> AuthorizationCodeLedger:
    return AuthorizationCodeLedger(
        code_ttl=timedelta(minutes=settings.AUTHORIZATION_CODE_EXPIRE_MINUTES),
        storage_timeout=settings.STORAGE_TIMEOUT_SECONDS,
    )


def init_token_ledger(settings: Settings) -> TokenLedger:
    return TokenLedger(
        secret_key=settings.ACCESS_TOKEN_SECRET_KEY,
        access_token_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_token_ttl=timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES),
        storage_timeout=settings.STORAGE_TIMEOUT_SECONDS,
    )
