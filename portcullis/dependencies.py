"""
Various FastAPI [dependencies](https://fastapi.tiangolo.com/tutorial/dependencies/)

They are used in endpoints function signatures. For example:
```python
async def get_clients(db: AsyncSession = Depends(get_db, scope="function")):
```
"""

import logging
from collections.abc import AsyncGenerator, Callable, Coroutine
from functools import lru_cache
from typing import Annotated, Any, cast

import starlette
import starlette.datastructures
from fastapi import Depends, FastAPI, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import models_auth
from portcullis.core.auth.grant_orchestrator import GrantOrchestrator
from portcullis.core.clients.client_registry import ClientRegistry
from portcullis.core.utils import security
from portcullis.core.utils.config import Settings, construct_prod_settings
from portcullis.types.exceptions import InvalidAppStateTypeError
from portcullis.types.scopes_type import ScopeType
from portcullis.utils.state import (
    LifespanState,
    RuntimeLifespanState,
    disconnect_redis_client,
    init_client_registry,
    init_code_ledger,
    init_engine,
    init_redis_client,
    init_SessionLocal,
    init_token_ledger,
)
from portcullis.utils.tools import has_scopes, storage_guard

portcullis_access_logger = logging.getLogger("portcullis.access")
portcullis_security_logger = logging.getLogger("portcullis.security")


async def init_app_state(
    app: FastAPI,
    settings: Settings,
    portcullis_error_logger: logging.Logger,
) -> LifespanState:
    """
    Initialize the state of the application. This dependency should be used at the start of the application lifespan.

    This methode should be called as a dependency, and test may override it to provide their own state.
    ```python
    state = await app.dependency_overrides.get(
        init_app_state,
        init_app_state,
    )(
        app=app,
        settings=settings,
        portcullis_error_logger=portcullis_error_logger,
    )
    ```
    """
    engine = init_engine(settings=settings)

    SessionLocal = init_SessionLocal(engine)

    redis_client = init_redis_client(
        settings=settings,
        portcullis_error_logger=portcullis_error_logger,
    )

    client_registry = init_client_registry(settings=settings)
    code_ledger = init_code_ledger(settings=settings)
    token_ledger = init_token_ledger(settings=settings)

    return LifespanState(
        engine=engine,
        SessionLocal=SessionLocal,
        redis_client=redis_client,
        client_registry=client_registry,
        code_ledger=code_ledger,
        token_ledger=token_ledger,
        orchestrator=GrantOrchestrator(
            client_registry=client_registry,
            code_ledger=code_ledger,
            token_ledger=token_ledger,
        ),
        identity_provider=security.DatabaseIdentityProvider(
            hash_rounds=settings.SECRET_HASH_ROUNDS,
        ),
        storage_timeout=settings.STORAGE_TIMEOUT_SECONDS,
    )


async def disconnect_state(
    state: LifespanState,
    portcullis_error_logger: logging.Logger,
) -> None:
    """
    Disconnect items requiring it. This dependency should be used at the end of the application lifespan.

    This methode should be called as a dependency as test may need to run additional steps
    """
    disconnect_redis_client(state["redis_client"])
    await state["engine"].dispose()

    portcullis_error_logger.info("Application state disconnected successfully.")


def get_app_state(request: Request) -> RuntimeLifespanState:
    """
    Get the application state from the request. The state is injected by our middleware.
    """
    # `request.state` may be a TypedDict or a starlette State object
    # depending if it is accessed in an endpoint or the lifespan

    # `state` should be a RuntimeLifespanState object injected in the state by our middleware
    # We force Mypy to consider it as a RuntimeLifespanState instead of Any

    if isinstance(request.state, dict):
        return cast("RuntimeLifespanState", request.state)
    if isinstance(request.state, starlette.datastructures.State):
        return cast("RuntimeLifespanState", request.state.__dict__["_state"])
    raise InvalidAppStateTypeError


AppState = Annotated[RuntimeLifespanState, Depends(get_app_state)]


async def get_request_id(state: AppState) -> str:
    """
    The request identifier is a unique UUID which is used to associate logs saved during the same request
    """

    return state["request_id"]


@lru_cache
def get_settings() -> Settings:
    """
    Return a settings object, based on `.env` dotenv
    """
    # `lru_cache()` decorator is here to prevent the class to be instantiated multiple times.
    # See https://fastapi.tiangolo.com/advanced/settings/#lru_cache-technical-details
    return construct_prod_settings()


async def get_db(state: AppState) -> AsyncGenerator[AsyncSession, None]:
    """
    Return a database session that will be automatically committed and closed after usage.

    If an HTTPException is raised during the request, we consider that the error was expected and managed by the endpoint. We commit the session.
    If an other exception is raised, including a `StorageError`, we rollback the session.

    Cruds and endpoints should never call `db.commit()` or `db.rollback()` directly.
    After adding an object to the session, calling `await db.flush()` will integrate the changes in the transaction without committing them.

    A token rotation revokes the previous token and creates the new one in the same session:
    both changes are committed together, or none of them.

    The dependency must be declared with `scope="function"` so that the commit happens before the response is sent.
    A failing commit then raises a `StorageError`, which is answered with a `server_error`.
    """
    async with state["SessionLocal"]() as db:
        try:
            yield db
        except HTTPException:
            async with storage_guard("commit", state["storage_timeout"]):
                await db.commit()
            raise
        except Exception:
            await db.rollback()
            raise
        else:
            async with storage_guard("commit", state["storage_timeout"]):
                await db.commit()
        finally:
            await db.close()


def get_client_registry(state: AppState) -> ClientRegistry:
    return state["client_registry"]


def get_orchestrator(state: AppState) -> GrantOrchestrator:
    """
    Dependency that returns the grant orchestrator, which implements the authorization and token endpoints logic
    """
    return state["orchestrator"]


def get_identity_provider(state: AppState) -> security.IdentityProvider:
    """
    Dependency that returns the identity provider used to authenticate users during the authorization request.

    Tests or deployments relying on an external user directory may override it.
    """
    return state["identity_provider"]


def get_token_record_with_scopes(
    scopes: list[list[ScopeType]],
) -> Callable[
    [AsyncSession, GrantOrchestrator, str | None, str],
    Coroutine[Any, Any, models_auth.OAuthToken],
]:
    """
    Generate a dependency which will:
     * check the request header contain an active access token
     * make sure the token contain the given scopes
     * return the corresponding `models_auth.OAuthToken` record
    """

    async def get_token_record(
        db: AsyncSession = Depends(get_db, scope="function"),
        orchestrator: GrantOrchestrator = Depends(get_orchestrator),
        token: str | None = Depends(security.oauth2_scheme),
        request_id: str = Depends(get_request_id),
    ) -> models_auth.OAuthToken:
        """
        Dependency that makes sure the token is active, contains the expected scopes and returns the corresponding record.
        The expected scopes are passed as list of list of scopes, each list of scopes is an "AND" condition, and the list of list of scopes is an "OR" condition.
        """
        if token is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={"WWW-Authenticate": "Bearer"},
            )

        token_record = await orchestrator.introspect(db=db, access_token=token)
        if token_record is None:
            portcullis_access_logger.info(
                f"Introspection: Rejected an inactive access token ({request_id})",
            )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not has_scopes(token_record.scope, scopes):
            portcullis_security_logger.warning(
                f"Introspection: Access token of client {token_record.client_id} is missing scopes {scopes} ({request_id})",
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Unauthorized, token does not contain the required scopes {scopes}",
            )

        return token_record

    return get_token_record
