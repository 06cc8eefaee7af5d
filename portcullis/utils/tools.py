import asyncio
import logging
import secrets
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from inspect import iscoroutinefunction
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from portcullis.types.exceptions import StorageError

portcullis_error_logger = logging.getLogger("portcullis.error")


def get_random_string(length: int = 5) -> str:
    return "".join(
        secrets.choice("abcdefghijklmnopqrstuvwxyz0123456789") for _ in range(length)
    )


def split_scope(scope: str | None) -> list[str]:
    """
    Return the list of scopes contained in a space delimited `scope` string.

    Repeated spaces are ignored, an empty or None scope gives an empty list.
    """
    if not scope:
        return []
    return scope.split()


def has_scopes(granted_scope: str, scopes: list[list[str]]) -> bool:
    """
    Check that `granted_scope` contains the expected scopes.

    The expected scopes are passed as list of list of scopes, each list of scopes is an "AND" condition, and the list of list of scopes is an "OR" condition.
    An empty list grants access.
    """
    if scopes == []:
        return True

    granted = split_scope(granted_scope)
    return any(all(scope in granted for scope in scope_set) for scope_set in scopes)


@asynccontextmanager
async def storage_guard(
    operation: str,
    timeout: float,
) -> AsyncGenerator[None, None]:
    """
    Bound the storage calls made inside the context manager with `timeout` seconds.

    A timeout or a SQLAlchemy error is converted to a `StorageError`. The original error is logged, never sent to the client.
    ```python
    async with storage_guard("redeem_code", timeout=settings.STORAGE_TIMEOUT_SECONDS):
        result = await cruds_auth.mark_authorization_code_as_used(db=db, code=code, now=now)
    ```
    """
    try:
        async with asyncio.timeout(timeout):
            yield
    except TimeoutError as error:
        portcullis_error_logger.error(
            f"Storage: {operation} did not complete in {timeout} seconds",
        )
        raise StorageError(operation, "timed out") from error
    except SQLAlchemyError as error:
        portcullis_error_logger.exception(f"Storage: {operation} failed")
        raise StorageError(operation, error.__class__.__name__) from error


async def execute_async_or_sync_method(
    job_function: Callable[..., Any],
    *args,
    **kwargs,
):
    """
    Execute the job_function with the provided args and kwargs, either as a coroutine or a regular function.
    """
    if iscoroutinefunction(job_function):
        return await job_function(*args, **kwargs)
    return job_function(*args, **kwargs)
