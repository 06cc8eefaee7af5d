from typing import Any

from fastapi import HTTPException


class ContentHTTPException(HTTPException):
    """
    A custom HTTPException allowing to return custom content.

    Instead of returning `{detail: <content>}`, this exception can return a json serialized `<content>`.

    You need to define a custom exception handler to use it:
    ```python
    @app.exception_handler(ContentHTTPException)
    async def auth_exception_handler(
        request: Request,
        exc: ContentHTTPException,
    ):
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(exc.content),
            headers=exc.headers,
        )
    ```
    """

    def __init__(
        self,
        status_code: int,
        content: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=content, headers=headers)
        self.content = content


class AuthHTTPException(ContentHTTPException):
    """
    A custom HTTPException used for OAuth error responses
    """

    def __init__(
        self,
        status_code: int,
        error: str,
        error_description: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        content = {
            "error": error,
            "error_description": error_description,
        }

        super().__init__(status_code=status_code, content=content, headers=headers)


class StorageError(Exception):
    """
    The backing store failed or did not answer in time.

    This is the only error the ledgers let propagate: every validation failure is returned as an `OAuthError` value.
    The message may contain database internals and must never be sent to a client.
    """

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Storage operation {operation} failed: {reason}")
        self.operation = operation


class MissingTZInfoInDatetimeError(TypeError):
    def __init__(self):
        super().__init__("tzinfo info is required for datetime objects")


class DotenvMissingVariableError(Exception):
    def __init__(self, variable_name: str):
        super().__init__(f"{variable_name} should be configured in the dotenv")


class DotenvInvalidVariableError(Exception):
    pass


class InvalidAppStateTypeError(Exception):
    def __init__(self):
        super().__init__(
            "The type of the app state is not supported, it should be a dict or a starlette State object",
        )


class MultipleWorkersWithoutRedisInitializationError(Exception):
    def __init__(self):
        super().__init__(
            "Initialization steps could not be run with multiple workers without a Redis client",
        )
