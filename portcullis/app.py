"""File defining the Metadata. And the basic functions creating the database tables and calling the router"""

import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from sqlalchemy.engine import Engine

from portcullis import api
from portcullis.core.auth import models_auth  # noqa: F401
from portcullis.core.clients import models_clients  # noqa: F401
from portcullis.core.users import models_users  # noqa: F401
from portcullis.core.utils.config import Settings
from portcullis.core.utils.log import LogConfig
from portcullis.dependencies import disconnect_state, init_app_state
from portcullis.types.exceptions import (
    ContentHTTPException,
    MultipleWorkersWithoutRedisInitializationError,
    StorageError,
)
from portcullis.types.sqlalchemy import Base
from portcullis.utils import initialization
from portcullis.utils.state import LifespanState
from portcullis.utils.tools import storage_guard

# NOTE: We can not get loggers at the top of this file like we do in other files
# as the loggers are not yet initialized


def update_db_tables(
    sync_engine: Engine,
    portcullis_error_logger: logging.Logger,
    drop_db: bool = False,
) -> None:
    """
    Create the tables that don't exist yet.

    if drop_db is True, we will drop all tables before creating them again

    This method requires a synchronous engine
    """

    try:
        # We have an Engine, we want to acquire a Connection
        with sync_engine.begin() as conn:
            if drop_db:
                Base.metadata.drop_all(conn)

            Base.metadata.create_all(conn)

            portcullis_error_logger.info("Startup: Database tables updated")
    except Exception as error:
        portcullis_error_logger.fatal(
            f"Startup: Could not create tables in the database: {error}",
        )
        raise


def init_db(
    settings: Settings,
    portcullis_error_logger: logging.Logger,
    drop_db: bool = False,
) -> None:
    """
    Init the database by creating the tables

    The method will use a synchronous engine to create the tables
    """
    sync_engine = initialization.get_sync_db_engine(settings=settings)

    update_db_tables(
        sync_engine=sync_engine,
        portcullis_error_logger=portcullis_error_logger,
        drop_db=drop_db,
    )
    sync_engine.dispose()


async def init_auth_clients(
    state: LifespanState,
    settings: Settings,
    portcullis_error_logger: logging.Logger,
) -> None:
    """
    Register the clients declared in `AUTH_CLIENTS` that don't exist yet
    """
    async with state["SessionLocal"]() as db:
        for client_id, client_config in settings.AUTH_CLIENTS.items():
            await state["client_registry"].ensure_configured_client(
                db=db,
                client_id=client_id,
                config=client_config,
            )
        async with storage_guard("commit", state["storage_timeout"]):
            await db.commit()

    portcullis_error_logger.info(
        f"Startup: Configured clients registered ({list(settings.AUTH_CLIENTS)})",
    )


def use_route_path_as_operation_ids(app: FastAPI) -> None:
    """
    Simplify operation IDs so that generated API clients have simpler function names.

    The operation_id will have the format "method_path", like "get_auth_clients".

    See https://fastapi.tiangolo.com/advanced/path-operation-advanced-configuration/
    """
    for route in app.routes:
        if isinstance(route, APIRoute):
            # The operation_id should be unique.
            method = "_".join(route.methods)
            route.operation_id = method.lower() + route.path.replace("/", "_")


async def init_lifespan(
    app: FastAPI,
    state: LifespanState,
    settings: Settings,
    portcullis_error_logger: logging.Logger,
    drop_db: bool,
) -> None:
    portcullis_error_logger.info("Startup: Initializing application")

    number_of_workers = app.dependency_overrides.get(
        initialization.get_number_of_workers,
        initialization.get_number_of_workers,
    )()

    # Initialization steps should only be run once across all workers
    # We use Redis locks to ensure that the initialization steps are only run once
    if number_of_workers > 1 and state["redis_client"] is None:
        raise MultipleWorkersWithoutRedisInitializationError

    # We need to run the database initialization only once across all the workers
    # Other workers have to wait for the db to be initialized
    await initialization.run_startup_step_once(
        init_db,
        "init_db",
        state["redis_client"],
        number_of_workers,
        portcullis_error_logger,
        done_key="db_initialized",
        settings=settings,
        portcullis_error_logger=portcullis_error_logger,
        drop_db=drop_db,
    )

    await initialization.run_startup_step_once(
        init_auth_clients,
        "init_auth_clients",
        state["redis_client"],
        number_of_workers,
        portcullis_error_logger,
        done_key="auth_clients_initialized",
        state=state,
        settings=settings,
        portcullis_error_logger=portcullis_error_logger,
    )


# We wrap the application in a function to be able to pass the settings and drop_db parameters
# The drop_db parameter is used to drop the database tables before creating them again
def get_application(settings: Settings, drop_db: bool = False) -> FastAPI:
    # Initialize loggers
    LogConfig().initialize_loggers(settings=settings)

    portcullis_access_logger = logging.getLogger("portcullis.access")
    portcullis_security_logger = logging.getLogger("portcullis.security")
    portcullis_error_logger = logging.getLogger("portcullis.error")

    # Creating a lifespan which will be called when the application starts then shuts down
    # https://fastapi.tiangolo.com/advanced/events/
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[LifespanState, None]:
        state: LifespanState = await app.dependency_overrides.get(
            init_app_state,
            init_app_state,
        )(
            app=app,
            settings=settings,
            portcullis_error_logger=portcullis_error_logger,
        )

        await init_lifespan(
            app=app,
            state=state,
            settings=settings,
            portcullis_error_logger=portcullis_error_logger,
            drop_db=drop_db,
        )

        # The state is copied in each request `request.state`
        # See https://www.starlette.io/lifespan/#lifespan-state
        yield state

        portcullis_error_logger.info("Shutting down")
        await app.dependency_overrides.get(
            disconnect_state,
            disconnect_state,
        )(
            state=state,
            portcullis_error_logger=portcullis_error_logger,
        )

    # Initialize app
    app = FastAPI(
        title="Portcullis",
        version=settings.PORTCULLIS_VERSION,
        lifespan=lifespan,
    )
    app.include_router(api.api_router)
    use_route_path_as_operation_ids(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def logging_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """
        This middleware is called around each request.
        It logs the request and inject a unique identifier in the request that should be used to associate logs saved during the request.
        """
        # We generate a unique identifier for the request and save it as a state.
        # This identifier will allow combining logs associated with the same request
        # https://www.starlette.io/requests/#other-state
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # This should never happen, but we log it just in case
        if request.client is None:
            portcullis_security_logger.warning(
                f"Client information not available for {request.url.path}",
            )
            raise HTTPException(status_code=400, detail="No client information")

        client_address = f"{request.client.host}:{request.client.port}"

        response = await call_next(request)

        portcullis_access_logger.info(
            f'{client_address} - "{request.method} {request.url.path}" {response.status_code} ({request_id})',
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ):
        # We use a Debug logger to log the error as personal data may be present in the request
        portcullis_error_logger.debug(
            f"Validation error: {exc.errors()} ({request.state.request_id})",
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder({"detail": exc.errors()}),
        )

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

    @app.exception_handler(StorageError)
    async def storage_exception_handler(
        request: Request,
        exc: StorageError,
    ):
        # The error was already logged with its details, we must not send them to the client
        portcullis_error_logger.error(
            f"Storage error during {exc.operation} ({request.state.request_id})",
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "server_error",
                "error_description": "The server encountered an unexpected error",
            },
        )

    return app
