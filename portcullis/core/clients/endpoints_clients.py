import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from portcullis.core.auth import models_auth
from portcullis.core.auth.grant_orchestrator import GrantOrchestrator
from portcullis.core.clients import schemas_clients
from portcullis.core.clients.client_registry import ClientRegistry
from portcullis.dependencies import (
    get_client_registry,
    get_db,
    get_orchestrator,
    get_request_id,
    get_token_record_with_scopes,
)
from portcullis.types.module import CoreModule
from portcullis.types.scopes_type import ScopeType

router = APIRouter(tags=["Clients"])

core_module = CoreModule(
    root="clients",
    tag="Clients",
    router=router,
)

portcullis_security_logger = logging.getLogger("portcullis.security")


@router.get(
    "/auth/clients",
    response_model=list[schemas_clients.Client],
    status_code=200,
)
async def get_clients(
    db: AsyncSession = Depends(get_db, scope="function"),
    client_registry: ClientRegistry = Depends(get_client_registry),
    token: models_auth.OAuthToken = Depends(
        get_token_record_with_scopes([[ScopeType.admin]]),
    ),
):
    """
    Return all registered clients.

    **The access token must have the `admin` scope**
    """
    return await client_registry.get_all(db=db)


@router.post(
    "/auth/clients",
    response_model=schemas_clients.ClientRegistered,
    status_code=201,
)
async def register_client(
    client_creation: schemas_clients.ClientCreation,
    db: AsyncSession = Depends(get_db, scope="function"),
    orchestrator: GrantOrchestrator = Depends(get_orchestrator),
    token: models_auth.OAuthToken = Depends(
        get_token_record_with_scopes([[ScopeType.admin]]),
    ),
    request_id: str = Depends(get_request_id),
):
    """
    Register a new client.

    The secret of a confidential client is only returned by this endpoint, it can not be retrieved afterward.

    **The access token must have the `admin` scope**
    """
    client, client_secret = await orchestrator.register_client(
        db=db,
        name=client_creation.name,
        redirect_uris=client_creation.redirect_uris,
        scopes=client_creation.scopes,
        grant_types=client_creation.grant_types,
        confidential=client_creation.confidential,
        request_id=request_id,
    )
    return schemas_clients.ClientRegistered(
        **schemas_clients.Client.model_validate(client).model_dump(),
        client_secret=client_secret,
    )


@router.get(
    "/auth/clients/{client_id}",
    response_model=schemas_clients.Client,
    status_code=200,
)
async def get_client(
    client_id: str,
    db: AsyncSession = Depends(get_db, scope="function"),
    client_registry: ClientRegistry = Depends(get_client_registry),
    token: models_auth.OAuthToken = Depends(
        get_token_record_with_scopes([[ScopeType.admin]]),
    ),
):
    """
    **The access token must have the `admin` scope**
    """
    client = await client_registry.lookup(db=db, client_id=client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


@router.patch(
    "/auth/clients/{client_id}",
    response_model=schemas_clients.Client,
    status_code=200,
)
async def update_client(
    client_id: str,
    client_update: schemas_clients.ClientUpdate,
    db: AsyncSession = Depends(get_db, scope="function"),
    client_registry: ClientRegistry = Depends(get_client_registry),
    token: models_auth.OAuthToken = Depends(
        get_token_record_with_scopes([[ScopeType.admin]]),
    ),
    request_id: str = Depends(get_request_id),
):
    """
    Update the name and the declared capabilities of a client.

    Tokens already issued keep their scope, but refreshing them requires the scope to still be allowed.

    **The access token must have the `admin` scope**
    """
    client = await client_registry.update(
        db=db,
        client_id=client_id,
        name=client_update.name,
        redirect_uris=client_update.redirect_uris,
        scopes=client_update.scopes,
        grant_types=client_update.grant_types,
    )
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")

    portcullis_security_logger.info(
        f"Clients: Updated client {client_id} ({request_id})",
    )
    return client


@router.delete(
    "/auth/clients/{client_id}",
    status_code=204,
)
async def delete_client(
    client_id: str,
    db: AsyncSession = Depends(get_db, scope="function"),
    orchestrator: GrantOrchestrator = Depends(get_orchestrator),
    token: models_auth.OAuthToken = Depends(
        get_token_record_with_scopes([[ScopeType.admin]]),
    ),
    request_id: str = Depends(get_request_id),
):
    """
    Delete a client. All its tokens are revoked and its pending authorization codes are deleted.

    **The access token must have the `admin` scope**
    """
    deleted = await orchestrator.delete_client(
        db=db,
        client_id=client_id,
        request_id=request_id,
    )
    if not deleted:
        raise HTTPException(status_code=404, detail="Client not found")
