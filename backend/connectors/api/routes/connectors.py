"""Connector management API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.logging import get_logger
from connectors.db import get_db
from connectors.db.models import ConnectorProvider
from connectors.exceptions import (
    ConnectorError,
    ConnectorNotFoundError,
    ConnectorUpdateError,
    InvalidConfigError,
    InvalidPermissionError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from connectors.schemas.connector import (
    ConfigValueRequest,
    ConfigValueResponse,
    ConnectorCreate,
    ConnectorResponse,
    ConnectorUpdate,
    ParentsResponse,
    PermissionChangeRequest,
    PermissionChangeResponse,
    PermissionListResponse,
    TitlesRequest,
    TitlesResponse,
    TriggerResponse,
)
from connectors.services.connector_manager import (
    ConnectorManager,
    get_connector_manager,
    get_manager_for_connector,
)
from connectors.services.google_drive import ClientFactory
from connectors.services.permissions import PermissionFilter

logger = get_logger(__name__)

router = APIRouter(prefix="/connectors", tags=["connectors"])


def to_http_exception(e: ConnectorError) -> HTTPException:
    """Map a connector error to the HTTP status it surfaces as."""
    if isinstance(e, ConnectorNotFoundError):
        status_code = 404
    elif isinstance(e, (InvalidPermissionError, InvalidConfigError, ConnectorUpdateError)):
        status_code = 400
    elif isinstance(e, RateLimitedError):
        status_code = 429
    elif isinstance(e, UpstreamUnavailableError):
        status_code = 502
    else:
        status_code = 500
    headers = None
    if isinstance(e, RateLimitedError) and e.retry_after is not None:
        headers = {"Retry-After": str(e.retry_after)}
    return HTTPException(
        status_code=status_code,
        detail={"code": e.code, "message": e.message},
        headers=headers,
    )


def get_client_factory() -> ClientFactory | None:
    """Remote client factory handed to managers; None selects the Drive client."""
    return None


async def get_manager(
    connector_id: str,
    db: AsyncSession = Depends(get_db),
    client_factory: ClientFactory | None = Depends(get_client_factory),
) -> ConnectorManager:
    """Resolve the manager of the connector named in the path."""
    try:
        return await get_manager_for_connector(db, connector_id, client_factory=client_factory)
    except ConnectorError as e:
        raise to_http_exception(e) from e


@router.post("/{provider}", response_model=ConnectorResponse, status_code=201)
async def create_connector(
    provider: ConnectorProvider,
    data: ConnectorCreate,
    db: AsyncSession = Depends(get_db),
    client_factory: ClientFactory | None = Depends(get_client_factory),
) -> ConnectorResponse:
    """Create a connector for stored provider credentials."""
    manager = get_connector_manager(provider, db, client_factory=client_factory)
    try:
        connector = await manager.create(
            data.connection_id, data.workspace_id, data.data_source_name
        )
    except ConnectorError as e:
        logger.error("connector_create_failed", provider=provider.value, error=e.message)
        raise to_http_exception(e) from e
    return ConnectorResponse.model_validate(connector)


@router.get("/{connector_id}", response_model=ConnectorResponse)
async def get_connector(
    connector_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> ConnectorResponse:
    """Get a connector by ID."""
    connector = await manager.get_connector(connector_id)
    return ConnectorResponse.model_validate(connector)


@router.patch("/{connector_id}", response_model=ConnectorResponse)
async def update_connector(
    connector_id: str,
    data: ConnectorUpdate,
    manager: ConnectorManager = Depends(get_manager),
) -> ConnectorResponse:
    """Switch a connector to other credentials."""
    try:
        connector = await manager.update(connector_id, data.connection_id)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return ConnectorResponse.model_validate(connector)


@router.delete("/{connector_id}", status_code=204)
async def delete_connector(
    connector_id: str,
    force: bool = Query(False, description="Delete even if token revocation fails"),
    manager: ConnectorManager = Depends(get_manager),
) -> None:
    """Revoke access and delete a connector with everything it owns."""
    try:
        await manager.cleanup(connector_id, force=force)
    except ConnectorError as e:
        raise to_http_exception(e) from e


@router.post("/{connector_id}/stop", response_model=ConnectorResponse)
async def stop_connector(
    connector_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> ConnectorResponse:
    """Pause a connector."""
    connector = await manager.stop(connector_id)
    return ConnectorResponse.model_validate(connector)


@router.post("/{connector_id}/resume", response_model=TriggerResponse)
async def resume_connector(
    connector_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> TriggerResponse:
    """Unpause a connector and catch up on missed changes."""
    try:
        status = await manager.resume(connector_id)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return TriggerResponse(status=status.value)


@router.post("/{connector_id}/sync", response_model=TriggerResponse)
async def sync_connector(
    connector_id: str,
    cursor: str | None = Query(None, description="Folder id to resume a full sync from"),
    manager: ConnectorManager = Depends(get_manager),
) -> TriggerResponse:
    """Trigger a full resync."""
    try:
        status = await manager.sync(connector_id, cursor)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return TriggerResponse(status=status.value)


@router.post("/{connector_id}/garbage_collect", response_model=TriggerResponse)
async def garbage_collect_connector(
    connector_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> TriggerResponse:
    """Trigger garbage collection of unselected mirror entries."""
    try:
        status = await manager.garbage_collect(connector_id)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return TriggerResponse(status=status.value)


# =============================================================================
# Permissions
# =============================================================================


@router.get("/{connector_id}/permissions", response_model=PermissionListResponse)
async def get_permissions(
    connector_id: str,
    parent_id: str | None = Query(None, description="List children of this node"),
    filter: str = Query(PermissionFilter.READ_ONLY.value, description="read-only or discover"),
    manager: ConnectorManager = Depends(get_manager),
) -> PermissionListResponse:
    """List one level of the permission tree."""
    try:
        nodes = await manager.retrieve_permissions(connector_id, parent_id, filter)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return PermissionListResponse(resources=nodes)


@router.post("/{connector_id}/permissions", response_model=PermissionChangeResponse)
async def set_permissions(
    connector_id: str,
    data: PermissionChangeRequest,
    manager: ConnectorManager = Depends(get_manager),
) -> PermissionChangeResponse:
    """Grant ("read") or revoke ("none") folders."""
    try:
        result = await manager.set_permissions(connector_id, data.resources)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return PermissionChangeResponse(
        added=result.added, removed=result.removed, failed=result.failed
    )


@router.post("/{connector_id}/titles", response_model=TitlesResponse)
async def get_titles(
    connector_id: str,
    data: TitlesRequest,
    manager: ConnectorManager = Depends(get_manager),
) -> TitlesResponse:
    """Titles of mirrored nodes."""
    titles = await manager.retrieve_titles(connector_id, data.internal_ids)
    return TitlesResponse(titles=titles)


@router.get("/{connector_id}/parents/{node_id}", response_model=ParentsResponse)
async def get_parents(
    connector_id: str,
    node_id: str,
    manager: ConnectorManager = Depends(get_manager),
) -> ParentsResponse:
    """Parent chain of a mirrored node, the node first."""
    try:
        parents = await manager.retrieve_parents(connector_id, node_id)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return ParentsResponse(parents=parents)


# =============================================================================
# Config
# =============================================================================


@router.get("/{connector_id}/config/{key}", response_model=ConfigValueResponse)
async def get_config(
    connector_id: str,
    key: str,
    manager: ConnectorManager = Depends(get_manager),
) -> ConfigValueResponse:
    """Read a connector config value."""
    try:
        value = await manager.get_config(connector_id, key)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return ConfigValueResponse(key=key, value=value)


@router.post("/{connector_id}/config/{key}", response_model=ConfigValueResponse)
async def set_config(
    connector_id: str,
    key: str,
    data: ConfigValueRequest,
    manager: ConnectorManager = Depends(get_manager),
) -> ConfigValueResponse:
    """Change a connector config value; triggers a full resync."""
    try:
        await manager.set_config(connector_id, key, data.value)
    except ConnectorError as e:
        raise to_http_exception(e) from e
    return ConfigValueResponse(key=key, value=data.value)
