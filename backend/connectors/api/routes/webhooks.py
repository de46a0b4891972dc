"""Inbound Google Drive change notification endpoints.

Drive posts an empty body and describes the notification in ``X-Goog-*``
headers. Anything other than an unresolvable channel or a missing
connector is acknowledged with 200 so Drive does not retry.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.logging import get_logger
from connectors.db import get_db
from connectors.exceptions import ConnectorNotFoundError, UnresolvedChannelError
from connectors.services.webhooks import WebhookLifecycleManager

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Sent once when a channel is opened; carries no change
SYNC_STATE = "sync"


async def _handle(
    db: AsyncSession,
    connector_id: str | None,
    channel_id: str | None,
    resource_state: str | None,
) -> Response:
    if not channel_id:
        raise HTTPException(status_code=400, detail="Missing X-Goog-Channel-Id header")

    if resource_state == SYNC_STATE:
        logger.debug("webhook_sync_handshake", channel_id=channel_id, connector_id=connector_id)
        return Response(status_code=200)

    manager = WebhookLifecycleManager(db)
    try:
        outcome = await manager.handle_notification(channel_id, connector_id)
    except UnresolvedChannelError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ConnectorNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    logger.debug(
        "webhook_acknowledged",
        channel_id=channel_id,
        resource_state=resource_state,
        outcome=outcome.value,
    )
    return Response(status_code=200)


@router.post("/google_drive")
async def google_drive_notification(
    x_goog_channel_id: str | None = Header(None),
    x_goog_resource_state: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Notification for a channel opened without a connector in its address."""
    return await _handle(db, None, x_goog_channel_id, x_goog_resource_state)


@router.post("/google_drive/{connector_id}")
async def google_drive_connector_notification(
    connector_id: str,
    x_goog_channel_id: str | None = Header(None),
    x_goog_resource_state: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Notification for one connector's change channel."""
    return await _handle(db, connector_id, x_goog_channel_id, x_goog_resource_state)
