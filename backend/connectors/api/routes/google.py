"""Google OAuth flow and stored credentials.

A connector's ``connection_id`` is the id of a credentials row created
here.
"""

from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db import get_db
from connectors.db.models import GoogleCredentials
from connectors.schemas.google import (
    GoogleCredentialsList,
    GoogleCredentialsRead,
    GoogleOAuthAuthorization,
    GoogleOAuthLinked,
    GoogleOAuthStatus,
)
from connectors.services.google_drive import GoogleAuthError, GoogleCredentialsService

logger = get_logger(__name__)

router = APIRouter(prefix="/google", tags=["google"])

_NOT_CONFIGURED = (
    "Google OAuth is not configured. "
    "Set CONNECTORS_GOOGLE_CLIENT_ID and CONNECTORS_GOOGLE_CLIENT_SECRET."
)


def _require_oauth() -> None:
    if not settings.google_oauth_configured:
        raise HTTPException(status_code=400, detail=_NOT_CONFIGURED)


async def _get_or_404(service: GoogleCredentialsService, credentials_id: str) -> GoogleCredentials:
    credentials = await service.get_credentials(credentials_id)
    if credentials is None:
        raise HTTPException(status_code=404, detail="Credentials not found")
    return credentials


# =============================================================================
# OAuth Flow
# =============================================================================


@router.get("/oauth/status", response_model=GoogleOAuthStatus)
async def get_oauth_status(db: AsyncSession = Depends(get_db)) -> GoogleOAuthStatus:
    """Report configuration and the first linked account."""
    if not settings.google_oauth_configured:
        return GoogleOAuthStatus(configured=False, authenticated=False)

    linked = await GoogleCredentialsService(db).list_credentials()
    if not linked:
        return GoogleOAuthStatus(configured=True, authenticated=False)
    return GoogleOAuthStatus(
        configured=True,
        authenticated=True,
        email=linked[0].email,
        expires_at=linked[0].expires_at,
    )


@router.post("/oauth/authorize", response_model=GoogleOAuthAuthorization)
async def start_oauth(db: AsyncSession = Depends(get_db)) -> GoogleOAuthAuthorization:
    """Build the Google consent URL the user is sent to."""
    _require_oauth()
    state = secrets.token_urlsafe(32)
    try:
        auth_url = GoogleCredentialsService(db).get_oauth_url(state=state)
    except GoogleAuthError as e:
        raise HTTPException(status_code=500, detail=e.message)

    logger.info("oauth_started", state_prefix=state[:8])
    return GoogleOAuthAuthorization(auth_url=auth_url, state=state)


@router.get("/oauth/callback", response_model=GoogleOAuthLinked)
async def finish_oauth(
    code: str = Query(...),
    state: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
) -> GoogleOAuthLinked:
    """Redirect target: trade the authorization code for stored tokens."""
    _require_oauth()
    try:
        credentials = await GoogleCredentialsService(db).handle_oauth_callback(code)
    except GoogleAuthError as e:
        logger.warning("oauth_exchange_failed", error=e.message)
        raise HTTPException(status_code=400, detail=e.message)

    logger.info("oauth_linked", credentials_id=credentials.id, email=credentials.email)
    return GoogleOAuthLinked(credentials_id=credentials.id, email=credentials.email)


# =============================================================================
# Stored Credentials
# =============================================================================


@router.get("/credentials/", response_model=GoogleCredentialsList)
async def list_credentials(db: AsyncSession = Depends(get_db)) -> GoogleCredentialsList:
    items = [
        GoogleCredentialsRead.model_validate(c)
        for c in await GoogleCredentialsService(db).list_credentials()
    ]
    return GoogleCredentialsList(items=items, total=len(items))


@router.get("/credentials/{credentials_id}", response_model=GoogleCredentialsRead)
async def get_credentials(
    credentials_id: str,
    db: AsyncSession = Depends(get_db),
) -> GoogleCredentialsRead:
    credentials = await _get_or_404(GoogleCredentialsService(db), credentials_id)
    return GoogleCredentialsRead.model_validate(credentials)


@router.delete("/credentials/{credentials_id}", status_code=204)
async def delete_credentials(
    credentials_id: str,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Revoke the tokens with Google, then delete the row.

    A refused revocation is logged and the row is deleted anyway.
    """
    service = GoogleCredentialsService(db)
    credentials = await _get_or_404(service, credentials_id)
    try:
        await service.revoke_token(credentials)
    except GoogleAuthError as e:
        logger.warning("credentials_revoke_refused", credentials_id=credentials_id, error=e.message)

    await service.delete_credentials(credentials_id)
    logger.info("credentials_deleted", credentials_id=credentials_id)
