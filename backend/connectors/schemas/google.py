"""Pydantic schemas for Google OAuth and stored credentials."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class GoogleOAuthStatus(BaseModel):
    """Whether OAuth is configured and which account is linked, if any."""

    configured: bool
    authenticated: bool
    email: str | None = None
    expires_at: datetime | None = None


class GoogleOAuthAuthorization(BaseModel):
    auth_url: str
    state: str


class GoogleOAuthLinked(BaseModel):
    """Credentials stored by a completed OAuth flow."""

    credentials_id: str
    email: str


class GoogleCredentialsRead(BaseModel):
    """Stored credentials, never including the tokens."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    domain: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None


class GoogleCredentialsList(BaseModel):
    items: list[GoogleCredentialsRead]
    total: int
