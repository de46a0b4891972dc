"""OAuth credentials a Google Drive connector authenticates with."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from connectors.db.base import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GoogleCredentials(Base):
    """Fernet-encrypted tokens for one Google account.

    Connectors reference a row through ``Connector.connection_id``; the
    account's email doubles as the Workspace domain source.
    """

    __tablename__ = "google_credentials"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Access token expiry as reported by Google
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now
    )

    @property
    def domain(self) -> str | None:
        """Workspace domain of the account, taken from the email."""
        _, _, domain = self.email.partition("@")
        return domain or None
