"""Connector model: one configured integration with an external provider."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from connectors.db.base import Base
from connectors.db.models.enums import ConnectorProvider


class Connector(Base):
    """A connector between one workspace data source and one content provider.

    Every mirror, webhook, token and config row hangs off a connector and is
    deleted with it.
    """

    __tablename__ = "connectors"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    type: Mapped[ConnectorProvider] = mapped_column(Enum(ConnectorProvider), nullable=False)

    # Stored OAuth credentials used to reach the provider
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Owning workspace data source
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    data_source_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Administrative pause; notifications are dropped while set
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Sync status
    last_sync_success_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_connectors_workspace", "workspace_id", "data_source_name"),
    )

    @property
    def is_paused(self) -> bool:
        """Whether the connector is administratively paused."""
        return self.paused_at is not None
