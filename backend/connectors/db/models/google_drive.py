"""Google Drive mirror models.

The mirror is the locally persisted subset of Drive metadata used to answer
permission and listing queries without remote calls:

- ``GoogleDriveFolder``: folders a user selected; the sole truth for scope.
- ``GoogleDriveFile``: files and folders synced beneath selected folders.
- ``GoogleDriveWebhook``: the single tracked push-notification channel.
- ``GoogleDriveSyncToken``: changes-API cursor for incremental sync.
- ``GoogleDriveConfig``: per-connector sync toggles.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from connectors.db.base import Base
from connectors.db.models.enums import FolderSyncState

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
PDF_MIME_TYPE = "application/pdf"


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GoogleDriveFolder(Base):
    """A folder explicitly selected for sync (read permission granted)."""

    __tablename__ = "google_drive_folders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    connector_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connectors.id", ondelete="CASCADE"), nullable=False
    )
    folder_id: Mapped[str] = mapped_column(String(128), nullable=False)

    sync_state: Mapped[FolderSyncState] = mapped_column(
        Enum(FolderSyncState), default=FolderSyncState.SELECTED, nullable=False
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)

    __table_args__ = (
        UniqueConstraint("connector_id", "folder_id", name="uq_google_drive_folders_connector_folder"),
    )


class GoogleDriveFile(Base):
    """A file or folder mirrored from Drive beneath a selected folder."""

    __tablename__ = "google_drive_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    connector_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("connectors.id", ondelete="CASCADE"), nullable=False
    )
    drive_file_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Null for selected roots
    parent_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    name: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)

    # Null for folders
    document_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    remote_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_upserted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)

    __table_args__ = (
        UniqueConstraint("connector_id", "drive_file_id", name="uq_google_drive_files_connector_file"),
        Index("ix_google_drive_files_connector_parent", "connector_id", "parent_id"),
    )

    @property
    def is_folder(self) -> bool:
        """Whether this entry is a Drive folder."""
        return self.mime_type == FOLDER_MIME_TYPE


class GoogleDriveWebhook(Base):
    """Push-notification channel registered with Drive for a connector.

    The unique constraint on ``connector_id`` keeps at most one tracked
    channel per connector, even under concurrent registration.
    """

    __tablename__ = "google_drive_webhooks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    connector_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connectors.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # Channel id we chose and Drive echoes back in X-Goog-Channel-Id
    webhook_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    # Opaque id Drive assigns; required to stop the channel
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    renew_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    renewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class GoogleDriveSyncToken(Base):
    """Changes-API page token incremental sync resumes from."""

    __tablename__ = "google_drive_sync_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    connector_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connectors.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    sync_token: Mapped[str] = mapped_column(Text, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now
    )


class GoogleDriveConfig(Base):
    """Per-connector sync toggles."""

    __tablename__ = "google_drive_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    connector_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connectors.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    pdf_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
