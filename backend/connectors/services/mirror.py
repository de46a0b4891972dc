"""Local mirror store for Google Drive metadata.

All access goes through one ``AsyncSession``; an ``asyncio.Lock`` serializes
it so callers may fan out remote calls concurrently and still share the
store. Every query is partitioned by connector id.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.logging import get_logger
from connectors.db.models import (
    FOLDER_MIME_TYPE,
    FolderSyncState,
    GoogleDriveConfig,
    GoogleDriveFile,
    GoogleDriveFolder,
    GoogleDriveSyncToken,
    GoogleDriveWebhook,
)
from connectors.services.google_drive import RemoteNode
from connectors.utils import utc_now

logger = get_logger(__name__)

DOCUMENT_ID_PREFIX = "gdrive-"


def document_id_for(drive_file_id: str) -> str:
    """Document id a Drive file is upserted under."""
    return f"{DOCUMENT_ID_PREFIX}{drive_file_id}"


class MirrorStore:
    """Transactional create/find/update/delete keyed by (connector id, remote id)."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._lock = asyncio.Lock()

    # ========== Selected folders ==========

    async def list_folders(self, connector_id: str) -> list[GoogleDriveFolder]:
        """All selected folders of a connector."""
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveFolder)
                .where(GoogleDriveFolder.connector_id == connector_id)
                .order_by(GoogleDriveFolder.created_at)
            )
            return list(result.scalars().all())

    async def get_folder(self, connector_id: str, folder_id: str) -> GoogleDriveFolder | None:
        async with self._lock:
            return await self._get_folder(connector_id, folder_id)

    async def _get_folder(self, connector_id: str, folder_id: str) -> GoogleDriveFolder | None:
        result = await self.db.execute(
            select(GoogleDriveFolder).where(
                GoogleDriveFolder.connector_id == connector_id,
                GoogleDriveFolder.folder_id == folder_id,
            )
        )
        return result.scalar_one_or_none()

    async def selected_folder_ids(
        self, connector_id: str, folder_ids: Iterable[str] | None = None
    ) -> set[str]:
        """Ids of selected folders, optionally restricted to ``folder_ids``."""
        query = select(GoogleDriveFolder.folder_id).where(
            GoogleDriveFolder.connector_id == connector_id
        )
        if folder_ids is not None:
            ids = list(folder_ids)
            if not ids:
                return set()
            query = query.where(GoogleDriveFolder.folder_id.in_(ids))

        async with self._lock:
            result = await self.db.execute(query)
            return set(result.scalars().all())

    async def add_folder(self, connector_id: str, folder_id: str) -> bool:
        """Select a folder. Returns False when it was already selected."""
        async with self._lock:
            if await self._get_folder(connector_id, folder_id) is not None:
                return False
            self.db.add(
                GoogleDriveFolder(
                    connector_id=connector_id,
                    folder_id=folder_id,
                    sync_state=FolderSyncState.SELECTED,
                )
            )
            await self.db.flush()
            return True

    async def remove_folder(self, connector_id: str, folder_id: str) -> int:
        """Unselect a folder. Returns the number of rows deleted."""
        async with self._lock:
            result = await self.db.execute(
                delete(GoogleDriveFolder).where(
                    GoogleDriveFolder.connector_id == connector_id,
                    GoogleDriveFolder.folder_id == folder_id,
                )
            )
            await self.db.flush()
            return result.rowcount

    async def mark_folders(
        self,
        connector_id: str,
        to_state: FolderSyncState,
        *,
        from_states: Iterable[FolderSyncState] | None = None,
        folder_ids: Iterable[str] | None = None,
        synced_at: datetime | None = None,
    ) -> int:
        """Move selected folders into ``to_state``.

        Args:
            connector_id: Connector owning the folders.
            to_state: Target sync state.
            from_states: Only move folders currently in one of these states.
            folder_ids: Only move these folders.
            synced_at: Stamp ``last_synced_at`` with this time.

        Returns:
            Number of folders updated.
        """
        query = update(GoogleDriveFolder).where(GoogleDriveFolder.connector_id == connector_id)
        if from_states is not None:
            query = query.where(GoogleDriveFolder.sync_state.in_(list(from_states)))
        if folder_ids is not None:
            query = query.where(GoogleDriveFolder.folder_id.in_(list(folder_ids)))

        values: dict[str, object] = {"sync_state": to_state}
        if synced_at is not None:
            values["last_synced_at"] = synced_at

        async with self._lock:
            result = await self.db.execute(
                query.values(**values).execution_options(synchronize_session="fetch")
            )
            await self.db.flush()
            return result.rowcount

    # ========== Mirrored files ==========

    async def find_children(self, connector_id: str, parent_id: str) -> list[GoogleDriveFile]:
        """Mirrored files and folders whose parent is ``parent_id``."""
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveFile).where(
                    GoogleDriveFile.connector_id == connector_id,
                    GoogleDriveFile.parent_id == parent_id,
                )
            )
            return list(result.scalars().all())

    async def has_children(self, connector_id: str, parent_id: str) -> bool:
        """Whether at least one mirrored entry has ``parent_id`` as parent."""
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveFile.id)
                .where(
                    GoogleDriveFile.connector_id == connector_id,
                    GoogleDriveFile.parent_id == parent_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def get_file(self, connector_id: str, drive_file_id: str) -> GoogleDriveFile | None:
        async with self._lock:
            return await self._get_file(connector_id, drive_file_id)

    async def _get_file(self, connector_id: str, drive_file_id: str) -> GoogleDriveFile | None:
        result = await self.db.execute(
            select(GoogleDriveFile).where(
                GoogleDriveFile.connector_id == connector_id,
                GoogleDriveFile.drive_file_id == drive_file_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_files(self, connector_id: str, drive_file_ids: Iterable[str]) -> list[GoogleDriveFile]:
        """Mirrored entries for the given ids; unknown ids are skipped."""
        ids = list(drive_file_ids)
        if not ids:
            return []
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveFile).where(
                    GoogleDriveFile.connector_id == connector_id,
                    GoogleDriveFile.drive_file_id.in_(ids),
                )
            )
            return list(result.scalars().all())

    async def upsert_file(
        self,
        connector_id: str,
        node: RemoteNode,
        *,
        parent_id: str | None = None,
        seen_at: datetime | None = None,
    ) -> GoogleDriveFile:
        """Create or update the mirrored entry for a remote node.

        Args:
            connector_id: Connector owning the entry.
            node: Remote snapshot to mirror.
            parent_id: Parent to record. Selected roots are stored with
                no parent.
            seen_at: Sync pass timestamp.

        Returns:
            The mirrored entry.
        """
        now = seen_at or utc_now()
        is_folder = node.mime_type == FOLDER_MIME_TYPE

        async with self._lock:
            entry = await self._get_file(connector_id, node.id)
            if entry is None:
                entry = GoogleDriveFile(connector_id=connector_id, drive_file_id=node.id)
                self.db.add(entry)

            entry.parent_id = parent_id
            entry.name = node.name
            entry.mime_type = node.mime_type
            entry.document_id = None if is_folder else document_id_for(node.id)
            entry.remote_modified_at = node.modified_at
            entry.last_upserted_at = now
            entry.last_seen_at = now

            await self.db.flush()
            return entry

    async def delete_file(self, connector_id: str, drive_file_id: str) -> int:
        return await self.delete_files(connector_id, [drive_file_id])

    async def list_all_files(self, connector_id: str) -> list[GoogleDriveFile]:
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveFile).where(GoogleDriveFile.connector_id == connector_id)
            )
            return list(result.scalars().all())

    async def delete_files(self, connector_id: str, drive_file_ids: Iterable[str]) -> int:
        """Delete mirrored entries. Returns the number of rows deleted."""
        ids = list(drive_file_ids)
        if not ids:
            return 0
        async with self._lock:
            result = await self.db.execute(
                delete(GoogleDriveFile).where(
                    GoogleDriveFile.connector_id == connector_id,
                    GoogleDriveFile.drive_file_id.in_(ids),
                )
            )
            await self.db.flush()
            return result.rowcount

    # ========== Config and sync token ==========

    async def get_config(self, connector_id: str) -> GoogleDriveConfig | None:
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveConfig).where(GoogleDriveConfig.connector_id == connector_id)
            )
            return result.scalar_one_or_none()

    async def get_sync_token(self, connector_id: str) -> str | None:
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveSyncToken.sync_token).where(
                    GoogleDriveSyncToken.connector_id == connector_id
                )
            )
            return result.scalar_one_or_none()

    async def set_sync_token(self, connector_id: str, token: str) -> None:
        async with self._lock:
            result = await self.db.execute(
                select(GoogleDriveSyncToken).where(
                    GoogleDriveSyncToken.connector_id == connector_id
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                self.db.add(GoogleDriveSyncToken(connector_id=connector_id, sync_token=token))
            else:
                row.sync_token = token
            await self.db.flush()

    # ========== Teardown ==========

    async def purge(self, connector_id: str) -> dict[str, int]:
        """Delete every mirror row owned by a connector.

        Returns:
            Rows deleted per table.
        """
        counts: dict[str, int] = {}
        async with self._lock:
            for model in (
                GoogleDriveFile,
                GoogleDriveFolder,
                GoogleDriveSyncToken,
                GoogleDriveWebhook,
                GoogleDriveConfig,
            ):
                result = await self.db.execute(
                    delete(model).where(model.connector_id == connector_id)
                )
                counts[model.__tablename__] = result.rowcount
            await self.db.flush()

        logger.info("mirror_purged", connector_id=connector_id, **counts)
        return counts
