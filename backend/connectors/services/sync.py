"""Google Drive sync activities: full sync, incremental sync, garbage collection.

Each activity runs for one connector inside the caller's transaction, so a
pass either lands completely or not at all.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.logging import get_logger
from connectors.db.models import PDF_MIME_TYPE, Connector, FolderSyncState
from connectors.exceptions import ConnectorError, ConnectorNotFoundError
from connectors.services.google_drive import (
    ClientFactory,
    RemoteDirectoryClient,
    RemoteNode,
    build_drive_client,
)
from connectors.services.mirror import MirrorStore
from connectors.services.orchestrator import SyncOrchestrator
from connectors.utils import utc_now

logger = get_logger(__name__)


@dataclass
class SyncStats:
    """Counters reported by a sync activity."""

    folders_synced: int = 0
    files_upserted: int = 0
    files_skipped: int = 0
    files_deleted: int = 0
    changes_seen: int = 0
    fell_back_to_full_sync: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def should_sync(node: RemoteNode, pdf_enabled: bool) -> bool:
    """Whether a remote file is mirrored under the connector's config."""
    if node.is_folder:
        return True
    return pdf_enabled or node.mime_type != PDF_MIME_TYPE


class GoogleDriveSyncService:
    """Brings a connector's mirror into agreement with Drive."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ClientFactory | None = None,
        orchestrator: SyncOrchestrator | None = None,
        mirror: MirrorStore | None = None,
    ):
        self.db = db
        self.mirror = mirror or MirrorStore(db)
        self._client_factory = client_factory or partial(build_drive_client, db)
        self.orchestrator = orchestrator or SyncOrchestrator(db, mirror=self.mirror)

    async def _get_connector(self, connector_id: str) -> Connector:
        connector = await self.db.get(Connector, connector_id)
        if connector is None:
            raise ConnectorNotFoundError(connector_id)
        return connector

    async def _pdf_enabled(self, connector_id: str) -> bool:
        config = await self.mirror.get_config(connector_id)
        return bool(config and config.pdf_enabled)

    # ========== Full sync ==========

    async def full_sync(self, connector_id: str, cursor: str | None = None) -> SyncStats:
        """Walk every selected folder and mirror what lies beneath it.

        The changes token is taken before walking so changes made during the
        walk are replayed by the next incremental sync.

        Args:
            connector_id: Connector to sync.
            cursor: Folder id to resume from; selected folders ordered
                before it are left as they are.

        Returns:
            Counters of the pass.
        """
        connector = await self._get_connector(connector_id)
        client = await self._client_factory(connector)

        start_token = await client.get_start_page_token()
        pdf_enabled = await self._pdf_enabled(connector_id)
        now = utc_now()
        stats = SyncStats()

        folders = sorted(await self.mirror.list_folders(connector_id), key=lambda f: f.folder_id)
        selected = {f.folder_id for f in folders}
        if cursor:
            folders = [f for f in folders if f.folder_id >= cursor]

        synced_roots: list[str] = []
        for folder in folders:
            root = await client.get_node(folder.folder_id)
            if root is None:
                logger.warning(
                    "full_sync_root_missing",
                    connector_id=connector_id,
                    folder_id=folder.folder_id,
                )
                continue

            await self.mirror.upsert_file(connector_id, root, parent_id=None, seen_at=now)
            stats.files_upserted += 1
            await self._walk(connector_id, client, root.id, selected, pdf_enabled, now, stats)
            synced_roots.append(root.id)

        stats.folders_synced = await self.mirror.mark_folders(
            connector_id, FolderSyncState.SYNCED, folder_ids=synced_roots, synced_at=now
        )
        await self.mirror.set_sync_token(connector_id, start_token)
        connector.last_sync_success_at = now
        connector.last_sync_error = None
        await self.db.flush()

        logger.info("full_sync_completed", connector_id=connector_id, **stats.to_dict())

        await self._handoff_garbage_collect(connector_id)
        return stats

    async def _walk(
        self,
        connector_id: str,
        client: RemoteDirectoryClient,
        root_id: str,
        selected: set[str],
        pdf_enabled: bool,
        seen_at: datetime,
        stats: SyncStats,
    ) -> None:
        queue: deque[str] = deque([root_id])
        visited = {root_id}

        while queue:
            parent_id = queue.popleft()
            page_token: str | None = None
            while True:
                nodes, page_token = await client.list_children(parent_id, page_token)
                for node in nodes:
                    # Selected folders are mirrored as roots of their own
                    if node.id in visited or node.id in selected:
                        continue
                    visited.add(node.id)

                    if not should_sync(node, pdf_enabled):
                        stats.files_skipped += 1
                        continue

                    await self.mirror.upsert_file(
                        connector_id, node, parent_id=parent_id, seen_at=seen_at
                    )
                    stats.files_upserted += 1
                    if node.is_folder:
                        queue.append(node.id)

                if not page_token:
                    break

    # ========== Incremental sync ==========

    async def incremental_sync(self, connector_id: str) -> SyncStats:
        """Apply the Drive changes feed since the stored token.

        Without a stored token there is nothing to resume from, so a full
        sync is triggered instead.
        """
        connector = await self._get_connector(connector_id)
        stats = SyncStats()

        page_token = await self.mirror.get_sync_token(connector_id)
        if page_token is None:
            logger.info("incremental_sync_no_token", connector_id=connector_id)
            await self.orchestrator.trigger_full_sync(connector_id)
            stats.fell_back_to_full_sync = True
            return stats

        client = await self._client_factory(connector)
        selected = await self.mirror.selected_folder_ids(connector_id)
        pdf_enabled = await self._pdf_enabled(connector_id)
        now = utc_now()

        while True:
            page = await client.list_changes(page_token)
            for change in page.changes:
                stats.changes_seen += 1
                if change.removed or change.node is None:
                    stats.files_deleted += await self.mirror.delete_file(connector_id, change.file_id)
                    continue
                await self._apply_change(connector_id, change.node, selected, pdf_enabled, now, stats)

            if page.next_page_token:
                page_token = page.next_page_token
                continue
            new_token = page.new_start_page_token
            break

        if new_token:
            await self.mirror.set_sync_token(connector_id, new_token)
        # Folders never walked wait for the full sync to cover them
        resynced = [
            f.folder_id
            for f in await self.mirror.list_folders(connector_id)
            if f.sync_state == FolderSyncState.SYNC_PENDING and f.last_synced_at is not None
        ]
        stats.folders_synced = await self.mirror.mark_folders(
            connector_id, FolderSyncState.SYNCED, folder_ids=resynced, synced_at=now
        )
        connector.last_sync_success_at = now
        connector.last_sync_error = None
        await self.db.flush()

        logger.info("incremental_sync_completed", connector_id=connector_id, **stats.to_dict())

        if stats.files_deleted:
            await self._handoff_garbage_collect(connector_id)
        return stats

    async def _apply_change(
        self,
        connector_id: str,
        node: RemoteNode,
        selected: set[str],
        pdf_enabled: bool,
        seen_at: datetime,
        stats: SyncStats,
    ) -> None:
        if node.id in selected:
            await self.mirror.upsert_file(connector_id, node, parent_id=None, seen_at=seen_at)
            stats.files_upserted += 1
            return

        parent_id = node.parent_id
        in_scope = parent_id is not None and (
            parent_id in selected
            or await self.mirror.get_file(connector_id, parent_id) is not None
        )

        if in_scope and should_sync(node, pdf_enabled):
            await self.mirror.upsert_file(connector_id, node, parent_id=parent_id, seen_at=seen_at)
            stats.files_upserted += 1
            return

        # Moved out of scope or excluded by config
        deleted = await self.mirror.delete_file(connector_id, node.id)
        stats.files_deleted += deleted
        if not deleted:
            stats.files_skipped += 1

    # ========== Garbage collection ==========

    async def garbage_collect(self, connector_id: str) -> SyncStats:
        """Delete mirrored entries no selected folder reaches.

        PDFs are also removed while the connector has them disabled.
        """
        await self._get_connector(connector_id)
        stats = SyncStats()

        files = await self.mirror.list_all_files(connector_id)
        selected = await self.mirror.selected_folder_ids(connector_id)
        pdf_enabled = await self._pdf_enabled(connector_id)

        children: dict[str, list[str]] = {}
        for entry in files:
            if entry.parent_id is not None:
                children.setdefault(entry.parent_id, []).append(entry.drive_file_id)

        reachable: set[str] = set()
        queue = deque(f.drive_file_id for f in files if f.drive_file_id in selected)
        while queue:
            node_id = queue.popleft()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            queue.extend(children.get(node_id, []))

        orphans = [
            f.drive_file_id
            for f in files
            if f.drive_file_id not in reachable
            or (not pdf_enabled and f.mime_type == PDF_MIME_TYPE)
        ]
        stats.files_deleted = await self.mirror.delete_files(connector_id, orphans)

        logger.info(
            "garbage_collect_completed",
            connector_id=connector_id,
            mirrored=len(files),
            deleted=stats.files_deleted,
        )
        return stats

    async def _handoff_garbage_collect(self, connector_id: str) -> None:
        try:
            await self.orchestrator.trigger_garbage_collect(connector_id)
        except ConnectorError as e:
            logger.error(
                "garbage_collect_trigger_failed",
                connector_id=connector_id,
                error=e.message,
                code=e.code,
            )
