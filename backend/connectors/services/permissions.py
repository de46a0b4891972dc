"""Permission tree reconciler for Google Drive connectors.

Answers the two views of a connector's permission tree:

- ``read-only``: what is already granted, served from the local mirror
  (plus live metadata for the selected roots).
- ``discover``: remote browsing used to pick new folders to grant.

and applies permission changes to the selected folder set, handing a full
resync to the orchestrator when the selection actually changed.
"""

from __future__ import annotations

import enum
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import partial

from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.async_utils import concurrent_executor
from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db.models import Connector, GoogleDriveFile, GoogleDriveFolder
from connectors.exceptions import (
    ConnectorError,
    ConnectorNotFoundError,
    CycleDetectedError,
    InvalidPermissionError,
)
from connectors.schemas.connector import ConnectorNode
from connectors.services.google_drive import (
    ClientFactory,
    RemoteDirectoryClient,
    RemoteNode,
    build_drive_client,
)
from connectors.services.mirror import MirrorStore
from connectors.services.orchestrator import SyncOrchestrator

logger = get_logger(__name__)

VALID_PERMISSIONS = ("read", "none")


class PermissionFilter(str, enum.Enum):
    """Which view of the permission tree to list."""

    READ_ONLY = "read-only"
    DISCOVER = "discover"


@dataclass
class PermissionChangeResult:
    """Folder ids actually added, removed, or that failed to apply."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class ParentChainCache:
    """Parent pointers memoized for one logical operation.

    Create one per operation (for example one batch of parent lookups) and
    drop it when the operation ends.
    """

    correlation_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    parents: dict[str, str | None] = field(default_factory=dict)
    hits: int = 0


def sort_nodes(nodes: Iterable[ConnectorNode]) -> list[ConnectorNode]:
    """Folders first, then by title (case-sensitive)."""
    return sorted(nodes, key=lambda n: (n.type != "folder", n.title))


class PermissionTreeReconciler:
    """Lists and mutates the set of Drive folders a connector syncs."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ClientFactory | None = None,
        orchestrator: SyncOrchestrator | None = None,
        mirror: MirrorStore | None = None,
    ):
        """Initialize the reconciler.

        Args:
            db: AsyncSession for database operations.
            client_factory: Builds a remote client for a connector; defaults
                to a Drive client over the connector's stored credentials.
            orchestrator: Receives resync triggers.
            mirror: Mirror store; one is created on ``db`` if omitted.
        """
        self.db = db
        self.mirror = mirror or MirrorStore(db)
        self._client_factory = client_factory or partial(build_drive_client, db)
        self.orchestrator = orchestrator or SyncOrchestrator(db, mirror=self.mirror)

    async def _get_connector(self, connector_id: str) -> Connector:
        connector = await self.db.get(Connector, connector_id)
        if connector is None:
            raise ConnectorNotFoundError(connector_id)
        return connector

    # ========== Listing ==========

    async def list_visible_nodes(
        self,
        connector_id: str,
        parent_id: str | None = None,
        filter: PermissionFilter | str = PermissionFilter.READ_ONLY,
    ) -> list[ConnectorNode]:
        """List one level of the permission tree.

        Args:
            connector_id: Connector to list for.
            parent_id: Node to list the children of; None for the top level.
            filter: ``read-only`` (granted nodes) or ``discover`` (remote browse).

        Returns:
            Nodes with folders first, then sorted by title.

        Raises:
            InvalidPermissionError: If ``filter`` is not a known filter.
            ConnectorNotFoundError: If the connector does not exist.
            UpstreamUnavailableError: If a remote call fails.
        """
        try:
            view = PermissionFilter(filter)
        except ValueError:
            raise InvalidPermissionError(f"Invalid permission filter: {filter!r}") from None

        connector = await self._get_connector(connector_id)

        if view == PermissionFilter.READ_ONLY:
            if parent_id is None:
                nodes = await self._selected_roots(connector)
            else:
                nodes = await self._mirrored_children(connector_id, parent_id)
        else:
            client = await self._client_factory(connector)
            if parent_id is None:
                remote = await client.list_drives()
            else:
                remote = await self._list_child_folders(client, parent_id)
            nodes = await self._annotate_remote(connector_id, client, remote)

        logger.debug(
            "permission_nodes_listed",
            connector_id=connector_id,
            parent_id=parent_id,
            filter=view.value,
            count=len(nodes),
        )
        return sort_nodes(nodes)

    async def _selected_roots(self, connector: Connector) -> list[ConnectorNode]:
        folders = await self.mirror.list_folders(connector.id)
        if not folders:
            return []

        client = await self._client_factory(connector)

        async def enrich(folder: GoogleDriveFolder) -> ConnectorNode | None:
            remote = await client.get_node(folder.folder_id)
            if remote is None:
                # Selected but gone remotely: treated as revoked
                logger.info(
                    "selected_folder_missing_remotely",
                    connector_id=connector.id,
                    folder_id=folder.folder_id,
                )
                return None
            return ConnectorNode(
                internal_id=folder.folder_id,
                parent_internal_id=None,
                type="folder",
                title=remote.name,
                expandable=await self.mirror.has_children(connector.id, folder.folder_id),
                permission="read",
                last_updated_at=remote.modified_at,
                sync_state=folder.sync_state,
            )

        results = await concurrent_executor(
            folders, enrich, concurrency=settings.listing_concurrency
        )
        return [node for node in results if node is not None]

    async def _mirrored_children(self, connector_id: str, parent_id: str) -> list[ConnectorNode]:
        entries = await self.mirror.find_children(connector_id, parent_id)

        async def to_node(entry: GoogleDriveFile) -> ConnectorNode:
            return ConnectorNode(
                internal_id=entry.drive_file_id,
                parent_internal_id=entry.parent_id,
                type="folder" if entry.is_folder else "file",
                title=entry.name,
                expandable=await self.mirror.has_children(connector_id, entry.drive_file_id),
                permission="read",
                document_id=entry.document_id,
                last_updated_at=entry.last_upserted_at,
            )

        return await concurrent_executor(
            entries, to_node, concurrency=settings.listing_concurrency
        )

    async def _list_child_folders(
        self, client: RemoteDirectoryClient, parent_id: str
    ) -> list[RemoteNode]:
        folders: list[RemoteNode] = []
        page_token: str | None = None
        while True:
            page, page_token = await client.list_children(
                parent_id, page_token, folders_only=True
            )
            folders.extend(page)
            if not page_token:
                return folders

    async def _annotate_remote(
        self,
        connector_id: str,
        client: RemoteDirectoryClient,
        remote: list[RemoteNode],
    ) -> list[ConnectorNode]:
        selected = await self.mirror.selected_folder_ids(connector_id, [n.id for n in remote])

        async def to_node(node: RemoteNode) -> ConnectorNode:
            return ConnectorNode(
                internal_id=node.id,
                parent_internal_id=node.parent_id,
                type="folder",
                title=node.name,
                source_url=node.web_view_link,
                expandable=await client.has_child_folders(node.id),
                permission="read" if node.id in selected else "none",
                last_updated_at=node.modified_at,
            )

        return await concurrent_executor(
            remote, to_node, concurrency=settings.listing_concurrency
        )

    # ========== Mutation ==========

    async def apply_permission_changes(
        self,
        connector_id: str,
        changes: Mapping[str, str],
    ) -> PermissionChangeResult:
        """Grant ("read") or revoke ("none") folders.

        Every value is validated before anything is applied. Items are then
        applied one by one, each in its own savepoint, so one failing item
        does not undo the others. When the selection changed, a full resync
        is triggered without waiting for it; trigger failures are logged.

        Raises:
            ConnectorNotFoundError: If the connector does not exist.
            InvalidPermissionError: If any value is not "read" or "none".
        """
        await self._get_connector(connector_id)

        invalid = {k: v for k, v in changes.items() if v not in VALID_PERMISSIONS}
        if invalid:
            raise InvalidPermissionError(
                f"Invalid permissions {invalid}; expected one of {', '.join(VALID_PERMISSIONS)}"
            )

        result = PermissionChangeResult()
        for folder_id, permission in changes.items():
            try:
                async with self.db.begin_nested():
                    if permission == "read":
                        if await self.mirror.add_folder(connector_id, folder_id):
                            result.added.append(folder_id)
                    elif await self.mirror.remove_folder(connector_id, folder_id):
                        result.removed.append(folder_id)
            except Exception as e:
                logger.error(
                    "permission_change_failed",
                    connector_id=connector_id,
                    folder_id=folder_id,
                    permission=permission,
                    error=str(e),
                )
                result.failed[folder_id] = str(e)

        logger.info(
            "permission_changes_applied",
            connector_id=connector_id,
            added=len(result.added),
            removed=len(result.removed),
            failed=len(result.failed),
        )

        if result.changed:
            await self._handoff_full_sync(connector_id)
        return result

    async def _handoff_full_sync(self, connector_id: str) -> None:
        try:
            await self.orchestrator.trigger_full_sync(connector_id)
        except ConnectorError as e:
            logger.error(
                "full_sync_trigger_failed",
                connector_id=connector_id,
                error=e.message,
                code=e.code,
            )

    # ========== Mirror lookups ==========

    async def resolve_titles(self, connector_id: str, ids: Iterable[str]) -> dict[str, str]:
        """Titles of mirrored nodes; unknown ids are absent. No remote calls."""
        entries = await self.mirror.find_files(connector_id, ids)
        return {entry.drive_file_id: entry.name for entry in entries}

    async def resolve_parent_chain(
        self,
        connector_id: str,
        node_id: str,
        cache: ParentChainCache | None = None,
    ) -> list[str]:
        """Walk parent pointers in the mirror from a node up to its root.

        Args:
            connector_id: Connector owning the mirror.
            node_id: Node to start from.
            cache: Memo shared by calls of one logical operation.

        Returns:
            ``[node_id, parent, ..., root]``. A node absent from the mirror
            is its own root.

        Raises:
            CycleDetectedError: If the chain revisits a node.
        """
        cache = cache or ParentChainCache()
        chain: list[str] = []
        seen: set[str] = set()
        current: str | None = node_id

        while current is not None:
            if current in seen:
                logger.error(
                    "parent_chain_cycle",
                    connector_id=connector_id,
                    node_id=current,
                    correlation_key=cache.correlation_key,
                )
                raise CycleDetectedError(current, chain + [current])
            seen.add(current)
            chain.append(current)

            if current in cache.parents:
                cache.hits += 1
                current = cache.parents[current]
                continue

            entry = await self.mirror.get_file(connector_id, current)
            parent = entry.parent_id if entry is not None else None
            cache.parents[current] = parent
            current = parent

        return chain
