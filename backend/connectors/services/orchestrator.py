"""Sync orchestrator: maps connector events to workflow launches.

Triggers return as soon as the workflow engine records the launch; the
launched sync runs later in a worker. Callers must not assume any ordering
between a trigger returning and its effects.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.logging import get_logger
from connectors.db.models import Connector, ConnectorProvider, FolderSyncState, JobType
from connectors.exceptions import ConnectorNotFoundError, WorkflowLaunchError
from connectors.services.job_queue import JobQueueService, LaunchStatus, WorkflowEngine
from connectors.services.mirror import MirrorStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderWorkflows:
    """Workflows launched for one connector provider."""

    full_sync: JobType
    incremental_sync: JobType
    garbage_collect: JobType


WORKFLOWS: dict[ConnectorProvider, ProviderWorkflows] = {
    ConnectorProvider.GOOGLE_DRIVE: ProviderWorkflows(
        full_sync=JobType.GOOGLE_DRIVE_FULL_SYNC,
        incremental_sync=JobType.GOOGLE_DRIVE_INCREMENTAL_SYNC,
        garbage_collect=JobType.GOOGLE_DRIVE_GARBAGE_COLLECT,
    ),
}


class SyncOrchestrator:
    """Launches full sync, incremental sync and garbage collection workflows."""

    def __init__(
        self,
        db: AsyncSession,
        engine: WorkflowEngine | None = None,
        mirror: MirrorStore | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            db: AsyncSession for database operations.
            engine: Workflow engine to launch into; defaults to the job queue.
            mirror: Mirror store to record pending syncs in.
        """
        self.db = db
        self.engine = engine or JobQueueService(db)
        self.mirror = mirror or MirrorStore(db)

    async def _workflows_for(self, connector_id: str) -> ProviderWorkflows:
        connector = await self.db.get(Connector, connector_id)
        if connector is None:
            raise ConnectorNotFoundError(connector_id)
        workflows = WORKFLOWS.get(connector.type)
        if workflows is None:
            raise WorkflowLaunchError(f"No workflows registered for provider {connector.type}")
        return workflows

    async def trigger_full_sync(self, connector_id: str, cursor: str | None = None) -> LaunchStatus:
        """Launch a full resync of every selected folder.

        Args:
            connector_id: Connector to resync.
            cursor: Optional position a previous full sync stopped at.

        Raises:
            ConnectorNotFoundError: If the connector does not exist.
            RateLimitedError: If the launch was rate limited.
            WorkflowLaunchError: If the engine refused the launch.
        """
        workflows = await self._workflows_for(connector_id)
        status = await self.engine.launch(
            workflows.full_sync,
            connector_id,
            {"cursor": cursor} if cursor else None,
        )
        resumed = None
        if cursor:
            # Folders before the cursor are not walked by this run
            folders = await self.mirror.list_folders(connector_id)
            resumed = [f.folder_id for f in folders if f.folder_id >= cursor]
        pending = await self.mirror.mark_folders(
            connector_id, FolderSyncState.SYNC_PENDING, folder_ids=resumed
        )

        logger.info(
            "full_sync_triggered",
            connector_id=connector_id,
            status=status.value,
            folders_pending=pending,
        )
        return status

    async def trigger_incremental_sync(self, connector_id: str) -> LaunchStatus:
        """Launch an incremental sync from the stored changes token.

        Folders that were synced re-enter SYNC_PENDING; folders never synced
        stay where they are until a full sync covers them.
        """
        workflows = await self._workflows_for(connector_id)
        status = await self.engine.launch(workflows.incremental_sync, connector_id)
        pending = await self.mirror.mark_folders(
            connector_id,
            FolderSyncState.SYNC_PENDING,
            from_states=[FolderSyncState.SYNCED],
        )

        logger.info(
            "incremental_sync_triggered",
            connector_id=connector_id,
            status=status.value,
            folders_pending=pending,
        )
        return status

    async def trigger_garbage_collect(self, connector_id: str) -> LaunchStatus:
        """Launch garbage collection of mirror rows outside the selection."""
        workflows = await self._workflows_for(connector_id)
        status = await self.engine.launch(workflows.garbage_collect, connector_id)

        logger.info("garbage_collect_triggered", connector_id=connector_id, status=status.value)
        return status
