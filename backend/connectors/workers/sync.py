"""Worker executing Google Drive sync workflows."""

from __future__ import annotations

from typing import Any

from connectors.core.logging import get_logger
from connectors.db.models import Connector, Job, JobType
from connectors.exceptions import ConnectorNotFoundError
from connectors.services.google_drive import ClientFactory
from connectors.services.sync import GoogleDriveSyncService
from connectors.workers.base import BaseWorker, NonRetryableError

logger = get_logger(__name__)


class SyncWorker(BaseWorker):
    """Runs full sync, incremental sync and garbage collection jobs.

    Each job runs in its own session and commits as one transaction; on
    failure the connector's ``last_sync_error`` is recorded separately.
    """

    job_types = [
        JobType.GOOGLE_DRIVE_FULL_SYNC,
        JobType.GOOGLE_DRIVE_INCREMENTAL_SYNC,
        JobType.GOOGLE_DRIVE_GARBAGE_COLLECT,
    ]

    def __init__(self, *, client_factory: ClientFactory | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.client_factory = client_factory

    async def process(
        self, job: Job, payload: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        if not job.connector_id:
            raise NonRetryableError(f"Job {job.id} has no connector")

        payload = payload or {}
        try:
            async with self.session_factory() as db:
                service = GoogleDriveSyncService(db, client_factory=self.client_factory)
                if job.type == JobType.GOOGLE_DRIVE_FULL_SYNC:
                    stats = await service.full_sync(job.connector_id, payload.get("cursor"))
                elif job.type == JobType.GOOGLE_DRIVE_INCREMENTAL_SYNC:
                    stats = await service.incremental_sync(job.connector_id)
                elif job.type == JobType.GOOGLE_DRIVE_GARBAGE_COLLECT:
                    stats = await service.garbage_collect(job.connector_id)
                else:
                    raise NonRetryableError(f"Unsupported job type {job.type.value}")
                await db.commit()
        except ConnectorNotFoundError as e:
            # Connector deleted after the job was queued
            raise NonRetryableError(e.message) from e
        except Exception as e:
            await self._record_sync_error(job.connector_id, str(e))
            raise

        return stats.to_dict()

    async def _record_sync_error(self, connector_id: str, error: str) -> None:
        async with self.session_factory() as db:
            connector = await db.get(Connector, connector_id)
            if connector is None:
                return
            connector.last_sync_error = error
            await db.commit()
        logger.warning("sync_error_recorded", connector_id=connector_id, error=error)
