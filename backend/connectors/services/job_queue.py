"""Database-backed workflow engine that sync triggers launch into."""

from __future__ import annotations

import enum
import json
from datetime import timedelta
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db.models import Job, JobStatus, JobType
from connectors.exceptions import RateLimitedError
from connectors.utils import as_utc, utc_now

logger = get_logger(__name__)

LAUNCH_WINDOW = timedelta(minutes=1)

_ACTIVE = (JobStatus.QUEUED, JobStatus.RUNNING)


class LaunchStatus(str, enum.Enum):
    """Outcome of a successful workflow launch."""

    TRIGGERED = "triggered"
    ALREADY_RUNNING = "already_running"


class WorkflowEngine(Protocol):
    """Anything sync triggers can be launched into.

    ``launch`` returns once the launch is recorded, never after the
    launched work completes. Rejections raise ``RateLimitedError`` or
    ``WorkflowLaunchError``.
    """

    async def launch(
        self,
        kind: JobType,
        connector_id: str,
        params: dict[str, Any] | None = None,
    ) -> LaunchStatus: ...


def _loads(raw: str | None) -> dict[str, Any] | None:
    return json.loads(raw) if raw else None


def widen_params(
    queued: dict[str, Any] | None,
    launched: dict[str, Any] | None,
) -> dict[str, Any] | None:
    """Parameters of a queued run that also covers a coalesced launch.

    A run without a cursor covers every folder, and a lower cursor covers
    more folders than a higher one.
    """
    if not queued or not launched:
        return None
    merged = {**queued, **launched}
    cursors = [p.get("cursor") for p in (queued, launched)]
    if all(cursors):
        merged["cursor"] = min(cursors)
    else:
        merged.pop("cursor", None)
    return merged or None


class JobQueueService:
    """Jobs table as a queue.

    Workers claim jobs one at a time in priority order. A failed job is
    put back until it has used ``max_attempts``.
    """

    def __init__(self, db: AsyncSession, launch_limit_per_minute: int | None = None):
        self.db = db
        self.launch_limit_per_minute = (
            launch_limit_per_minute or settings.workflow_launch_limit_per_minute
        )

    # -------------------------------------------------------------------------
    # Launching
    # -------------------------------------------------------------------------

    async def launch(
        self,
        kind: JobType,
        connector_id: str,
        params: dict[str, Any] | None = None,
    ) -> LaunchStatus:
        """Queue a workflow run for a connector.

        A job of the same kind still waiting for the connector absorbs the
        launch; its parameters are widened so it covers both launches.
        Otherwise the launch counts against the connector's per-minute limit.

        Raises:
            RateLimitedError: The connector is over its launch limit.
        """
        waiting = await self.get_pending_job(connector_id, kind)
        if waiting is not None:
            queued = self.get_payload(waiting)
            widened = widen_params(queued, params)
            if widened != queued:
                waiting.payload_json = json.dumps(widened) if widened else None
                await self.db.flush()
            logger.info(
                "workflow_launch_coalesced",
                job_id=waiting.id,
                job_type=kind.value,
                widened=widened != queued,
            )
            return LaunchStatus.ALREADY_RUNNING

        launched = await self.db.scalar(
            select(func.count(Job.id)).where(
                Job.connector_id == connector_id,
                Job.created_at >= utc_now() - LAUNCH_WINDOW,
            )
        )
        if launched >= self.launch_limit_per_minute:
            logger.warning(
                "workflow_launch_rate_limited",
                job_type=kind.value,
                connector_id=connector_id,
                launched=launched,
            )
            raise RateLimitedError(
                f"Connector {connector_id} is limited to "
                f"{self.launch_limit_per_minute} launches per minute",
                retry_after=int(LAUNCH_WINDOW.total_seconds()),
            )

        await self.enqueue(kind, connector_id=connector_id, payload=params)
        return LaunchStatus.TRIGGERED

    async def enqueue(
        self,
        job_type: JobType,
        *,
        connector_id: str | None = None,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        max_attempts: int = 3,
    ) -> Job:
        """Insert a QUEUED job. Higher ``priority`` runs first."""
        job = Job(
            type=job_type,
            status=JobStatus.QUEUED,
            priority=priority,
            connector_id=connector_id,
            payload_json=json.dumps(payload) if payload else None,
            max_attempts=max_attempts,
        )
        self.db.add(job)
        await self.db.flush()
        logger.info("job_enqueued", job_id=job.id, job_type=job_type.value, connector_id=connector_id)
        return job

    # -------------------------------------------------------------------------
    # Claiming and completion
    # -------------------------------------------------------------------------

    async def dequeue(self, job_types: list[JobType] | None = None) -> Job | None:
        """Claim the next QUEUED job, optionally restricted to ``job_types``.

        The claimed job is RUNNING with its attempt counted.
        """
        query = select(Job).where(Job.status == JobStatus.QUEUED)
        if job_types:
            query = query.where(Job.type.in_(job_types))
        query = (
            query.order_by(Job.priority.desc(), Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        job = (await self.db.execute(query)).scalar_one_or_none()
        if job is None:
            return None

        job.status = JobStatus.RUNNING
        job.started_at = utc_now()
        job.attempts += 1
        await self.db.flush()

        logger.info("job_claimed", job_id=job.id, job_type=job.type.value, attempt=job.attempts)
        return job

    async def complete(
        self,
        job_id: str,
        *,
        success: bool,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> Job | None:
        """Record the outcome of a claimed job.

        Returns:
            The job, or None if it no longer exists.
        """
        job = await self.get_job(job_id)
        if job is None:
            logger.warning("job_not_found", job_id=job_id)
            return None

        job.finished_at = utc_now()
        if success:
            job.status = JobStatus.SUCCESS
            job.last_error = None
            if result:
                job.result_json = json.dumps(result)
            elapsed = as_utc(job.finished_at) - as_utc(job.started_at) if job.started_at else None
            logger.info(
                "job_succeeded",
                job_id=job_id,
                job_type=job.type.value,
                duration_ms=int(elapsed.total_seconds() * 1000) if elapsed else None,
            )
        elif job.attempts < job.max_attempts:
            job.status = JobStatus.QUEUED
            job.last_error = error
            job.started_at = None
            job.finished_at = None
            logger.info(
                "job_retry_scheduled",
                job_id=job_id,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                error=error,
            )
        else:
            job.status = JobStatus.FAILED
            job.last_error = error
            logger.error("job_failed_final", job_id=job_id, attempts=job.attempts, error=error)

        await self.db.flush()
        return job

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    async def cancel_jobs_for_connector(self, connector_id: str) -> int:
        """Cancel the connector's QUEUED and RUNNING jobs.

        Returns:
            How many were canceled.
        """
        result = await self.db.execute(
            update(Job)
            .where(Job.connector_id == connector_id, Job.status.in_(_ACTIVE))
            .values(status=JobStatus.CANCELED, finished_at=utc_now())
        )
        await self.db.flush()
        if result.rowcount:
            logger.info("connector_jobs_canceled", connector_id=connector_id, count=result.rowcount)
        return result.rowcount

    async def recover_orphaned_jobs(self) -> int:
        """Put jobs left RUNNING by a previous process back in the queue."""
        result = await self.db.execute(
            update(Job)
            .where(Job.status == JobStatus.RUNNING)
            .values(
                status=JobStatus.QUEUED,
                started_at=None,
                last_error="Interrupted by restart",
            )
            .returning(Job.id)
        )
        recovered = result.scalars().all()
        await self.db.flush()
        if recovered:
            logger.warning("orphaned_jobs_recovered", job_ids=list(recovered))
        return len(recovered)

    async def requeue_stale_jobs(self, stale_minutes: int = 30) -> int:
        """Put jobs RUNNING for longer than ``stale_minutes`` back in the queue."""
        result = await self.db.execute(
            update(Job)
            .where(
                Job.status == JobStatus.RUNNING,
                Job.started_at < utc_now() - timedelta(minutes=stale_minutes),
            )
            .values(status=JobStatus.QUEUED, started_at=None)
        )
        await self.db.flush()
        if result.rowcount:
            logger.warning("stale_jobs_requeued", count=result.rowcount, stale_minutes=stale_minutes)
        return result.rowcount

    async def get_queue_stats(self) -> dict[str, Any]:
        """Job counts per status, and per type for active jobs only."""
        by_status = {
            status.value: count
            for status, count in await self.db.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
        }
        by_type = {
            job_type.value: count
            for job_type, count in await self.db.execute(
                select(Job.type, func.count(Job.id))
                .where(Job.status.in_(_ACTIVE))
                .group_by(Job.type)
            )
        }
        return {"by_status": by_status, "by_type": by_type, "total": sum(by_status.values())}

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        return await self.db.get(Job, job_id)

    async def get_pending_job(self, connector_id: str, job_type: JobType) -> Job | None:
        """The connector's QUEUED job of ``job_type``, if any."""
        return await self.db.scalar(
            select(Job)
            .where(
                Job.connector_id == connector_id,
                Job.type == job_type,
                Job.status == JobStatus.QUEUED,
            )
            .limit(1)
        )

    def get_payload(self, job: Job) -> dict[str, Any] | None:
        return _loads(job.payload_json)
