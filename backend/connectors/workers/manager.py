"""Runs the sync workers and the periodic maintenance pass."""

from __future__ import annotations

import asyncio
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db.session import async_session_maker
from connectors.services.job_queue import JobQueueService
from connectors.services.webhooks import WebhookLifecycleManager
from connectors.utils import utc_now
from connectors.workers.base import BaseWorker

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


class WorkerManager:
    """Owns the worker tasks for the lifetime of the application.

    Between polls it requeues jobs left RUNNING past the stale threshold
    and renews change channels that are about to expire.
    """

    def __init__(
        self,
        *,
        maintenance_interval: int | None = None,
        stale_job_threshold_minutes: int = 30,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.maintenance_interval = maintenance_interval or settings.maintenance_interval
        self.stale_job_threshold_minutes = stale_job_threshold_minutes
        self.session_factory = session_factory or async_session_maker

        self._workers: list[BaseWorker] = []
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._started_at = None

    def register_worker(
        self,
        worker_class: type[BaseWorker],
        *,
        count: int = 1,
        **kwargs: Any,
    ) -> None:
        """Add ``count`` instances of ``worker_class``.

        Extra keyword arguments go to the worker constructor.
        """
        for n in range(1, count + 1):
            worker = worker_class(
                worker_id=f"{worker_class.__name__}-{n}",
                session_factory=self.session_factory,
                **kwargs,
            )
            self._workers.append(worker)
            logger.info("worker_registered", worker_id=worker.worker_id)

    async def start(self) -> None:
        """Run the workers until ``stop`` is called, then drain them."""
        if self.is_running:
            logger.warning("worker_manager_already_running")
            return

        self._started_at = utc_now()
        self._stopping.clear()

        async with self.session_factory() as db:
            await JobQueueService(db).recover_orphaned_jobs()
            await db.commit()

        self._tasks = [
            asyncio.create_task(w.run(), name=f"worker-{w.worker_id}") for w in self._workers
        ]
        maintenance = asyncio.create_task(self._maintain(), name="worker-maintenance")
        logger.info("worker_manager_started", worker_count=self.worker_count)

        await self._stopping.wait()

        maintenance.cancel()
        await asyncio.gather(maintenance, return_exceptions=True)
        await self._drain()
        self._started_at = None

    async def stop(self) -> None:
        """Signal ``start`` to shut the workers down."""
        if self.is_running:
            logger.info("worker_manager_stopping")
            self._stopping.set()

    async def _drain(self) -> None:
        for worker in self._workers:
            worker.request_shutdown()
        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_GRACE_SECONDS)
        if pending:
            logger.warning("worker_shutdown_timeout", pending_workers=len(pending))
            for task in pending:
                task.cancel()
        logger.info("worker_manager_shutdown_complete")

    async def _maintain(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error("maintenance_failed", error=str(e), exc_info=True)

    async def run_maintenance(self) -> dict[str, int]:
        """Requeue stale jobs and renew expiring change channels.

        Returns:
            ``jobs_requeued`` and ``webhooks_renewed`` counts.
        """
        async with self.session_factory() as db:
            requeued = await JobQueueService(db).requeue_stale_jobs(
                stale_minutes=self.stale_job_threshold_minutes
            )
            await db.commit()

        async with self.session_factory() as db:
            renewed = await WebhookLifecycleManager(db).renew_expiring()
            await db.commit()

        if requeued or renewed:
            logger.info("maintenance_completed", jobs_requeued=requeued, webhooks_renewed=renewed)
        return {"jobs_requeued": requeued, "webhooks_renewed": renewed}

    def get_stats(self) -> dict[str, Any]:
        """Manager state and per-worker counters."""
        uptime = (utc_now() - self._started_at).total_seconds() if self._started_at else 0
        return {
            "running": self.is_running,
            "worker_count": self.worker_count,
            "uptime_seconds": int(uptime),
            "workers": [w.stats for w in self._workers],
        }

    @property
    def is_running(self) -> bool:
        return self._started_at is not None and not self._stopping.is_set()

    @property
    def worker_count(self) -> int:
        return len(self._workers)


_manager: WorkerManager | None = None


def get_worker_manager() -> WorkerManager:
    """Return the process-wide manager, creating it on first use."""
    global _manager
    if _manager is None:
        _manager = WorkerManager()
    return _manager


async def start_workers() -> None:
    """Register the sync worker and run until ``stop_workers``."""
    from connectors.workers.sync import SyncWorker

    manager = get_worker_manager()
    # One worker; SQLite serializes writers anyway
    manager.register_worker(SyncWorker, poll_interval=settings.worker_poll_interval)
    await manager.start()


async def stop_workers() -> None:
    """Stop the process-wide manager and forget it."""
    global _manager
    if _manager is not None:
        await _manager.stop()
        _manager = None
