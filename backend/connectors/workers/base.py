"""Worker base class: polls the job queue and runs claimed workflows."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.core.logging import bind_connector_context, clear_connector_context, get_logger
from connectors.db.models import Job, JobType
from connectors.db.session import async_session_maker
from connectors.services.job_queue import JobQueueService
from connectors.utils import utc_now

logger = get_logger(__name__)


class NonRetryableError(Exception):
    """The job can never succeed; fail it without spending further attempts."""


@dataclass
class WorkerCounters:
    jobs_processed: int = 0
    jobs_failed: int = 0


class BaseWorker(ABC):
    """Claims jobs of ``job_types`` one at a time and hands them to ``process``.

    A failed job goes back to the queue until it runs out of attempts;
    raising ``NonRetryableError`` fails it at once.
    """

    job_types: list[JobType] = []

    def __init__(
        self,
        *,
        poll_interval: float = 1.0,
        worker_id: str | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """Initialize the worker.

        Args:
            poll_interval: Seconds to idle when the queue is empty.
            worker_id: Name used in logs; defaults to the class name.
            session_factory: Session factory; defaults to the app's.
        """
        self.poll_interval = poll_interval
        self.worker_id = worker_id or type(self).__name__
        self.session_factory = session_factory or async_session_maker

        self.counters = WorkerCounters()
        self._stop = asyncio.Event()
        self._current_job_id: str | None = None
        self._started_at = None

    @abstractmethod
    async def process(
        self, job: Job, payload: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        """Run one claimed job.

        Args:
            job: The job, already RUNNING.
            payload: Launch parameters, if any.

        Returns:
            Result stored on the job when it succeeds.
        """

    async def run(self) -> None:
        """Poll until ``request_shutdown`` is called."""
        self._started_at = utc_now()
        logger.info(
            "worker_started",
            worker_id=self.worker_id,
            job_types=[t.value for t in self.job_types],
        )

        while not self._stop.is_set():
            try:
                claimed = await self.run_once()
            except Exception as e:
                logger.error("worker_poll_error", worker_id=self.worker_id, error=str(e), exc_info=True)
                claimed = False

            if not claimed:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info("worker_stopped", worker_id=self.worker_id, **asdict(self.counters))

    async def run_once(self) -> bool:
        """Claim and run at most one job.

        Returns:
            Whether a job was claimed.
        """
        async with self.session_factory() as db:
            queue = JobQueueService(db)
            job = await queue.dequeue(self.job_types or None)
            if job is None:
                return False
            # Release the write lock before the job opens its own session
            await db.commit()

            self._current_job_id = job.id
            if job.connector_id:
                bind_connector_context(job.connector_id, job_id=job.id)
            logger.info("job_started", worker_id=self.worker_id, job_type=job.type.value)

            try:
                result = await self.process(job, queue.get_payload(job))
            except NonRetryableError as e:
                logger.error("job_failed_permanently", job_type=job.type.value, error=str(e))
                job.attempts = job.max_attempts
                await queue.complete(job.id, success=False, error=str(e))
                self.counters.jobs_failed += 1
            except Exception as e:
                logger.error("job_failed", job_type=job.type.value, error=str(e), exc_info=True)
                await queue.complete(job.id, success=False, error=str(e))
                self.counters.jobs_failed += 1
            else:
                await queue.complete(job.id, success=True, result=result)
                self.counters.jobs_processed += 1
            finally:
                self._current_job_id = None
                clear_connector_context()

            await db.commit()
            return True

    def request_shutdown(self) -> None:
        """Stop polling once the current job finishes."""
        logger.info(
            "worker_shutdown_requested",
            worker_id=self.worker_id,
            current_job_id=self._current_job_id,
        )
        self._stop.set()

    @property
    def is_running(self) -> bool:
        return self._started_at is not None and not self._stop.is_set()

    @property
    def stats(self) -> dict[str, Any]:
        """Counters and state for status reporting."""
        return {
            "worker_id": self.worker_id,
            "job_types": [t.value for t in self.job_types],
            "is_running": self.is_running,
            "current_job_id": self._current_job_id,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            **asdict(self.counters),
        }
