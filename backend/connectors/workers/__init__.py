"""Background workers for the connectors service."""

from connectors.workers.base import BaseWorker, NonRetryableError
from connectors.workers.manager import (
    WorkerManager,
    get_worker_manager,
    start_workers,
    stop_workers,
)
from connectors.workers.sync import SyncWorker

__all__ = [
    # Base classes
    "BaseWorker",
    "NonRetryableError",
    # Workers
    "SyncWorker",
    # Manager
    "WorkerManager",
    "get_worker_manager",
    "start_workers",
    "stop_workers",
]
