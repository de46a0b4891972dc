"""Enum types for database models."""

from __future__ import annotations

import enum


class ConnectorProvider(str, enum.Enum):
    """External content providers a connector can integrate with."""

    GOOGLE_DRIVE = "google_drive"


class FolderSyncState(str, enum.Enum):
    """Sync state of a selected folder subtree.

    A folder with no row is unselected.
    """

    SELECTED = "SELECTED"
    SYNC_PENDING = "SYNC_PENDING"
    SYNCED = "SYNCED"


class JobType(str, enum.Enum):
    """Types of workflows launched for a connector."""

    GOOGLE_DRIVE_FULL_SYNC = "GOOGLE_DRIVE_FULL_SYNC"
    GOOGLE_DRIVE_INCREMENTAL_SYNC = "GOOGLE_DRIVE_INCREMENTAL_SYNC"
    GOOGLE_DRIVE_GARBAGE_COLLECT = "GOOGLE_DRIVE_GARBAGE_COLLECT"


class JobStatus(str, enum.Enum):
    """Status of a background job."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
