"""Database models for the connectors service."""

from connectors.db.models.connector import Connector
from connectors.db.models.enums import (
    ConnectorProvider,
    FolderSyncState,
    JobStatus,
    JobType,
)
from connectors.db.models.google_credentials import GoogleCredentials
from connectors.db.models.google_drive import (
    FOLDER_MIME_TYPE,
    PDF_MIME_TYPE,
    GoogleDriveConfig,
    GoogleDriveFile,
    GoogleDriveFolder,
    GoogleDriveSyncToken,
    GoogleDriveWebhook,
)
from connectors.db.models.job import Job

__all__ = [
    # Models
    "Connector",
    "GoogleCredentials",
    "GoogleDriveConfig",
    "GoogleDriveFile",
    "GoogleDriveFolder",
    "GoogleDriveSyncToken",
    "GoogleDriveWebhook",
    "Job",
    # Enums
    "ConnectorProvider",
    "FolderSyncState",
    "JobStatus",
    "JobType",
    # Constants
    "FOLDER_MIME_TYPE",
    "PDF_MIME_TYPE",
]
