"""Business logic services for the connectors service."""

from connectors.services.connector_manager import (
    CONNECTOR_MANAGERS,
    ConnectorManager,
    GoogleDriveConnectorManager,
    get_connector_manager,
)
from connectors.services.google_drive import GoogleCredentialsService, GoogleDriveClient
from connectors.services.job_queue import JobQueueService, LaunchStatus
from connectors.services.mirror import MirrorStore
from connectors.services.orchestrator import SyncOrchestrator
from connectors.services.permissions import PermissionFilter, PermissionTreeReconciler
from connectors.services.sync import GoogleDriveSyncService
from connectors.services.webhooks import NotificationOutcome, WebhookLifecycleManager

__all__ = [
    "CONNECTOR_MANAGERS",
    "ConnectorManager",
    "GoogleCredentialsService",
    "GoogleDriveClient",
    "GoogleDriveConnectorManager",
    "GoogleDriveSyncService",
    "JobQueueService",
    "LaunchStatus",
    "MirrorStore",
    "NotificationOutcome",
    "PermissionFilter",
    "PermissionTreeReconciler",
    "SyncOrchestrator",
    "WebhookLifecycleManager",
    "get_connector_manager",
]
