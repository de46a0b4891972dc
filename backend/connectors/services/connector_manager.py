"""Connector managers: one implementation of the connector lifecycle per provider.

Routes resolve a manager once through ``get_connector_manager`` and call it
without knowing which provider sits behind it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from functools import partial

from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.logging import get_logger
from connectors.db.models import Connector, ConnectorProvider, GoogleDriveConfig
from connectors.exceptions import (
    ConnectorNotFoundError,
    ConnectorUpdateError,
    InvalidConfigError,
)
from connectors.schemas.connector import ConnectorNode
from connectors.services.google_drive import (
    ClientFactory,
    GoogleAuthError,
    GoogleCredentialsService,
    build_drive_client,
)
from connectors.services.job_queue import JobQueueService, LaunchStatus
from connectors.services.mirror import MirrorStore
from connectors.services.orchestrator import SyncOrchestrator
from connectors.services.permissions import (
    ParentChainCache,
    PermissionChangeResult,
    PermissionFilter,
    PermissionTreeReconciler,
)
from connectors.services.webhooks import WebhookLifecycleManager
from connectors.utils import utc_now

logger = get_logger(__name__)

PDF_ENABLED_KEY = "pdfEnabled"
BOOLEAN_VALUES = {"true": True, "false": False}


class ConnectorManager(ABC):
    """Lifecycle, sync and permission operations of one connector provider."""

    provider: ConnectorProvider

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ClientFactory | None = None,
        orchestrator: SyncOrchestrator | None = None,
    ):
        self.db = db
        self.mirror = MirrorStore(db)
        self.orchestrator = orchestrator or SyncOrchestrator(db, mirror=self.mirror)
        self._client_factory = client_factory

    async def get_connector(self, connector_id: str) -> Connector:
        connector = await self.db.get(Connector, connector_id)
        if connector is None or connector.type != self.provider:
            raise ConnectorNotFoundError(connector_id)
        return connector

    async def stop(self, connector_id: str) -> Connector:
        """Pause a connector: notifications are dropped and queued syncs canceled."""
        connector = await self.get_connector(connector_id)
        if connector.paused_at is None:
            connector.paused_at = utc_now()
        canceled = await JobQueueService(self.db).cancel_jobs_for_connector(connector_id)
        await self.db.flush()

        logger.info("connector_stopped", connector_id=connector_id, jobs_canceled=canceled)
        return connector

    async def resume(self, connector_id: str) -> LaunchStatus:
        """Unpause a connector and catch up on changes missed while paused."""
        connector = await self.get_connector(connector_id)
        connector.paused_at = None
        await self.db.flush()

        logger.info("connector_resumed", connector_id=connector_id)
        return await self.orchestrator.trigger_incremental_sync(connector_id)

    async def sync(self, connector_id: str, cursor: str | None = None) -> LaunchStatus:
        await self.get_connector(connector_id)
        return await self.orchestrator.trigger_full_sync(connector_id, cursor)

    async def garbage_collect(self, connector_id: str) -> LaunchStatus:
        await self.get_connector(connector_id)
        return await self.orchestrator.trigger_garbage_collect(connector_id)

    @abstractmethod
    async def create(
        self, connection_id: str, workspace_id: str, data_source_name: str
    ) -> Connector: ...

    @abstractmethod
    async def update(self, connector_id: str, connection_id: str) -> Connector: ...

    @abstractmethod
    async def cleanup(self, connector_id: str, force: bool = False) -> None: ...

    @abstractmethod
    async def get_config(self, connector_id: str, key: str) -> str | None: ...

    @abstractmethod
    async def set_config(self, connector_id: str, key: str, value: str) -> LaunchStatus: ...

    @abstractmethod
    async def retrieve_permissions(
        self,
        connector_id: str,
        parent_id: str | None,
        filter: PermissionFilter | str,
    ) -> list[ConnectorNode]: ...

    @abstractmethod
    async def set_permissions(
        self, connector_id: str, changes: Mapping[str, str]
    ) -> PermissionChangeResult: ...

    @abstractmethod
    async def retrieve_titles(self, connector_id: str, ids: list[str]) -> dict[str, str]: ...

    @abstractmethod
    async def retrieve_parents(
        self,
        connector_id: str,
        node_id: str,
        cache: ParentChainCache | None = None,
    ) -> list[str]: ...


class GoogleDriveConnectorManager(ConnectorManager):
    """Google Drive implementation of the connector lifecycle."""

    provider = ConnectorProvider.GOOGLE_DRIVE

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ClientFactory | None = None,
        orchestrator: SyncOrchestrator | None = None,
        credentials: GoogleCredentialsService | None = None,
    ):
        super().__init__(db, client_factory or partial(build_drive_client, db), orchestrator)
        self.credentials = credentials or GoogleCredentialsService(db)
        self.permissions = PermissionTreeReconciler(
            db, self._client_factory, self.orchestrator, self.mirror
        )
        self.webhooks = WebhookLifecycleManager(db, self._client_factory, self.orchestrator)

    # ========== Lifecycle ==========

    async def create(
        self, connection_id: str, workspace_id: str, data_source_name: str
    ) -> Connector:
        """Create a connector, its config and its change channel together.

        Raises:
            UpstreamUnavailableError: If the credentials fail the remote checks.
            RegistrationFailedError: If the change channel cannot be opened.
        """
        connector = Connector(
            type=self.provider,
            connection_id=connection_id,
            workspace_id=workspace_id,
            data_source_name=data_source_name,
        )
        client = await self._client_factory(connector)
        await client.sanity_check()

        async with self.db.begin_nested():
            self.db.add(connector)
            await self.db.flush()
            self.db.add(GoogleDriveConfig(connector_id=connector.id, pdf_enabled=False))
            await self.db.flush()
            await self.webhooks.register(connector.id)

        logger.info(
            "connector_created",
            connector_id=connector.id,
            workspace_id=workspace_id,
            data_source_name=data_source_name,
        )
        return connector

    async def update(self, connector_id: str, connection_id: str) -> Connector:
        """Switch a connector to other credentials of the same Workspace domain.

        Raises:
            ConnectorUpdateError: If the new credentials are unknown or belong
                to a different domain.
        """
        connector = await self.get_connector(connector_id)
        if connection_id == connector.connection_id:
            return connector

        new = await self.credentials.get_credentials(connection_id)
        if new is None:
            raise ConnectorUpdateError(
                f"Credentials {connection_id} not found", "CONNECTION_NOT_FOUND"
            )

        old = await self.credentials.get_credentials(connector.connection_id)
        if old is not None and old.domain != new.domain:
            raise ConnectorUpdateError(
                "Cannot change the Google Workspace domain of a connector",
                "CONNECTOR_OAUTH_TARGET_MISMATCH",
            )

        connector.connection_id = connection_id
        await self.db.flush()
        logger.info("connector_credentials_updated", connector_id=connector_id)

        if old is not None:
            try:
                await self.credentials.revoke_token(old)
            except GoogleAuthError as e:
                logger.warning(
                    "old_credentials_revoke_failed",
                    connector_id=connector_id,
                    error=e.message,
                )
        return connector

    async def cleanup(self, connector_id: str, force: bool = False) -> None:
        """Revoke access and delete every row the connector owns.

        Args:
            connector_id: Connector to delete.
            force: Delete even if the OAuth token cannot be revoked.

        Raises:
            GoogleAuthError: If revocation fails and ``force`` is not set.
        """
        connector = await self.get_connector(connector_id)

        creds = await self.credentials.get_credentials(connector.connection_id)
        if creds is None:
            logger.warning(
                "connector_cleanup_no_credentials",
                connector_id=connector_id,
                connection_id=connector.connection_id,
            )
        else:
            try:
                await self.credentials.revoke_token(creds)
            except GoogleAuthError as e:
                if not force:
                    raise
                logger.warning(
                    "connector_cleanup_revoke_failed_forced",
                    connector_id=connector_id,
                    error=e.message,
                )

        await self.webhooks.unregister(connector_id)
        await JobQueueService(self.db).cancel_jobs_for_connector(connector_id)
        await self.mirror.purge(connector_id)
        await self.db.delete(connector)
        await self.db.flush()

        logger.info("connector_deleted", connector_id=connector_id, forced=force)

    # ========== Config ==========

    async def _get_or_create_config(self, connector_id: str) -> GoogleDriveConfig:
        config = await self.mirror.get_config(connector_id)
        if config is None:
            config = GoogleDriveConfig(connector_id=connector_id, pdf_enabled=False)
            self.db.add(config)
            await self.db.flush()
        return config

    async def get_config(self, connector_id: str, key: str) -> str | None:
        """Read a config value ("true"/"false" for ``pdfEnabled``).

        Raises:
            InvalidConfigError: If the key is unknown.
        """
        await self.get_connector(connector_id)
        if key != PDF_ENABLED_KEY:
            raise InvalidConfigError(f"Unknown config key: {key}")
        config = await self.mirror.get_config(connector_id)
        return "true" if config is not None and config.pdf_enabled else "false"

    async def set_config(self, connector_id: str, key: str, value: str) -> LaunchStatus:
        """Change a config value and resync with the new setting.

        Raises:
            InvalidConfigError: If the key or value is invalid.
        """
        await self.get_connector(connector_id)
        if key != PDF_ENABLED_KEY:
            raise InvalidConfigError(f"Unknown config key: {key}")
        if value not in BOOLEAN_VALUES:
            raise InvalidConfigError(f"Invalid value for {key}: {value!r}; expected true or false")

        config = await self._get_or_create_config(connector_id)
        config.pdf_enabled = BOOLEAN_VALUES[value]
        await self.db.flush()

        logger.info("connector_config_updated", connector_id=connector_id, key=key, value=value)
        return await self.orchestrator.trigger_full_sync(connector_id)

    # ========== Permissions ==========

    async def retrieve_permissions(
        self,
        connector_id: str,
        parent_id: str | None,
        filter: PermissionFilter | str,
    ) -> list[ConnectorNode]:
        await self.get_connector(connector_id)
        return await self.permissions.list_visible_nodes(connector_id, parent_id, filter)

    async def set_permissions(
        self, connector_id: str, changes: Mapping[str, str]
    ) -> PermissionChangeResult:
        await self.get_connector(connector_id)
        return await self.permissions.apply_permission_changes(connector_id, changes)

    async def retrieve_titles(self, connector_id: str, ids: list[str]) -> dict[str, str]:
        await self.get_connector(connector_id)
        return await self.permissions.resolve_titles(connector_id, ids)

    async def retrieve_parents(
        self,
        connector_id: str,
        node_id: str,
        cache: ParentChainCache | None = None,
    ) -> list[str]:
        await self.get_connector(connector_id)
        return await self.permissions.resolve_parent_chain(connector_id, node_id, cache)


CONNECTOR_MANAGERS: dict[ConnectorProvider, type[ConnectorManager]] = {
    ConnectorProvider.GOOGLE_DRIVE: GoogleDriveConnectorManager,
}


def get_connector_manager(
    provider: ConnectorProvider | str,
    db: AsyncSession,
    **kwargs,
) -> ConnectorManager:
    """Resolve the manager registered for a provider.

    Raises:
        InvalidConfigError: If no manager handles the provider.
    """
    try:
        manager_cls = CONNECTOR_MANAGERS[ConnectorProvider(provider)]
    except (KeyError, ValueError):
        raise InvalidConfigError(f"Unsupported connector provider: {provider}") from None
    return manager_cls(db, **kwargs)


async def get_manager_for_connector(
    db: AsyncSession, connector_id: str, **kwargs
) -> ConnectorManager:
    """Resolve the manager of an existing connector.

    Raises:
        ConnectorNotFoundError: If the connector does not exist.
    """
    connector = await db.get(Connector, connector_id)
    if connector is None:
        raise ConnectorNotFoundError(connector_id)
    return get_connector_manager(connector.type, db, **kwargs)
