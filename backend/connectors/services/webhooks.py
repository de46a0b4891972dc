"""Webhook lifecycle manager for Google Drive change notifications.

Keeps at most one tracked push-notification channel per connector and turns
inbound notifications into incremental sync triggers.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta
from functools import partial

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.core.config import settings
from connectors.core.logging import get_logger
from connectors.db.models import Connector, GoogleDriveWebhook
from connectors.exceptions import (
    ConnectorError,
    ConnectorNotFoundError,
    RateLimitedError,
    RegistrationFailedError,
    UnresolvedChannelError,
    UpstreamUnavailableError,
)
from connectors.services.google_drive import (
    ClientFactory,
    RemoteDirectoryClient,
    WatchChannel,
    build_drive_client,
)
from connectors.services.job_queue import LaunchStatus
from connectors.services.orchestrator import SyncOrchestrator
from connectors.utils import as_utc, utc_now

logger = get_logger(__name__)


class NotificationOutcome(str, enum.Enum):
    """How an inbound notification was handled. Every outcome is acknowledged."""

    TRIGGERED = "triggered"
    ALREADY_RUNNING = "already_running"
    PAUSED = "paused"
    RATE_LIMITED = "rate_limited"
    TRIGGER_FAILED = "trigger_failed"


def is_expiring_soon(
    channel: GoogleDriveWebhook,
    now: datetime,
    margin: timedelta | None = None,
) -> bool:
    """Whether a channel expires within ``margin`` of ``now``."""
    if margin is None:
        margin = timedelta(seconds=settings.webhook_renewal_margin)
    return as_utc(channel.expires_at) - margin <= as_utc(now)


class WebhookLifecycleManager:
    """Registers, renews and unregisters channels, and routes notifications."""

    def __init__(
        self,
        db: AsyncSession,
        client_factory: ClientFactory | None = None,
        orchestrator: SyncOrchestrator | None = None,
    ):
        self.db = db
        self._client_factory = client_factory or partial(build_drive_client, db)
        self.orchestrator = orchestrator or SyncOrchestrator(db)

    async def _get_connector(self, connector_id: str) -> Connector:
        connector = await self.db.get(Connector, connector_id)
        if connector is None:
            raise ConnectorNotFoundError(connector_id)
        return connector

    async def get_webhook(self, connector_id: str) -> GoogleDriveWebhook | None:
        result = await self.db.execute(
            select(GoogleDriveWebhook).where(GoogleDriveWebhook.connector_id == connector_id)
        )
        return result.scalar_one_or_none()

    async def get_webhook_by_channel(self, channel_id: str) -> GoogleDriveWebhook | None:
        result = await self.db.execute(
            select(GoogleDriveWebhook).where(GoogleDriveWebhook.webhook_id == channel_id)
        )
        return result.scalar_one_or_none()

    # ========== Registration ==========

    async def register(self, connector_id: str) -> GoogleDriveWebhook:
        """Open a channel for a connector and track it.

        A channel already tracked for the connector is replaced and its
        remote registration stopped best-effort.

        Raises:
            ConnectorNotFoundError: If the connector does not exist.
            RegistrationFailedError: If Drive refused the channel or a
                concurrent registration won the race.
        """
        connector = await self._get_connector(connector_id)
        client = await self._client_factory(connector)

        channel_id = str(uuid.uuid4())
        try:
            channel = await client.watch_changes(
                channel_id, settings.webhook_url(connector_id), settings.webhook_ttl
            )
        except UpstreamUnavailableError as e:
            logger.error(
                "webhook_registration_failed",
                connector_id=connector_id,
                channel_id=channel_id,
                error=e.message,
            )
            raise RegistrationFailedError(
                f"Could not register webhook for connector {connector_id}: {e.message}"
            ) from e

        previous = await self.get_webhook(connector_id)
        stale = (previous.webhook_id, previous.resource_id) if previous else None

        try:
            async with self.db.begin_nested():
                row = await self._persist(connector_id, channel, previous)
        except IntegrityError as e:
            logger.warning(
                "webhook_registration_conflict",
                connector_id=connector_id,
                channel_id=channel.id,
            )
            await self._stop_quietly(client, connector_id, channel.id, channel.resource_id)
            raise RegistrationFailedError(
                f"A webhook is already being registered for connector {connector_id}"
            ) from e

        if stale is not None:
            await self._stop_quietly(client, connector_id, *stale)

        logger.info(
            "webhook_registered",
            connector_id=connector_id,
            channel_id=row.webhook_id,
            expires_at=row.expires_at.isoformat(),
            replaced=stale is not None,
        )
        return row

    async def _persist(
        self,
        connector_id: str,
        channel: WatchChannel,
        row: GoogleDriveWebhook | None,
    ) -> GoogleDriveWebhook:
        now = utc_now()
        renew_at = channel.expires_at - timedelta(seconds=settings.webhook_renewal_margin)
        if row is None:
            row = GoogleDriveWebhook(connector_id=connector_id)
            self.db.add(row)
        else:
            row.renewed_at = now

        row.webhook_id = channel.id
        row.resource_id = channel.resource_id
        row.expires_at = channel.expires_at
        row.renew_at = max(renew_at, now)
        await self.db.flush()
        return row

    async def renew(self, connector_id: str) -> GoogleDriveWebhook:
        """Replace a connector's channel with a fresh one."""
        return await self.register(connector_id)

    async def renew_expiring(self, now: datetime | None = None) -> int:
        """Renew every tracked channel that is expiring soon.

        Failures are logged per connector and do not stop the sweep.

        Returns:
            Number of channels renewed.
        """
        now = now or utc_now()
        result = await self.db.execute(select(GoogleDriveWebhook))
        expiring = [w.connector_id for w in result.scalars().all() if is_expiring_soon(w, now)]

        renewed = 0
        for connector_id in expiring:
            try:
                await self.renew(connector_id)
                renewed += 1
            except ConnectorError as e:
                logger.error(
                    "webhook_renewal_failed",
                    connector_id=connector_id,
                    error=e.message,
                    code=e.code,
                )

        if expiring:
            logger.info("webhook_renewal_sweep", expiring=len(expiring), renewed=renewed)
        return renewed

    async def unregister(self, connector_id: str) -> bool:
        """Stop a connector's channel best-effort and forget it.

        Returns:
            True if a channel was tracked.
        """
        row = await self.get_webhook(connector_id)
        if row is None:
            return False

        connector = await self.db.get(Connector, connector_id)
        if connector is not None:
            try:
                client = await self._client_factory(connector)
            except ConnectorError as e:
                logger.warning(
                    "webhook_stop_skipped",
                    connector_id=connector_id,
                    channel_id=row.webhook_id,
                    error=e.message,
                )
            else:
                await self._stop_quietly(client, connector_id, row.webhook_id, row.resource_id)

        await self.db.delete(row)
        await self.db.flush()
        logger.info("webhook_unregistered", connector_id=connector_id, channel_id=row.webhook_id)
        return True

    async def _stop_quietly(
        self,
        client: RemoteDirectoryClient,
        connector_id: str,
        channel_id: str,
        resource_id: str | None,
    ) -> None:
        try:
            await client.stop_channel(channel_id, resource_id)
        except UpstreamUnavailableError as e:
            logger.warning(
                "webhook_stop_failed",
                connector_id=connector_id,
                channel_id=channel_id,
                error=e.message,
            )

    # ========== Notifications ==========

    async def handle_notification(
        self,
        channel_id: str,
        connector_id: str | None = None,
    ) -> NotificationOutcome:
        """Turn a change notification into an incremental sync trigger.

        The channel is looked up first; the connector id from the routing
        path is the fallback for channels this system no longer tracks.

        Raises:
            UnresolvedChannelError: If neither the channel nor a connector id resolves.
            ConnectorNotFoundError: If the resolved connector does not exist.
        """
        webhook = await self.get_webhook_by_channel(channel_id)
        resolved_id = webhook.connector_id if webhook is not None else connector_id
        if not resolved_id:
            logger.warning("webhook_channel_unresolved", channel_id=channel_id)
            raise UnresolvedChannelError(channel_id)

        connector = await self._get_connector(resolved_id)
        if connector.is_paused:
            logger.info(
                "webhook_notification_dropped_paused",
                connector_id=resolved_id,
                channel_id=channel_id,
            )
            return NotificationOutcome.PAUSED

        try:
            status = await self.orchestrator.trigger_incremental_sync(resolved_id)
        except RateLimitedError as e:
            logger.warning(
                "webhook_trigger_rate_limited",
                connector_id=resolved_id,
                channel_id=channel_id,
                retry_after=e.retry_after,
            )
            return NotificationOutcome.RATE_LIMITED
        except ConnectorError as e:
            logger.error(
                "webhook_trigger_failed",
                connector_id=resolved_id,
                channel_id=channel_id,
                error=e.message,
                code=e.code,
            )
            return NotificationOutcome.TRIGGER_FAILED

        logger.info(
            "webhook_notification_handled",
            connector_id=resolved_id,
            channel_id=channel_id,
            matched_channel=webhook is not None,
            status=status.value,
        )
        if status == LaunchStatus.ALREADY_RUNNING:
            return NotificationOutcome.ALREADY_RUNNING
        return NotificationOutcome.TRIGGERED
