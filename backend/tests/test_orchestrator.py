"""Tests for SyncOrchestrator - workflow triggers."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from connectors.db.models import FolderSyncState, JobType
from connectors.exceptions import ConnectorNotFoundError, RateLimitedError
from connectors.services.job_queue import JobQueueService, LaunchStatus
from connectors.services.mirror import MirrorStore
from connectors.services.orchestrator import SyncOrchestrator


@pytest.fixture
def engine() -> AsyncMock:
    """Workflow engine double."""
    mock = AsyncMock()
    mock.launch.return_value = LaunchStatus.TRIGGERED
    return mock


async def _states(db_session, connector_id: str) -> dict[str, FolderSyncState]:
    folders = await MirrorStore(db_session).list_folders(connector_id)
    return {f.folder_id: f.sync_state for f in folders}


class TestTriggerFullSync:
    """Tests for full sync launches."""

    @pytest.mark.asyncio
    async def test_launches_full_sync_workflow(self, db_session, connector, engine):
        """Test that the provider's full sync workflow is launched."""
        orchestrator = SyncOrchestrator(db_session, engine=engine)

        status = await orchestrator.trigger_full_sync(connector.id)

        assert status == LaunchStatus.TRIGGERED
        engine.launch.assert_awaited_once_with(
            JobType.GOOGLE_DRIVE_FULL_SYNC, connector.id, None
        )

    @pytest.mark.asyncio
    async def test_passes_cursor(self, db_session, connector, engine):
        """Test that a resume cursor travels as a workflow parameter."""
        orchestrator = SyncOrchestrator(db_session, engine=engine)

        await orchestrator.trigger_full_sync(connector.id, cursor="F5")

        engine.launch.assert_awaited_once_with(
            JobType.GOOGLE_DRIVE_FULL_SYNC, connector.id, {"cursor": "F5"}
        )

    @pytest.mark.asyncio
    async def test_marks_every_folder_pending(self, db_session, connector, engine):
        """Test that all selected folders await the resync."""
        mirror = MirrorStore(db_session)
        await mirror.add_folder(connector.id, "A")
        await mirror.add_folder(connector.id, "B")
        await mirror.mark_folders(connector.id, FolderSyncState.SYNCED, folder_ids=["B"])

        await SyncOrchestrator(db_session, engine=engine).trigger_full_sync(connector.id)

        assert await _states(db_session, connector.id) == {
            "A": FolderSyncState.SYNC_PENDING,
            "B": FolderSyncState.SYNC_PENDING,
        }

    @pytest.mark.asyncio
    async def test_cursor_marks_only_resumed_folders(self, db_session, connector, engine):
        """Test that folders ordered before the cursor keep their state."""
        mirror = MirrorStore(db_session)
        for folder_id in ("A", "M", "Z"):
            await mirror.add_folder(connector.id, folder_id)
        await mirror.mark_folders(connector.id, FolderSyncState.SYNCED, folder_ids=["A"])

        await SyncOrchestrator(db_session, engine=engine).trigger_full_sync(
            connector.id, cursor="M"
        )

        assert await _states(db_session, connector.id) == {
            "A": FolderSyncState.SYNCED,
            "M": FolderSyncState.SYNC_PENDING,
            "Z": FolderSyncState.SYNC_PENDING,
        }

    @pytest.mark.asyncio
    async def test_coalesced_launch_without_cursor_widens_queued_job(
        self, db_session, connector
    ):
        """Test that a plain resync joining a resumed one makes it cover every folder."""
        queue = JobQueueService(db_session)
        orchestrator = SyncOrchestrator(db_session, engine=queue)

        first = await orchestrator.trigger_full_sync(connector.id, cursor="M")
        second = await orchestrator.trigger_full_sync(connector.id)

        assert first == LaunchStatus.TRIGGERED
        assert second == LaunchStatus.ALREADY_RUNNING
        job = await queue.get_pending_job(connector.id, JobType.GOOGLE_DRIVE_FULL_SYNC)
        assert queue.get_payload(job) is None

    @pytest.mark.asyncio
    async def test_rejected_launch_leaves_states(self, db_session, connector, engine):
        """Test that a rate-limited launch propagates and marks nothing."""
        engine.launch.side_effect = RateLimitedError(retry_after=60)
        await MirrorStore(db_session).add_folder(connector.id, "A")

        with pytest.raises(RateLimitedError):
            await SyncOrchestrator(db_session, engine=engine).trigger_full_sync(connector.id)

        assert await _states(db_session, connector.id) == {"A": FolderSyncState.SELECTED}

    @pytest.mark.asyncio
    async def test_unknown_connector(self, db_session, engine):
        """Test that an unknown connector raises before launching."""
        with pytest.raises(ConnectorNotFoundError):
            await SyncOrchestrator(db_session, engine=engine).trigger_full_sync("missing")

        engine.launch.assert_not_called()


class TestTriggerIncrementalSync:
    """Tests for incremental sync launches."""

    @pytest.mark.asyncio
    async def test_only_synced_folders_become_pending(self, db_session, connector, engine):
        """Test that folders never synced keep their state."""
        mirror = MirrorStore(db_session)
        await mirror.add_folder(connector.id, "new")
        await mirror.add_folder(connector.id, "done")
        await mirror.mark_folders(connector.id, FolderSyncState.SYNCED, folder_ids=["done"])

        await SyncOrchestrator(db_session, engine=engine).trigger_incremental_sync(connector.id)

        assert await _states(db_session, connector.id) == {
            "new": FolderSyncState.SELECTED,
            "done": FolderSyncState.SYNC_PENDING,
        }
        engine.launch.assert_awaited_once_with(
            JobType.GOOGLE_DRIVE_INCREMENTAL_SYNC, connector.id
        )

    @pytest.mark.asyncio
    async def test_with_job_queue_coalesces(self, db_session, connector):
        """Test that back-to-back triggers on the real queue coalesce."""
        orchestrator = SyncOrchestrator(db_session, engine=JobQueueService(db_session))

        first = await orchestrator.trigger_incremental_sync(connector.id)
        second = await orchestrator.trigger_incremental_sync(connector.id)

        assert first == LaunchStatus.TRIGGERED
        assert second == LaunchStatus.ALREADY_RUNNING


class TestTriggerGarbageCollect:
    """Tests for garbage collection launches."""

    @pytest.mark.asyncio
    async def test_launches_garbage_collect(self, db_session, connector, engine):
        """Test that the provider's GC workflow is launched."""
        status = await SyncOrchestrator(db_session, engine=engine).trigger_garbage_collect(
            connector.id
        )

        assert status == LaunchStatus.TRIGGERED
        engine.launch.assert_awaited_once_with(
            JobType.GOOGLE_DRIVE_GARBAGE_COLLECT, connector.id
        )
