"""Tests for the connector management API endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from connectors.db.models import Connector, Job, JobType
from connectors.services.google_drive import GoogleAuthError
from connectors.services.mirror import MirrorStore

BASE = "/api/v1/connectors"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def seeded(session_factory, make_credentials, make_connector):
    """Committed credentials and connector visible to request sessions."""
    async with session_factory() as session:
        credentials = await make_credentials(session)
        connector = await make_connector(session, credentials.id)
        await session.commit()
    return credentials, connector


@pytest.fixture
def revoke():
    """Stub out token revocation against Google."""
    with patch(
        "connectors.services.google_drive.GoogleCredentialsService.revoke_token",
        new_callable=AsyncMock,
    ) as mock:
        yield mock


async def _jobs(session_factory, job_type: JobType) -> list[Job]:
    async with session_factory() as session:
        result = await session.execute(select(Job).where(Job.type == job_type))
        return list(result.scalars().all())


# =============================================================================
# Lifecycle
# =============================================================================


class TestConnectorLifecycleApi:
    """Tests for create, read, update and delete."""

    @pytest.mark.asyncio
    async def test_create_connector(self, api_client, session_factory, make_credentials, drive):
        """Test POST /connectors/google_drive creates a connector with a channel."""
        async with session_factory() as session:
            credentials = await make_credentials(session)
            await session.commit()

        response = await api_client.post(
            f"{BASE}/google_drive",
            json={
                "connection_id": credentials.id,
                "workspace_id": "workspace-1",
                "data_source_name": "managed-google_drive",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["type"] == "google_drive"
        assert body["connection_id"] == credentials.id
        assert len(drive.channels) == 1

    @pytest.mark.asyncio
    async def test_create_unsupported_provider(self, api_client):
        """Test that an unknown provider fails validation."""
        response = await api_client.post(
            f"{BASE}/dropbox",
            json={"connection_id": "x", "workspace_id": "w", "data_source_name": "d"},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_upstream_failure(
        self, api_client, session_factory, make_credentials, drive, upstream_error
    ):
        """Test that failing remote sanity checks surface as 502."""
        async with session_factory() as session:
            credentials = await make_credentials(session)
            await session.commit()
        drive.failures["sanity_check"] = upstream_error()

        response = await api_client.post(
            f"{BASE}/google_drive",
            json={
                "connection_id": credentials.id,
                "workspace_id": "workspace-1",
                "data_source_name": "managed-google_drive",
            },
        )

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "INJECTED"

    @pytest.mark.asyncio
    async def test_get_connector(self, api_client, seeded):
        """Test GET /connectors/{id}."""
        _, connector = seeded

        response = await api_client.get(f"{BASE}/{connector.id}")

        assert response.status_code == 200
        assert response.json()["id"] == connector.id
        assert response.json()["paused_at"] is None

    @pytest.mark.asyncio
    async def test_get_missing_connector(self, api_client):
        """Test that an unknown connector id is a 404."""
        response = await api_client.get(f"{BASE}/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "CONNECTOR_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_update_domain_mismatch(
        self, api_client, session_factory, make_credentials, seeded, revoke
    ):
        """Test that switching Workspace domains is a 400."""
        _, connector = seeded
        async with session_factory() as session:
            other = await make_credentials(session, "someone@elsewhere.org")
            await session.commit()

        response = await api_client.patch(
            f"{BASE}/{connector.id}", json={"connection_id": other.id}
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "CONNECTOR_OAUTH_TARGET_MISMATCH"

    @pytest.mark.asyncio
    async def test_delete_connector(self, api_client, session_factory, seeded, revoke):
        """Test DELETE /connectors/{id} removes the connector."""
        _, connector = seeded

        response = await api_client.delete(f"{BASE}/{connector.id}")

        assert response.status_code == 204
        async with session_factory() as session:
            assert await session.get(Connector, connector.id) is None

    @pytest.mark.asyncio
    async def test_delete_revoke_failure(self, api_client, session_factory, seeded, revoke):
        """Test that a failed revocation keeps the connector unless forced."""
        _, connector = seeded
        revoke.side_effect = GoogleAuthError("revoke refused")

        response = await api_client.delete(f"{BASE}/{connector.id}")
        assert response.status_code == 502

        response = await api_client.delete(f"{BASE}/{connector.id}", params={"force": True})
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_stop_and_resume(self, api_client, session_factory, seeded):
        """Test that stop pauses and resume launches an incremental sync."""
        _, connector = seeded

        response = await api_client.post(f"{BASE}/{connector.id}/stop")
        assert response.status_code == 200
        assert response.json()["paused_at"] is not None

        response = await api_client.post(f"{BASE}/{connector.id}/resume")
        assert response.status_code == 200
        assert response.json() == {"status": "triggered"}
        assert len(await _jobs(session_factory, JobType.GOOGLE_DRIVE_INCREMENTAL_SYNC)) == 1


# =============================================================================
# Triggers
# =============================================================================


class TestTriggerApi:
    """Tests for sync and GC triggers."""

    @pytest.mark.asyncio
    async def test_sync_coalesces(self, api_client, session_factory, seeded):
        """Test that a second sync request joins the queued one."""
        _, connector = seeded

        first = await api_client.post(f"{BASE}/{connector.id}/sync")
        second = await api_client.post(f"{BASE}/{connector.id}/sync")

        assert first.json() == {"status": "triggered"}
        assert second.json() == {"status": "already_running"}
        assert len(await _jobs(session_factory, JobType.GOOGLE_DRIVE_FULL_SYNC)) == 1

    @pytest.mark.asyncio
    async def test_sync_rate_limited(self, api_client, seeded):
        """Test that exceeding the launch limit is a 429."""
        _, connector = seeded
        with patch("connectors.services.job_queue.settings") as mock_settings:
            mock_settings.workflow_launch_limit_per_minute = 1
            await api_client.post(f"{BASE}/{connector.id}/garbage_collect")

            response = await api_client.post(f"{BASE}/{connector.id}/sync")

        assert response.status_code == 429
        assert response.json()["detail"]["code"] == "RATE_LIMITED"
        assert response.headers["retry-after"] == "60"

    @pytest.mark.asyncio
    async def test_garbage_collect(self, api_client, session_factory, seeded):
        """Test POST /connectors/{id}/garbage_collect queues a GC job."""
        _, connector = seeded

        response = await api_client.post(f"{BASE}/{connector.id}/garbage_collect")

        assert response.status_code == 200
        assert len(await _jobs(session_factory, JobType.GOOGLE_DRIVE_GARBAGE_COLLECT)) == 1


# =============================================================================
# Permissions
# =============================================================================


class TestPermissionsApi:
    """Tests for the permission tree endpoints."""

    @pytest.mark.asyncio
    async def test_grant_then_list_read_only(self, api_client, seeded, drive):
        """Test that a granted folder is listed by the read-only filter."""
        _, connector = seeded
        drive.add_folder("F1", "Projects", "root")

        response = await api_client.post(
            f"{BASE}/{connector.id}/permissions",
            json={"resources": {"F1": "read"}},
        )
        assert response.status_code == 200
        assert response.json()["added"] == ["F1"]

        response = await api_client.get(f"{BASE}/{connector.id}/permissions")
        assert response.status_code == 200
        resources = response.json()["resources"]
        assert [r["internal_id"] for r in resources] == ["F1"]
        assert resources[0]["permission"] == "read"
        assert resources[0]["title"] == "Projects"

    @pytest.mark.asyncio
    async def test_invalid_permission_value(self, api_client, seeded):
        """Test that an unknown permission value is a 400."""
        _, connector = seeded

        response = await api_client.post(
            f"{BASE}/{connector.id}/permissions",
            json={"resources": {"F1": "write"}},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_PERMISSION"

    @pytest.mark.asyncio
    async def test_discover_lists_drives(self, api_client, seeded, drive):
        """Test that discover at the root lists the remote drives."""
        _, connector = seeded
        drive.add_drive("root", "My Drive")
        drive.add_drive("team", "Team Drive")

        response = await api_client.get(
            f"{BASE}/{connector.id}/permissions", params={"filter": "discover"}
        )

        assert response.status_code == 200
        titles = [r["title"] for r in response.json()["resources"]]
        assert titles == ["My Drive", "Team Drive"]

    @pytest.mark.asyncio
    async def test_invalid_filter(self, api_client, seeded):
        """Test that an unknown filter is a 400."""
        _, connector = seeded

        response = await api_client.get(
            f"{BASE}/{connector.id}/permissions", params={"filter": "everything"}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_titles_and_parents(self, api_client, session_factory, seeded, drive):
        """Test title and parent chain lookups against the mirror."""
        _, connector = seeded
        async with session_factory() as session:
            mirror = MirrorStore(session)
            await mirror.upsert_file(connector.id, drive.add_folder("F1", "Projects", "root"))
            await mirror.upsert_file(
                connector.id, drive.add_file("a", "notes.txt", "F1"), parent_id="F1"
            )
            await session.commit()

        response = await api_client.post(
            f"{BASE}/{connector.id}/titles", json={"internal_ids": ["a", "unknown"]}
        )
        assert response.json() == {"titles": {"a": "notes.txt"}}

        response = await api_client.get(f"{BASE}/{connector.id}/parents/a")
        assert response.json() == {"parents": ["a", "F1"]}


# =============================================================================
# Config
# =============================================================================


class TestConfigApi:
    """Tests for config endpoints."""

    @pytest.mark.asyncio
    async def test_get_and_set_pdf_enabled(self, api_client, session_factory, seeded):
        """Test that setting pdfEnabled stores it and triggers a full sync."""
        _, connector = seeded

        response = await api_client.get(f"{BASE}/{connector.id}/config/pdfEnabled")
        assert response.json() == {"key": "pdfEnabled", "value": "false"}

        response = await api_client.post(
            f"{BASE}/{connector.id}/config/pdfEnabled", json={"value": "true"}
        )
        assert response.status_code == 200

        response = await api_client.get(f"{BASE}/{connector.id}/config/pdfEnabled")
        assert response.json()["value"] == "true"
        assert len(await _jobs(session_factory, JobType.GOOGLE_DRIVE_FULL_SYNC)) == 1

    @pytest.mark.asyncio
    async def test_unknown_key(self, api_client, seeded):
        """Test that unknown config keys are a 400."""
        _, connector = seeded

        response = await api_client.get(f"{BASE}/{connector.id}/config/ocrEnabled")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_CONFIG"
