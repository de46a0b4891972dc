"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Create a temporary directory for test paths
_test_tmp_dir = tempfile.mkdtemp(prefix="connectors_test_")

# Set config BEFORE importing application modules
os.environ["CONNECTORS_CONFIG_PATH"] = _test_tmp_dir
os.environ["CONNECTORS_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CONNECTORS_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CONNECTORS_WEBHOOK_BASE_URL"] = "https://connectors.test/api"

from connectors.api.routes.connectors import get_client_factory
from connectors.db import get_db
from connectors.db.base import Base
from connectors.db.models import (
    FOLDER_MIME_TYPE,
    Connector,
    ConnectorProvider,
    GoogleCredentials,
    GoogleDriveConfig,
)
from connectors.exceptions import UpstreamUnavailableError
from connectors.main import app
from connectors.services.google_drive import (
    ChangesPage,
    GoogleCredentialsService,
    NodeKind,
    RemoteChange,
    RemoteNode,
    WatchChannel,
)


class FakeDriveClient:
    """In-memory Drive implementing the remote directory client contract.

    Operations listed in ``failures`` raise the mapped exception; every call
    is recorded in ``calls`` as ``(operation, argument)``.
    """

    def __init__(self):
        self.nodes: dict[str, RemoteNode] = {}
        self.drive_ids: list[str] = []
        self.page_size = 100
        self.start_token = "start-1"
        self.change_pages: list[ChangesPage] = []
        self.channels: dict[str, tuple[str, WatchChannel]] = {}
        self.stopped: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str | None]] = []

    # ---- tree building ----

    def add_folder(self, node_id: str, name: str, parent_id: str | None = None) -> RemoteNode:
        node = RemoteNode(
            id=node_id,
            parent_id=parent_id,
            name=name,
            kind=NodeKind.FOLDER,
            mime_type=FOLDER_MIME_TYPE,
            modified_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            web_view_link=f"https://drive.google.com/drive/folders/{node_id}",
        )
        self.nodes[node_id] = node
        return node

    def add_file(
        self,
        node_id: str,
        name: str,
        parent_id: str,
        mime_type: str = "text/plain",
    ) -> RemoteNode:
        node = RemoteNode(
            id=node_id,
            parent_id=parent_id,
            name=name,
            kind=NodeKind.FILE,
            mime_type=mime_type,
            modified_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
            web_view_link=f"https://drive.google.com/file/d/{node_id}",
        )
        self.nodes[node_id] = node
        return node

    def add_drive(self, node_id: str, name: str) -> RemoteNode:
        node = self.add_folder(node_id, name)
        self.drive_ids.append(node_id)
        return node

    def remove(self, node_id: str) -> None:
        self.nodes.pop(node_id, None)

    def queue_changes(self, changes: list[RemoteChange], new_token: str = "start-2") -> None:
        self.change_pages.append(ChangesPage(changes=changes, new_start_page_token=new_token))

    def _record(self, operation: str, argument: str | None = None) -> None:
        self.calls.append((operation, argument))
        if operation in self.failures:
            raise self.failures[operation]

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    # ---- client contract ----

    async def list_children(
        self,
        parent_id: str,
        page_token: str | None = None,
        *,
        folders_only: bool = False,
        page_size: int | None = None,
    ) -> tuple[list[RemoteNode], str | None]:
        self._record("list_children", parent_id)
        children = sorted(
            (
                n
                for n in self.nodes.values()
                if n.parent_id == parent_id and (n.is_folder or not folders_only)
            ),
            key=lambda n: n.id,
        )
        size = page_size or self.page_size
        start = int(page_token or 0)
        end = start + size
        return children[start:end], (str(end) if end < len(children) else None)

    async def get_node(self, node_id: str) -> RemoteNode | None:
        self._record("get_node", node_id)
        return self.nodes.get(node_id)

    async def list_drives(self) -> list[RemoteNode]:
        self._record("list_drives")
        return [self.nodes[d] for d in self.drive_ids if d in self.nodes]

    async def has_child_folders(self, folder_id: str) -> bool:
        self._record("has_child_folders", folder_id)
        return any(n.parent_id == folder_id and n.is_folder for n in self.nodes.values())

    async def get_start_page_token(self) -> str:
        self._record("get_start_page_token")
        return self.start_token

    async def list_changes(self, page_token: str) -> ChangesPage:
        self._record("list_changes", page_token)
        if not self.change_pages:
            return ChangesPage(new_start_page_token=page_token)
        return self.change_pages.pop(0)

    async def watch_changes(self, channel_id: str, address: str, ttl_seconds: int) -> WatchChannel:
        self._record("watch_changes", channel_id)
        channel = WatchChannel(
            id=channel_id,
            resource_id=f"resource-{channel_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
        )
        self.channels[channel_id] = (address, channel)
        return channel

    async def stop_channel(self, channel_id: str, resource_id: str | None) -> None:
        self._record("stop_channel", channel_id)
        self.stopped.append(channel_id)

    async def sanity_check(self) -> None:
        self._record("sanity_check")


class InjectedUpstreamError(UpstreamUnavailableError):
    """Marker upstream error used by tests that inject remote failures."""

    def __init__(self, message: str = "injected upstream failure"):
        super().__init__(message, "INJECTED")


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
async def db_engine():
    """Create an in-memory test database engine."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


# =============================================================================
# Remote fixtures
# =============================================================================


@pytest.fixture
def drive() -> FakeDriveClient:
    """Empty fake Drive."""
    return FakeDriveClient()


@pytest.fixture
def client_factory(drive):
    """Client factory handing every connector the fake Drive."""

    async def factory(connector: Connector) -> FakeDriveClient:
        return drive

    return factory


@pytest.fixture
def upstream_error():
    """Factory for injected upstream failures."""
    return InjectedUpstreamError


# =============================================================================
# Model fixtures
# =============================================================================


async def create_credentials(db: AsyncSession, email: str = "owner@example.com") -> GoogleCredentials:
    """Store credentials with real encrypted tokens."""
    service = GoogleCredentialsService(db)
    credentials = GoogleCredentials(
        email=email,
        access_token_encrypted=service._encrypt("access-token"),
        refresh_token_encrypted=service._encrypt("refresh-token"),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    db.add(credentials)
    await db.flush()
    return credentials


async def create_connector(
    db: AsyncSession,
    connection_id: str,
    *,
    pdf_enabled: bool = False,
) -> Connector:
    """Store a Google Drive connector with its config row."""
    connector = Connector(
        type=ConnectorProvider.GOOGLE_DRIVE,
        connection_id=connection_id,
        workspace_id="workspace-1",
        data_source_name="managed-google_drive",
    )
    db.add(connector)
    await db.flush()
    db.add(GoogleDriveConfig(connector_id=connector.id, pdf_enabled=pdf_enabled))
    await db.flush()
    return connector


@pytest.fixture
def make_credentials():
    """Helper storing credentials in a given session."""
    return create_credentials


@pytest.fixture
def make_connector():
    """Helper storing a connector in a given session."""
    return create_connector


@pytest.fixture
async def credentials(db_session) -> GoogleCredentials:
    """Sample Google credentials."""
    return await create_credentials(db_session)


@pytest.fixture
async def connector(db_session, credentials) -> Connector:
    """Sample Google Drive connector."""
    return await create_connector(db_session, credentials.id)


# =============================================================================
# API fixtures
# =============================================================================


@pytest.fixture
async def api_client(session_factory, client_factory):
    """HTTP client with the database and remote client overridden."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_client_factory] = lambda: client_factory

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


def pytest_sessionfinish(session, exitstatus):
    """Clean up temp directories after test session."""
    import shutil

    if Path(_test_tmp_dir).exists():
        shutil.rmtree(_test_tmp_dir, ignore_errors=True)
