"""Tests for MirrorStore - the local Drive metadata mirror."""

from __future__ import annotations

import asyncio

import pytest

from connectors.db.models import FolderSyncState
from connectors.services.mirror import MirrorStore, document_id_for
from connectors.utils import utc_now


@pytest.fixture
def mirror(db_session) -> MirrorStore:
    return MirrorStore(db_session)


class TestSelectedFolders:
    """Tests for the selected folder set."""

    @pytest.mark.asyncio
    async def test_add_folder_once(self, mirror, connector):
        """Test that adding a folder twice keeps one row."""
        assert await mirror.add_folder(connector.id, "F1") is True
        assert await mirror.add_folder(connector.id, "F1") is False

        folders = await mirror.list_folders(connector.id)
        assert [f.folder_id for f in folders] == ["F1"]
        assert folders[0].sync_state == FolderSyncState.SELECTED

    @pytest.mark.asyncio
    async def test_remove_folder_returns_rowcount(self, mirror, connector):
        """Test that removing reports how many rows were deleted."""
        await mirror.add_folder(connector.id, "F1")

        assert await mirror.remove_folder(connector.id, "F1") == 1
        assert await mirror.remove_folder(connector.id, "F1") == 0

    @pytest.mark.asyncio
    async def test_selected_ids_are_partitioned(self, mirror, db_session, connector, make_credentials, make_connector):
        """Test that one connector never sees another's folders."""
        creds = await make_credentials(db_session, "other@example.com")
        other = await make_connector(db_session, creds.id)
        await mirror.add_folder(connector.id, "F1")
        await mirror.add_folder(other.id, "F2")

        assert await mirror.selected_folder_ids(connector.id) == {"F1"}
        assert await mirror.selected_folder_ids(connector.id, ["F1", "F2"]) == {"F1"}
        assert await mirror.selected_folder_ids(connector.id, []) == set()

    @pytest.mark.asyncio
    async def test_mark_folders_filters(self, mirror, connector):
        """Test state transitions restricted by source state and id."""
        for folder_id in ("A", "B", "C"):
            await mirror.add_folder(connector.id, folder_id)
        await mirror.mark_folders(connector.id, FolderSyncState.SYNCED, folder_ids=["A"])

        moved = await mirror.mark_folders(
            connector.id,
            FolderSyncState.SYNC_PENDING,
            from_states=[FolderSyncState.SYNCED],
        )

        assert moved == 1
        states = {f.folder_id: f.sync_state for f in await mirror.list_folders(connector.id)}
        assert states == {
            "A": FolderSyncState.SYNC_PENDING,
            "B": FolderSyncState.SELECTED,
            "C": FolderSyncState.SELECTED,
        }


class TestFiles:
    """Tests for mirrored files."""

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, mirror, connector, drive):
        """Test that upserting twice updates one row in place."""
        node = drive.add_file("f1", "draft.txt", "F1")
        first = await mirror.upsert_file(connector.id, node, parent_id="F1")

        renamed = drive.add_file("f1", "final.txt", "F1")
        second = await mirror.upsert_file(connector.id, renamed, parent_id="F1")

        assert first.id == second.id
        assert second.name == "final.txt"
        assert second.document_id == document_id_for("f1") == "gdrive-f1"

    @pytest.mark.asyncio
    async def test_folders_have_no_document(self, mirror, connector, drive):
        """Test that folders are mirrored without a document id."""
        entry = await mirror.upsert_file(connector.id, drive.add_folder("S", "Sub", "F1"), parent_id="F1")

        assert entry.is_folder
        assert entry.document_id is None

    @pytest.mark.asyncio
    async def test_children_and_lookup(self, mirror, connector, drive):
        """Test parent-based lookups."""
        await mirror.upsert_file(connector.id, drive.add_file("a", "a", "P"), parent_id="P")
        await mirror.upsert_file(connector.id, drive.add_file("b", "b", "P"), parent_id="P")

        children = await mirror.find_children(connector.id, "P")

        assert sorted(c.drive_file_id for c in children) == ["a", "b"]
        assert await mirror.has_children(connector.id, "P")
        assert not await mirror.has_children(connector.id, "a")
        assert [f.drive_file_id for f in await mirror.find_files(connector.id, ["a", "zzz"])] == ["a"]
        assert await mirror.find_files(connector.id, []) == []

    @pytest.mark.asyncio
    async def test_delete_files(self, mirror, connector, drive):
        """Test that deletes report affected rows and ignore unknown ids."""
        await mirror.upsert_file(connector.id, drive.add_file("a", "a", "P"), parent_id="P")

        assert await mirror.delete_files(connector.id, ["a", "unknown"]) == 1
        assert await mirror.delete_file(connector.id, "a") == 0
        assert await mirror.delete_files(connector.id, []) == 0

    @pytest.mark.asyncio
    async def test_concurrent_access_shares_session(self, mirror, connector, drive):
        """Test that concurrent callers serialize on the store's lock."""
        nodes = [drive.add_file(f"f{i}", f"file {i}", "P") for i in range(8)]

        await asyncio.gather(
            *(mirror.upsert_file(connector.id, n, parent_id="P", seen_at=utc_now()) for n in nodes)
        )

        assert len(await mirror.find_children(connector.id, "P")) == 8


class TestTokenAndPurge:
    """Tests for sync tokens and connector teardown."""

    @pytest.mark.asyncio
    async def test_sync_token_roundtrip(self, mirror, connector):
        """Test that the token is stored once and overwritten."""
        assert await mirror.get_sync_token(connector.id) is None

        await mirror.set_sync_token(connector.id, "t1")
        await mirror.set_sync_token(connector.id, "t2")

        assert await mirror.get_sync_token(connector.id) == "t2"

    @pytest.mark.asyncio
    async def test_purge_deletes_everything(self, mirror, connector, drive):
        """Test that purge removes every mirror row of the connector."""
        await mirror.add_folder(connector.id, "F1")
        await mirror.upsert_file(connector.id, drive.add_file("a", "a", "F1"), parent_id="F1")
        await mirror.set_sync_token(connector.id, "t1")

        counts = await mirror.purge(connector.id)

        assert counts["google_drive_folders"] == 1
        assert counts["google_drive_files"] == 1
        assert counts["google_drive_sync_tokens"] == 1
        assert counts["google_drive_configs"] == 1
        assert await mirror.list_all_files(connector.id) == []
        assert await mirror.get_config(connector.id) is None
