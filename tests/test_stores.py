"""Tests for the in-memory store and the snapshot backends."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from dashboard_sync.exceptions import RemoteUnavailableError, SnapshotIOError
from dashboard_sync.stores import FileSnapshot, MemoryRemoteStore, MemorySnapshot, storage_key
from dashboard_sync.types import ChangeEvent, ChangeKind, Record

from .conftest import make_record


class TestMemoryRemoteStore:
    """Tests for the dict-backed remote store."""

    async def test_write_then_read(self, remote: MemoryRemoteStore):
        await remote.write("t", "Alice", {"name": "Alice", "score": 1})

        records = await remote.read_all("t")

        assert records == [Record(key="alice", payload={"name": "Alice", "score": 1})]

    async def test_upsert_by_normalized_key(self, remote: MemoryRemoteStore):
        await remote.write("t", "Alice", {"score": 1})
        await remote.write("t", " ALICE", {"score": 2})

        records = await remote.read_all("t")

        assert len(records) == 1
        assert records[0].payload == {"score": 2}

    async def test_payloads_are_copied(self, remote: MemoryRemoteStore):
        payload = {"name": "Alice", "tags": ["a"]}
        await remote.write("t", "Alice", payload)
        payload["tags"].append("b")

        records = await remote.read_all("t")
        records[0].payload["tags"].append("c")

        assert (await remote.read_all("t"))[0].payload["tags"] == ["a"]

    async def test_events_delivered_to_all_subscribers(self, remote: MemoryRemoteStore):
        first: list[ChangeEvent] = []
        second: list[ChangeEvent] = []
        remote.subscribe("t", first.append)
        remote.subscribe("t", second.append)
        remote.subscribe("other", pytest.fail)

        await remote.write("t", "Alice", {"name": "Alice"})
        await remote.write("t", "Alice", {"name": "Alice", "score": 2})
        await remote.delete("t", "alice")
        await asyncio.sleep(0)

        assert [e.kind for e in first] == [ChangeKind.INSERT, ChangeKind.UPDATE, ChangeKind.DELETE]
        assert [e.kind for e in second] == [e.kind for e in first]
        assert first[1].old_record == Record(key="alice", payload={"name": "Alice"})
        assert first[2].display_key == "Alice"

    async def test_events_not_delivered_synchronously(self, remote: MemoryRemoteStore):
        received: list[ChangeEvent] = []
        remote.subscribe("t", received.append)

        await remote.write("t", "Alice", {})
        assert received == []

        await asyncio.sleep(0)
        assert len(received) == 1

    async def test_unsubscribe_stops_delivery(self, remote: MemoryRemoteStore):
        received: list[ChangeEvent] = []
        handle = remote.subscribe("t", received.append)
        remote.unsubscribe(handle)
        remote.unsubscribe(handle)

        await remote.write("t", "Alice", {})
        await asyncio.sleep(0)

        assert received == []
        assert remote.subscriber_count("t") == 0

    async def test_delete_missing_is_silent(self, remote: MemoryRemoteStore):
        received: list[ChangeEvent] = []
        remote.subscribe("t", received.append)

        await remote.delete("t", "nobody")
        await asyncio.sleep(0)

        assert received == []

    async def test_offline(self, remote: MemoryRemoteStore):
        remote.set_available(False)

        with pytest.raises(RemoteUnavailableError) as exc_info:
            await remote.read_all("t")

        assert exc_info.value.operation == "read_all"
        assert exc_info.value.table_id == "t"

        remote.set_available(True)
        assert await remote.read_all("t") == []

    async def test_fail_next(self, remote: MemoryRemoteStore):
        remote.fail_next(2)

        for _ in range(2):
            with pytest.raises(RemoteUnavailableError):
                await remote.write("t", "a", {})
        await remote.write("t", "a", {})

        assert len(await remote.read_all("t")) == 1

    async def test_async_context_manager(self):
        async with MemoryRemoteStore() as store:
            await store.write("t", "a", {})


class TestMemorySnapshot:
    def test_round_trip_copies(self, snapshot: MemorySnapshot):
        records = [make_record("Alice", 1)]
        snapshot.save("t", records)
        records[0].payload["score"] = 99

        loaded = snapshot.load("t")

        assert loaded[0].payload["score"] == 1
        assert snapshot.load("missing") == []


class TestStorageKey:
    """Snapshot keys follow the dashboard's historical naming."""

    def test_primary_table(self):
        assert storage_key("tableBody") == "tom_analytics_data"

    def test_numbered_table(self):
        assert storage_key("tableBody2") == "tom_analytics_data_2"

    def test_other_table_escaped(self):
        assert storage_key("sales/q1") == "tom_analytics_data__sales%2Fq1"

    @pytest.mark.parametrize(
        "first, second",
        [
            ("tableBody2", "2"),
            ("a/b", "a_b"),
            ("tableBody", ""),
            ("tableBodyx", "x"),
            ("a%2Fb", "a/b"),
        ],
    )
    def test_distinct_tables_never_share_a_key(self, first, second):
        assert storage_key(first) != storage_key(second)

    def test_distinct_tables_keep_separate_snapshots(self, tmp_path):
        snapshot = FileSnapshot(tmp_path)
        snapshot.save("tableBody2", [make_record("Alice")])
        snapshot.save("2", [make_record("Bob")])

        assert [r.key for r in snapshot.load("tableBody2")] == ["alice"]
        assert [r.key for r in snapshot.load("2")] == ["bob"]


class TestFileSnapshot:
    """Tests for the JSON file snapshot."""

    def test_round_trip(self, tmp_path):
        snapshot = FileSnapshot(tmp_path)
        records = [make_record("Alice", 90), make_record("Bob", 75)]

        snapshot.save("tableBody", records)

        assert snapshot.path_for("tableBody") == tmp_path / "tom_analytics_data.json"
        assert snapshot.load("tableBody") == records

    def test_file_layout(self, tmp_path):
        snapshot = FileSnapshot(tmp_path)
        snapshot.save("tableBody2", [make_record("Alice")])

        document = json.loads((tmp_path / "tom_analytics_data_2.json").read_text())

        assert document["table_id"] == "tableBody2"
        assert document["records"] == [
            {"key": "alice", "payload": {"name": "Alice", "score": 0}}
        ]

    def test_save_replaces_whole_table(self, tmp_path):
        snapshot = FileSnapshot(tmp_path)
        snapshot.save("t", [make_record("Alice"), make_record("Bob")])
        snapshot.save("t", [make_record("Carol")])

        assert [r.key for r in snapshot.load("t")] == ["carol"]
        assert not list(tmp_path.glob(".tmp_*"))

    def test_missing_file(self, tmp_path):
        assert FileSnapshot(tmp_path / "nothing").load("t") == []

    def test_corrupt_file_ignored(self, tmp_path, caplog: pytest.LogCaptureFixture):
        snapshot = FileSnapshot(tmp_path)
        snapshot.path_for("t").write_text("{not json")

        with caplog.at_level(logging.WARNING):
            assert snapshot.load("t") == []

        assert "unreadable snapshot" in caplog.text

    def test_file_for_other_table_ignored(self, tmp_path, caplog: pytest.LogCaptureFixture):
        snapshot = FileSnapshot(tmp_path)
        snapshot.path_for("tableBody2").write_text(
            json.dumps({"table_id": "2", "records": [make_record("Bob").to_dict()]})
        )

        with caplog.at_level(logging.WARNING):
            assert snapshot.load("tableBody2") == []

        assert "written for table '2'" in caplog.text

    def test_unwritable_location_logged_not_raised(
        self, tmp_path, caplog: pytest.LogCaptureFixture
    ):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        snapshot = FileSnapshot(blocker / "snapshots")

        with caplog.at_level(logging.ERROR):
            snapshot.save("t", [make_record("Alice")])

        assert "Failed to save snapshot" in caplog.text

    def test_table_ids(self, tmp_path):
        snapshot = FileSnapshot(tmp_path)
        snapshot.save("tableBody", [])
        snapshot.save("tableBody2", [])

        assert sorted(snapshot.table_ids()) == ["tableBody", "tableBody2"]

    async def test_export_import(self, tmp_path):
        source = FileSnapshot(tmp_path / "a")
        source.save("tableBody", [make_record("Alice")])
        source.save("tableBody2", [make_record("Bob")])
        backup = tmp_path / "backup" / "dashboard.json"

        assert await source.export_json(backup) == 2

        target = FileSnapshot(tmp_path / "b")
        assert await target.import_json(backup) == 2
        assert target.load("tableBody") == source.load("tableBody")
        assert target.load("tableBody2") == source.load("tableBody2")

    async def test_import_bad_file_raises(self, tmp_path):
        backup = tmp_path / "bad.json"
        backup.write_text("[1, 2, 3]")

        with pytest.raises(SnapshotIOError) as exc_info:
            await FileSnapshot(tmp_path / "s").import_json(backup)

        assert exc_info.value.operation == "import"

    async def test_import_missing_file_raises(self, tmp_path):
        with pytest.raises(SnapshotIOError):
            await FileSnapshot(tmp_path).import_json(tmp_path / "nope.json")
