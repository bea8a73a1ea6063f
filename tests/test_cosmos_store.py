"""Tests for the Cosmos DB remote store against a mocked container."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

pytest.importorskip("azure.cosmos")

from azure.cosmos.exceptions import CosmosHttpResponseError  # noqa: E402

from dashboard_sync.config import CosmosAuthMethod, CosmosSettings  # noqa: E402
from dashboard_sync.exceptions import (  # noqa: E402
    AuthenticationError,
    ConfigurationError,
    RemoteUnavailableError,
)
from dashboard_sync.stores.cosmos import CosmosRemoteStore, _get_credential, item_id  # noqa: E402
from dashboard_sync.types import ChangeEvent, ChangeKind, Record  # noqa: E402


def _settings(**overrides: Any) -> CosmosSettings:
    values = {
        "endpoint": "https://acct.documents.azure.com:443/",
        "key": "secret",
        "auth_method": CosmosAuthMethod.KEY,
        "poll_interval": 0.01,
    }
    values.update(overrides)
    return CosmosSettings(**values)


def _doc(key: str, etag: str, ts: int = 1, deleted: bool = False, **payload: Any) -> dict:
    doc = {
        "id": item_id(key),
        "table_id": "t",
        "record_key": key.lower(),
        "deleted": deleted,
        "_etag": etag,
        "_ts": ts,
    }
    if not deleted:
        doc["payload"] = {"name": key, **payload}
    return doc


class FakeContainer:
    """Container double: upserts are recorded, queries return canned items."""

    def __init__(self, items: list[dict] | None = None):
        self.items = items or []
        self.upsert_item = AsyncMock()
        self.queries: list[dict] = []

    def query_items(self, **kwargs):
        self.queries.append(kwargs)
        items = list(self.items)

        async def iterate():
            for item in items:
                yield item

        return iterate()


@pytest.fixture
def store() -> CosmosRemoteStore:
    store = CosmosRemoteStore(_settings(), retry_delay=0)
    store._container = FakeContainer()
    return store


class TestConfiguration:
    def test_endpoint_required(self):
        with pytest.raises(ConfigurationError, match="endpoint"):
            CosmosRemoteStore(CosmosSettings())

    def test_key_auth_needs_key(self):
        with pytest.raises(ConfigurationError):
            _get_credential(_settings(key=None))

    def test_key_auth_returns_key(self):
        assert _get_credential(_settings()) == "secret"

    def test_managed_identity_with_client_id(self):
        with patch("azure.identity.aio.ManagedIdentityCredential") as credential:
            _get_credential(
                _settings(auth_method=CosmosAuthMethod.MANAGED_IDENTITY, client_id="abc")
            )

        credential.assert_called_once_with(client_id="abc")

    def test_item_id_is_url_safe(self):
        assert item_id(" Alice/Smith ") == "alice%2Fsmith"


class TestOperations:
    async def test_write_upserts_live_item(self, store: CosmosRemoteStore):
        await store.write("t", "Alice", {"score": 1})

        body = store._container.upsert_item.call_args.kwargs["body"]
        assert body == {
            "id": "alice",
            "table_id": "t",
            "record_key": "alice",
            "payload": {"score": 1},
            "deleted": False,
        }

    async def test_delete_writes_tombstone(self, store: CosmosRemoteStore):
        await store.delete("t", "Alice")

        body = store._container.upsert_item.call_args.kwargs["body"]
        assert body["deleted"] is True
        assert body["ttl"] == 60
        assert "payload" not in body

    async def test_read_all_queries_partition(self, store: CosmosRemoteStore):
        store._container.items = [_doc("Alice", "e1", score=3)]

        records = await store.read_all("t")

        assert records == [Record(key="alice", payload={"name": "Alice", "score": 3})]
        query = store._container.queries[0]
        assert query["partition_key"] == "t"
        assert {"name": "@table_id", "value": "t"} in query["parameters"]


class TestRetry:
    async def test_retries_server_errors(self, store: CosmosRemoteStore):
        call = AsyncMock(
            side_effect=[CosmosHttpResponseError(status_code=503, message="busy"), "ok"]
        )

        assert await store._with_retry("write", "t", call) == "ok"
        assert call.await_count == 2

    async def test_gives_up_after_max_retries(self, store: CosmosRemoteStore):
        call = AsyncMock(side_effect=CosmosHttpResponseError(status_code=429, message="slow"))

        with pytest.raises(RemoteUnavailableError) as exc_info:
            await store._with_retry("write", "t", call)

        assert call.await_count == 3
        assert exc_info.value.table_id == "t"

    async def test_client_errors_not_retried(self, store: CosmosRemoteStore):
        call = AsyncMock(side_effect=CosmosHttpResponseError(status_code=400, message="bad"))

        with pytest.raises(RemoteUnavailableError):
            await store._with_retry("write", "t", call)

        assert call.await_count == 1

    async def test_auth_errors(self, store: CosmosRemoteStore):
        call = AsyncMock(side_effect=CosmosHttpResponseError(status_code=403, message="no"))

        with pytest.raises(AuthenticationError):
            await store._with_retry("read_all", "t", call)

    async def test_network_errors(self, store: CosmosRemoteStore):
        call = AsyncMock(side_effect=ConnectionResetError("reset"))

        with pytest.raises(RemoteUnavailableError):
            await store._with_retry("read_all", "t", call)


class TestDiff:
    """Tests for turning item snapshots into change events."""

    def test_insert_update_delete(self):
        known: dict = {}

        insert = CosmosRemoteStore._diff("t", _doc("Alice", "e1", score=1), known)
        unchanged = CosmosRemoteStore._diff("t", _doc("Alice", "e1", score=1), known)
        update = CosmosRemoteStore._diff("t", _doc("Alice", "e2", score=2), known)
        delete = CosmosRemoteStore._diff("t", _doc("Alice", "e3", deleted=True), known)

        assert insert.kind == ChangeKind.INSERT
        assert unchanged is None
        assert update.kind == ChangeKind.UPDATE
        assert update.old_record.payload["score"] == 1
        assert delete.kind == ChangeKind.DELETE
        assert delete.display_key == "Alice"

    def test_tombstone_for_unknown_record_ignored(self):
        assert CosmosRemoteStore._diff("t", _doc("Bob", "e1", deleted=True), {}) is None


class TestChangeFeed:
    async def test_poller_emits_after_baseline(self, store: CosmosRemoteStore):
        batches = [
            [_doc("Alice", "e1", ts=1)],
            [_doc("Alice", "e1", ts=1), _doc("Bob", "e2", ts=2)],
            [_doc("Bob", "e3", ts=3, deleted=True)],
        ]
        since_values: list[int] = []

        async def fake_query(operation, table_id, query, parameters):
            since_values.append(parameters["@since"])
            return batches.pop(0) if batches else []

        store._query = fake_query
        received: list[ChangeEvent] = []
        store.subscribe("t", received.append)

        for _ in range(50):
            if len(received) >= 2:
                break
            await asyncio.sleep(0.01)

        await store.close()

        assert [(e.kind, e.display_key) for e in received] == [
            (ChangeKind.INSERT, "Bob"),
            (ChangeKind.DELETE, "Bob"),
        ]
        assert since_values[:3] == [0, 1, 2]

    async def test_poller_survives_outage(self, store: CosmosRemoteStore):
        calls = 0

        async def flaky_query(operation, table_id, query, parameters):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RemoteUnavailableError("poll_changes", table_id)
            return []

        store._query = flaky_query
        store.subscribe("t", MagicMock())

        await asyncio.sleep(0.05)
        await store.close()

        assert calls >= 2

    async def test_one_poller_per_table(self, store: CosmosRemoteStore):
        store._query = AsyncMock(return_value=[])

        first = store.subscribe("t", MagicMock())
        store.subscribe("t", MagicMock())
        assert len(store._pollers) == 1

        store.unsubscribe(first)
        assert "t" in store._pollers

        await store.close()
        assert store._pollers == {}

    async def test_handler_errors_isolated(self, store: CosmosRemoteStore):
        good: list[ChangeEvent] = []
        store._subscribers["t"] = []
        store._pollers["t"] = MagicMock()
        store.subscribe("t", MagicMock(side_effect=RuntimeError("bad handler")))
        store.subscribe("t", good.append)

        event = ChangeEvent(ChangeKind.INSERT, "t", new_record=Record(key="a"))
        store._dispatch(event)

        assert good == [event]
