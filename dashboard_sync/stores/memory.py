"""
In-process remote store and snapshot.

Used for local development and tests. The remote store behaves like a hosted
one where it matters: calls yield to the event loop, and change events are
delivered asynchronously to every subscriber, including the writer.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from ..exceptions import RemoteUnavailableError
from ..protocol import ChangeHandler, LocalSnapshot, RemoteStore, SubscriptionHandle
from ..types import ChangeEvent, ChangeKind, Record, normalize_key

logger = logging.getLogger(__name__)


class MemoryRemoteStore(RemoteStore):
    """Dict-backed RemoteStore with a change feed and outage simulation."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscribers: dict[str, list[SubscriptionHandle]] = {}
        self._available = True
        self._failures_remaining = 0

    def set_available(self, available: bool) -> None:
        """Simulate the store going offline (every call fails) or back online."""
        self._available = available

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` calls fail."""
        self._failures_remaining = count

    def seed(self, table_id: str, records: list[Record]) -> None:
        """Populate a table without emitting change events."""
        table = self._tables.setdefault(table_id, {})
        for record in records:
            table[record.key] = copy.deepcopy(record.payload)

    async def write(self, table_id: str, key: str, payload: dict[str, Any]) -> None:
        self._check("write", table_id)
        await asyncio.sleep(0)

        key = normalize_key(key)
        table = self._tables.setdefault(table_id, {})
        previous = table.get(key)
        table[key] = copy.deepcopy(payload)

        self._emit(
            ChangeEvent(
                kind=ChangeKind.UPDATE if previous is not None else ChangeKind.INSERT,
                table_id=table_id,
                new_record=Record(key=key, payload=copy.deepcopy(payload)),
                old_record=Record(key=key, payload=previous) if previous is not None else None,
            )
        )

    async def read_all(self, table_id: str) -> list[Record]:
        self._check("read_all", table_id)
        await asyncio.sleep(0)
        table = self._tables.get(table_id, {})
        return [Record(key=key, payload=copy.deepcopy(payload)) for key, payload in table.items()]

    async def delete(self, table_id: str, key: str) -> None:
        self._check("delete", table_id)
        await asyncio.sleep(0)

        key = normalize_key(key)
        previous = self._tables.get(table_id, {}).pop(key, None)
        if previous is None:
            return
        self._emit(
            ChangeEvent(
                kind=ChangeKind.DELETE,
                table_id=table_id,
                old_record=Record(key=key, payload=previous),
            )
        )

    def subscribe(self, table_id: str, handler: ChangeHandler) -> SubscriptionHandle:
        handle = SubscriptionHandle(table_id=table_id, handler=handler)
        self._subscribers.setdefault(table_id, []).append(handle)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        handles = self._subscribers.get(handle.table_id, [])
        if handle in handles:
            handles.remove(handle)

    def subscriber_count(self, table_id: str) -> int:
        return len(self._subscribers.get(table_id, []))

    def _check(self, operation: str, table_id: str) -> None:
        if not self._available:
            raise RemoteUnavailableError(operation, table_id, ConnectionError("store offline"))
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise RemoteUnavailableError(operation, table_id, ConnectionError("injected failure"))

    def _emit(self, event: ChangeEvent) -> None:
        loop = asyncio.get_running_loop()
        for handle in list(self._subscribers.get(event.table_id, [])):
            loop.call_soon(handle.handler, event)


class MemorySnapshot(LocalSnapshot):
    """Dict-backed LocalSnapshot."""

    def __init__(self) -> None:
        self._tables: dict[str, list[Record]] = {}

    def save(self, table_id: str, records: list[Record]) -> None:
        self._tables[table_id] = copy.deepcopy(list(records))

    def load(self, table_id: str) -> list[Record]:
        return copy.deepcopy(self._tables.get(table_id, []))
