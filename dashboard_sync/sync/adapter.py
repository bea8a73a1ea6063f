"""
Per-table synchronization between a TableView and the remote store.

Persistence flow:
1. Mark the local write time (so our own echoes are suppressed)
2. Write every record to the remote store concurrently
3. Always save the whole table to the local snapshot
4. Re-raise the first remote failure, if any

Change-feed flow:
1. Drop events arriving inside the suppression window (self-echo)
2. Restart a single debounce timer for the table
3. When it fires, reload the whole table and notify the sink
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace

from ..cache import QueryCache
from ..config import CacheConfig, SyncConfig
from ..exceptions import ConfigurationError
from ..logging_utils import TableLoggerAdapter
from ..protocol import LocalSnapshot, NotificationSink, RemoteStore, SubscriptionHandle, TableView
from ..types import ChangeEvent, LoadSource, Notification, Record, normalize_key

logger = logging.getLogger(__name__)

READ_ALL_QUERY = "read_all"


class SyncAdapter:
    """Keeps one TableView consistent with the remote store.

    The view owns its record list; the adapter only ever replaces it
    wholesale after a successful read, never merges field by field.

    Example:
        >>> adapter = SyncAdapter(view, remote, snapshot, cache=cache)
        >>> adapter.subscribe()
        >>> await adapter.load()
        >>> # ... user edits the view ...
        >>> await adapter.persist()
        >>> await adapter.close()
    """

    def __init__(
        self,
        view: TableView,
        remote: RemoteStore,
        snapshot: LocalSnapshot,
        *,
        cache: QueryCache | None = None,
        config: SyncConfig | None = None,
        read_ttl: float | None = None,
        notify: NotificationSink | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            view: The table view to keep in sync
            remote: Authoritative remote store
            snapshot: Local fallback copy
            cache: Optional cache for remote reads
            config: Suppression/debounce timing
            read_ttl: TTL for cached reads (CacheConfig default when omitted)
            notify: Called after each remote-origin reconciliation
            clock: Monotonic time source in seconds (for tests)
        """
        if view is None:
            raise ConfigurationError("SyncAdapter requires a table view", field="view")
        if remote is None:
            raise ConfigurationError("SyncAdapter requires a remote store", field="remote")
        if snapshot is None:
            raise ConfigurationError("SyncAdapter requires a local snapshot", field="snapshot")

        self.view = view
        self.table_id = view.table_id
        self.remote = remote
        self.snapshot = snapshot
        self.cache = cache
        self.config = config or SyncConfig()
        self.read_ttl = read_ttl if read_ttl is not None else CacheConfig().read_ttl
        self.notify = notify
        self._clock = clock or time.monotonic

        self.last_local_write_at: float | None = None
        self._subscription: SubscriptionHandle | None = None
        self._debounce_task: asyncio.Task[None] | None = None
        self._reconcile_tasks: set[asyncio.Task[None]] = set()
        self._auto_refresh_task: asyncio.Task[None] | None = None

        self._log = TableLoggerAdapter(logger, {"table_id": self.table_id})

    # Persistence

    async def persist(self) -> None:
        """Write the view's records to the remote store and the local snapshot.

        The snapshot is saved even when remote writes fail; the first remote
        error is then re-raised, so a caught exception never means success.
        """
        records = list(self.view.records)
        self.mark_local_write()

        results = await asyncio.gather(
            *(self.remote.write(self.table_id, r.key, r.payload) for r in records),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]

        self.snapshot.save(self.table_id, records)
        self._invalidate_reads()

        if errors:
            self._log.error(
                f"Persist failed for {len(errors)}/{len(records)} records, "
                f"local snapshot saved: {errors[0]}"
            )
            raise errors[0]

        self._log.info(f"Persisted {len(records)} records")

    async def load(self, *, force_refresh: bool = False) -> LoadSource:
        """Replace the view's records from the remote store.

        An empty or failed remote read falls back to the local snapshot.
        Read failures are never raised.

        Args:
            force_refresh: Bypass cached reads

        Returns:
            Which source the applied records came from
        """
        try:
            records = await self._read_remote(force_refresh)
        except Exception as e:
            self._log.warning(f"Remote read failed, falling back to snapshot: {e}")
            records = []
        else:
            if not records:
                self._log.info("No remote records, trying local snapshot")

        if records:
            self._apply(records)
            self._log.info(f"Loaded {len(records)} records from remote store")
            return LoadSource.REMOTE

        fallback = self.snapshot.load(self.table_id)
        if fallback:
            self._apply(fallback)
            self._log.info(f"Loaded {len(fallback)} records from local snapshot")
            return LoadSource.SNAPSHOT

        self._log.debug("Nothing to load, view left unchanged")
        return LoadSource.NONE

    async def refresh(self) -> LoadSource:
        """Manual refresh: reload bypassing the cache."""
        return await self.load(force_refresh=True)

    async def delete_record(self, key: str) -> None:
        """Delete one record from the remote store.

        There is no local substitute for a delete, so failures propagate.
        """
        await self.remote.delete(self.table_id, normalize_key(key))
        self._invalidate_reads()
        self._log.info(f"Deleted record {key}")

    def mark_local_write(self) -> None:
        """Open the self-echo suppression window now."""
        self.last_local_write_at = self._clock()

    # Change feed

    def subscribe(self) -> SubscriptionHandle:
        """Subscribe to the table's change feed. Idempotent."""
        if self._subscription is None:
            self._subscription = self.remote.subscribe(self.table_id, self.handle_change)
            self._log.info("Change feed subscription active")
        return self._subscription

    def unsubscribe(self) -> None:
        """Release the change feed subscription. Safe to call repeatedly."""
        handle, self._subscription = self._subscription, None
        if handle is None:
            return
        self.remote.unsubscribe(handle)
        self._log.info("Change feed subscription released")

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    def is_suppressed(self) -> bool:
        """True while a change event would be treated as our own echo."""
        if self.last_local_write_at is None:
            return False
        return self._clock() - self.last_local_write_at < self.config.suppression_window

    def handle_change(self, event: ChangeEvent) -> None:
        """Change feed handler: suppress self-echo, otherwise debounce a reload."""
        if event.table_id != self.table_id:
            return

        if self.is_suppressed():
            self._log.debug(f"Skipping {event.kind.value} event (recent local change)")
            return

        if event.received_at is None:
            event = replace(event, received_at=self._clock())

        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced(event))

    @property
    def has_pending_reconciliation(self) -> bool:
        return self._debounce_task is not None

    async def flush(self) -> None:
        """Wait until no reconciliation is pending or running."""
        while self._debounce_task is not None or self._reconcile_tasks:
            pending = set(self._reconcile_tasks)
            if self._debounce_task is not None:
                pending.add(self._debounce_task)
            await asyncio.wait(pending)

    # Auto refresh

    def start_auto_refresh(self, interval: float) -> None:
        """Reload the table every ``interval`` seconds."""
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        if self._auto_refresh_task:
            self._auto_refresh_task.cancel()
        self._auto_refresh_task = asyncio.get_running_loop().create_task(
            self._auto_refresh_loop(interval)
        )
        self._log.info(f"Auto refresh started every {interval}s")

    async def stop_auto_refresh(self) -> None:
        task, self._auto_refresh_task = self._auto_refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._log.info("Auto refresh stopped")

    @property
    def auto_refresh_enabled(self) -> bool:
        return self._auto_refresh_task is not None

    async def close(self) -> None:
        """Unsubscribe, drop any pending reconciliation and stop timers."""
        self.unsubscribe()

        task, self._debounce_task = self._debounce_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.stop_auto_refresh()

        if self._reconcile_tasks:
            await asyncio.wait(set(self._reconcile_tasks))

    async def __aenter__(self) -> SyncAdapter:
        self.subscribe()
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

    # Private

    async def _read_remote(self, force_refresh: bool) -> list[Record]:
        if self.cache is None:
            return await self.remote.read_all(self.table_id)
        return await self.cache.wrap(
            READ_ALL_QUERY,
            lambda: self.remote.read_all(self.table_id),
            {"table_id": self.table_id},
            ttl=self.read_ttl,
            force_refresh=force_refresh,
        )

    def _invalidate_reads(self) -> None:
        if self.cache is not None:
            self.cache.invalidate(QueryCache.key(READ_ALL_QUERY, {"table_id": self.table_id}))

    def _apply(self, records: list[Record]) -> None:
        self.view.replace_records(list(records))
        self.view.recompute()
        self.view.render()
        self.view.refresh_summary()

    async def _debounced(self, event: ChangeEvent) -> None:
        await asyncio.sleep(self.config.debounce_delay)

        # Past this point the timer has fired; new events start a new timer
        # instead of cancelling this reconciliation.
        task = asyncio.current_task()
        if self._debounce_task is task:
            self._debounce_task = None
        if task is not None:
            self._reconcile_tasks.add(task)
        try:
            await self._reconcile(event)
        finally:
            self._reconcile_tasks.discard(task)

    async def _reconcile(self, event: ChangeEvent) -> None:
        try:
            if event.received_at is not None:
                self._log.debug(
                    f"Reconciling {event.kind.value} received "
                    f"{self._clock() - event.received_at:.3f}s ago"
                )
            await self.load(force_refresh=True)
            if self.notify is not None:
                self.notify(Notification(kind=event.kind, display_key=event.display_key))
        except Exception:
            self._log.exception(
                f"Reconciliation after {event.kind.value} failed, keeping current view"
            )

    async def _auto_refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except Exception:
                self._log.exception("Auto refresh failed")
