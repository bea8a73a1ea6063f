"""
Process-wide owner of the cache and the per-table adapters.

Created once at startup and closed on shutdown; consumers receive the
adapters they need instead of reaching for globals.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

from ..cache import QueryCache
from ..config import DashboardConfig
from ..exceptions import ConfigurationError
from ..logging_utils import configure_structured_logging, get_sync_logger
from ..protocol import LocalSnapshot, NotificationSink, RemoteStore, TableView
from .adapter import SyncAdapter

logger = get_sync_logger("runtime")


class DashboardSync:
    """Wires one remote store, one snapshot and one cache to many tables.

    Example:
        >>> async with DashboardSync(remote, snapshot, notify=toast) as sync:
        ...     adapters = sync.initialize_adapters(views)
        ...     await adapters["tableBody"].persist()
    """

    def __init__(
        self,
        remote: RemoteStore,
        snapshot: LocalSnapshot,
        config: DashboardConfig | None = None,
        notify: NotificationSink | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if remote is None:
            raise ConfigurationError("DashboardSync requires a remote store", field="remote")
        if snapshot is None:
            raise ConfigurationError("DashboardSync requires a local snapshot", field="snapshot")

        self.remote = remote
        self.snapshot = snapshot
        self.config = config or DashboardConfig()
        self.notify = notify
        self._clock = clock

        if self.config.log_format == "json":
            configure_structured_logging(self.config.log_level_number, "dashboard_sync")

        cache_config = self.config.cache
        self.cache = QueryCache(
            default_ttl=cache_config.default_ttl,
            max_size=cache_config.max_size,
            sweep_interval=cache_config.sweep_interval,
            enabled=cache_config.enabled,
            clock=clock,
        )
        self._adapters: dict[str, SyncAdapter] = {}
        self._started = False

    def attach(self, view: TableView) -> SyncAdapter:
        """Create the adapter for a view.

        If the runtime is already started the adapter is subscribed
        immediately.

        Raises:
            ConfigurationError: If the table id is already attached
        """
        table_id = view.table_id
        if table_id in self._adapters:
            raise ConfigurationError(f"Table {table_id} already has an adapter", field="table_id")

        adapter = SyncAdapter(
            view,
            self.remote,
            self.snapshot,
            cache=self.cache,
            config=self.config.sync,
            read_ttl=self.config.cache.read_ttl,
            notify=self.notify,
            clock=self._clock,
        )
        self._adapters[table_id] = adapter
        if self._started:
            self._activate(adapter)
        logger.info(f"Initialized sync adapter for {table_id}")
        return adapter

    def initialize_adapters(self, views: Iterable[TableView]) -> dict[str, SyncAdapter]:
        """Attach every view and return the adapters keyed by table id."""
        for view in views:
            self.attach(view)
        return dict(self._adapters)

    def adapter(self, table_id: str) -> SyncAdapter:
        try:
            return self._adapters[table_id]
        except KeyError:
            raise ConfigurationError(f"No adapter for table {table_id}", field="table_id") from None

    @property
    def adapters(self) -> dict[str, SyncAdapter]:
        return dict(self._adapters)

    async def start(self) -> None:
        """Start the cache sweep, subscribe every table and load it once."""
        if self._started:
            return
        self._started = True

        self.cache.start_auto_cleanup()
        for adapter in self._adapters.values():
            self._activate(adapter)

        await asyncio.gather(*(a.load() for a in self._adapters.values()))
        logger.info(f"Dashboard sync started for {len(self._adapters)} tables")

    async def close(self) -> None:
        """Close adapters, stop the sweep and close the remote store."""
        for adapter in self._adapters.values():
            await adapter.close()
        await self.cache.stop_auto_cleanup()
        await self.remote.close()
        self._started = False
        logger.info("Dashboard sync stopped")

    async def __aenter__(self) -> DashboardSync:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

    def _activate(self, adapter: SyncAdapter) -> None:
        adapter.subscribe()
        interval = self.config.sync.auto_refresh_interval
        if interval:
            adapter.start_auto_refresh(interval)
