"""
Dashboard Sync

Data synchronization and read caching for the employee-performance dashboard.

Provides:
- SyncAdapter: keeps an in-memory table view consistent with a remote store,
  with local snapshot fallback, self-echo suppression and debounced reloads
- QueryCache: TTL + LRU cache in front of expensive reads
- DashboardSync: owns the cache and the per-table adapters for the process
- Remote store and snapshot backends (in-memory, JSON files, Cosmos DB)

Usage:

    >>> from dashboard_sync import DashboardSync, FileSnapshot, MemoryRemoteStore
    >>> async with DashboardSync(MemoryRemoteStore(), FileSnapshot()) as sync:
    ...     adapter = sync.attach(view)
    ...     await adapter.persist()

Configuration:

    >>> from dashboard_sync import DashboardConfig
    >>> config = DashboardConfig.from_file("~/.dashboard/settings.yaml")
"""

from .cache import CacheEntry, QueryCache
from .config import CacheConfig, CosmosAuthMethod, CosmosSettings, DashboardConfig, SyncConfig
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    DashboardSyncError,
    RemoteUnavailableError,
    SnapshotIOError,
)
from .logging_utils import (
    StructuredJsonFormatter,
    TableLoggerAdapter,
    configure_structured_logging,
    get_sync_logger,
)
from .protocol import (
    ChangeHandler,
    LocalSnapshot,
    NotificationSink,
    RemoteStore,
    SubscriptionHandle,
    TableView,
)
from .stores import FileSnapshot, MemoryRemoteStore, MemorySnapshot
from .sync import DashboardSync, SyncAdapter
from .types import ChangeEvent, ChangeKind, LoadSource, Notification, Record, normalize_key

try:
    from .stores.cosmos import CosmosRemoteStore  # noqa: F401

    _has_cosmos = True
except ImportError:
    _has_cosmos = False


__all__ = [
    # Core
    "DashboardSync",
    "SyncAdapter",
    "QueryCache",
    "CacheEntry",
    # Types
    "Record",
    "ChangeEvent",
    "ChangeKind",
    "Notification",
    "LoadSource",
    "normalize_key",
    # Contracts
    "RemoteStore",
    "LocalSnapshot",
    "TableView",
    "SubscriptionHandle",
    "ChangeHandler",
    "NotificationSink",
    # Stores
    "MemoryRemoteStore",
    "MemorySnapshot",
    "FileSnapshot",
    # Configuration
    "DashboardConfig",
    "CacheConfig",
    "SyncConfig",
    "CosmosSettings",
    "CosmosAuthMethod",
    # Logging
    "StructuredJsonFormatter",
    "TableLoggerAdapter",
    "configure_structured_logging",
    "get_sync_logger",
    # Exceptions
    "DashboardSyncError",
    "RemoteUnavailableError",
    "AuthenticationError",
    "ConfigurationError",
    "SnapshotIOError",
]

if _has_cosmos:
    __all__.extend(["CosmosRemoteStore"])

__version__ = "0.1.0"
