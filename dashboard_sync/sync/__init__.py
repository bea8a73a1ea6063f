"""
Table synchronization.

Provides the per-table SyncAdapter (persist/load with snapshot fallback,
self-echo suppression, debounced reconciliation) and the DashboardSync
runtime that owns the adapters and the shared query cache.
"""

from .adapter import SyncAdapter
from .runtime import DashboardSync

__all__ = [
    "DashboardSync",
    "SyncAdapter",
]
