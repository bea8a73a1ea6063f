"""
RemoteStore and LocalSnapshot implementations.

- MemoryRemoteStore / MemorySnapshot: in-process, for development and tests
- FileSnapshot: JSON files on disk
- CosmosRemoteStore: Azure Cosmos DB (requires the ``cosmos`` extra)
"""

from .memory import MemoryRemoteStore, MemorySnapshot
from .snapshot import FileSnapshot, storage_key

try:
    from .cosmos import CosmosRemoteStore  # noqa: F401

    _has_cosmos = True
except ImportError:
    _has_cosmos = False

__all__ = [
    "FileSnapshot",
    "MemoryRemoteStore",
    "MemorySnapshot",
    "storage_key",
]

if _has_cosmos:
    __all__.append("CosmosRemoteStore")
