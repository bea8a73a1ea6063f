"""
Contracts for the collaborators the sync layer consumes and serves.

RemoteStore and LocalSnapshot are implemented by the backends in
``dashboard_sync.stores``; TableView is implemented by the presentation
layer and only described structurally here.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .types import ChangeEvent, Notification, Record

ChangeHandler = Callable[[ChangeEvent], None]
NotificationSink = Callable[[Notification], None]


@dataclass(eq=False)
class SubscriptionHandle:
    """Opaque token for one change-feed subscription."""

    table_id: str
    handler: ChangeHandler
    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class RemoteStore(ABC):
    """Authoritative, asynchronous, per-table keyed storage with a change feed.

    Implementations raise ``RemoteUnavailableError`` for any failure and
    deliver change events to every subscriber of a table, the writer
    included.
    """

    @abstractmethod
    async def write(self, table_id: str, key: str, payload: dict[str, Any]) -> None:
        """Insert or replace one record."""
        ...

    @abstractmethod
    async def read_all(self, table_id: str) -> list[Record]:
        """Read every record of a table. An unknown table reads as empty."""
        ...

    @abstractmethod
    async def delete(self, table_id: str, key: str) -> None:
        """Delete one record."""
        ...

    @abstractmethod
    def subscribe(self, table_id: str, handler: ChangeHandler) -> SubscriptionHandle:
        """Start delivering change events for a table to ``handler``."""
        ...

    @abstractmethod
    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop a subscription. Unknown or released handles are ignored."""
        ...

    async def close(self) -> None:
        """Release connections and background tasks."""
        pass

    async def __aenter__(self) -> RemoteStore:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()


class LocalSnapshot(ABC):
    """Synchronous, always-available fallback copy of each table."""

    @abstractmethod
    def save(self, table_id: str, records: list[Record]) -> None:
        """Replace the stored copy of a table. Best effort, never raises."""
        ...

    @abstractmethod
    def load(self, table_id: str) -> list[Record]:
        """Return the stored copy of a table, or an empty list."""
        ...


class TableView(Protocol):
    """The in-memory table the presentation layer owns."""

    @property
    def table_id(self) -> str: ...

    @property
    def records(self) -> list[Record]: ...

    def replace_records(self, records: list[Record]) -> None: ...

    def recompute(self) -> None: ...

    def render(self) -> None: ...

    def refresh_summary(self) -> None: ...
