"""
Core data types shared by the sync layer, the cache and the stores.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def normalize_key(key: str) -> str:
    """Case-normalize a record identity (e.g. an employee name)."""
    return key.strip().casefold()


@dataclass
class Record:
    """One row of a dashboard table.

    The key is normalized on construction so that "Alice" and " alice "
    address the same record.
    """

    key: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.key = normalize_key(self.key)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], key_field: str = "name") -> Record:
        """Build a record whose identity is a field of its own payload."""
        value = payload.get(key_field)
        if not value:
            raise ValueError(f"Payload has no '{key_field}' to use as record key")
        return cls(key=str(value), payload=payload)

    @property
    def display_key(self) -> str:
        """Human readable identity, preferring the original casing."""
        name = self.payload.get("name") or self.payload.get("employee_name")
        return str(name) if name else self.key

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        return cls(key=data["key"], payload=data.get("payload") or {})


class ChangeKind(Enum):
    """Kind of change delivered on the remote change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """A change notification for one table. Transient, never stored.

    ``received_at`` is the consumer's clock reading when the event arrived.
    """

    kind: ChangeKind
    table_id: str
    new_record: Record | None = None
    old_record: Record | None = None
    received_at: float | None = None

    @property
    def affected_record(self) -> Record | None:
        if self.kind == ChangeKind.DELETE:
            return self.old_record or self.new_record
        return self.new_record or self.old_record

    @property
    def display_key(self) -> str:
        record = self.affected_record
        return record.display_key if record else "Unknown"

    @classmethod
    def from_payload(
        cls,
        table_id: str,
        payload: dict[str, Any],
        received_at: float | None = None,
    ) -> ChangeEvent:
        """Parse a raw feed payload.

        Expected shape::

            {"eventType": "UPDATE",
             "new": {"employee_name": "Alice", "data": {...}},
             "old": {...}}
        """
        kind = ChangeKind(str(payload.get("eventType", "UPDATE")).upper())
        return cls(
            kind=kind,
            table_id=table_id,
            new_record=_row_to_record(payload.get("new")),
            old_record=_row_to_record(payload.get("old")),
            received_at=received_at,
        )


def _row_to_record(row: dict[str, Any] | None) -> Record | None:
    if not row:
        return None
    data = row.get("data") or {}
    key = row.get("employee_name") or data.get("name")
    if not key:
        return None
    payload = dict(data)
    payload.setdefault("employee_name", row.get("employee_name", key))
    return Record(key=str(key), payload=payload)


_NOTIFICATION_TEMPLATES = {
    ChangeKind.INSERT: "New data added for {name}",
    ChangeKind.UPDATE: "Data updated for {name}",
    ChangeKind.DELETE: "Data deleted for {name}",
}


@dataclass(frozen=True)
class Notification:
    """Payload handed to the notification sink after a remote-origin reload."""

    kind: ChangeKind
    display_key: str

    @property
    def message(self) -> str:
        return _NOTIFICATION_TEMPLATES[self.kind].format(name=self.display_key)


class LoadSource(Enum):
    """Where the records applied by a load came from."""

    REMOTE = "remote"
    SNAPSHOT = "snapshot"
    NONE = "none"
