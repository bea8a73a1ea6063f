"""
JSON file snapshot of each table.

One file per table under a base directory:

{base_path}/
  tom_analytics_data.json            # primary table "tableBody"
  tom_analytics_data_2.json          # "tableBody2"
  tom_analytics_data__<quoted>.json  # any other table id, percent-escaped

Each file also records its table id; a file written for a different table
loads as empty. Writes are atomic (temp file + rename). ``save`` and
``load`` never raise; the explicit export/import helpers do.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote

import aiofiles
import aiofiles.os

from ..exceptions import SnapshotIOError
from ..protocol import LocalSnapshot
from ..types import Record

logger = logging.getLogger(__name__)

PRIMARY_TABLE_ID = "tableBody"
STORAGE_KEY_PREFIX = "tom_analytics_data"

_NUMBERED_TABLE = re.compile(rf"{PRIMARY_TABLE_ID}(\d+)")


def storage_key(table_id: str) -> str:
    """Map a table id to its snapshot storage key.

    Distinct table ids always get distinct keys: numbered tables keep the
    dashboard's ``_<n>`` suffix, every other id is percent-escaped behind
    a double underscore.
    """
    if table_id == PRIMARY_TABLE_ID:
        return STORAGE_KEY_PREFIX
    numbered = _NUMBERED_TABLE.fullmatch(table_id)
    if numbered:
        return f"{STORAGE_KEY_PREFIX}_{numbered.group(1)}"
    return f"{STORAGE_KEY_PREFIX}__{quote(table_id, safe='')}"


class FileSnapshot(LocalSnapshot):
    """LocalSnapshot persisted as JSON files."""

    def __init__(self, base_path: Path | str | None = None) -> None:
        """Initialize the snapshot.

        Args:
            base_path: Directory for snapshot files (default: ~/.dashboard/snapshots)
        """
        if base_path:
            self.base_path = Path(base_path).expanduser()
        else:
            self.base_path = Path.home() / ".dashboard" / "snapshots"

    def path_for(self, table_id: str) -> Path:
        return self.base_path / f"{storage_key(table_id)}.json"

    def save(self, table_id: str, records: list[Record]) -> None:
        path = self.path_for(table_id)
        document = {"table_id": table_id, "records": [r.to_dict() for r in records]}
        try:
            _write_json_atomic(path, document)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save snapshot for {table_id} to {path}: {e}")

    def load(self, table_id: str) -> list[Record]:
        path = self.path_for(table_id)
        if not path.exists():
            return []
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            stored_id = document.get("table_id")
            records = [Record.from_dict(item) for item in document.get("records", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable snapshot for {table_id} at {path}: {e}")
            return []

        if stored_id != table_id:
            logger.warning(
                f"Ignoring snapshot at {path}: written for table {stored_id!r}, not {table_id!r}"
            )
            return []
        return records

    def table_ids(self) -> list[str]:
        """Table ids that currently have a snapshot file."""
        if not self.base_path.exists():
            return []
        ids = []
        for path in sorted(self.base_path.glob(f"{STORAGE_KEY_PREFIX}*.json")):
            try:
                ids.append(json.loads(path.read_text(encoding="utf-8"))["table_id"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable snapshot {path}: {e}")
        return ids

    async def export_json(self, path: Path | str) -> int:
        """Write every table's snapshot into one backup file.

        Returns:
            Number of tables exported

        Raises:
            SnapshotIOError: If the backup cannot be written
        """
        path = Path(path)
        backup: dict[str, Any] = {
            table_id: [r.to_dict() for r in self.load(table_id)] for table_id in self.table_ids()
        }
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(backup, indent=2, default=str))
        except OSError as e:
            raise SnapshotIOError("export", str(path), e) from e
        return len(backup)

    async def import_json(self, path: Path | str) -> int:
        """Restore tables from a backup file written by ``export_json``.

        Returns:
            Number of tables imported

        Raises:
            SnapshotIOError: If the backup cannot be read or parsed
        """
        path = Path(path)
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                backup = json.loads(await f.read())
            tables = {
                table_id: [Record.from_dict(item) for item in items]
                for table_id, items in backup.items()
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise SnapshotIOError("import", str(path), e) from e

        for table_id, records in tables.items():
            self.save(table_id, records)
        return len(tables)


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2, default=str))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.remove(temp_path)
        except OSError:
            pass
        raise
