"""Keyed object store backend.

Used where SQLite is unavailable. Tables live in memory as dicts keyed
by primary-key tuples, with the same secondary indexes the SQL schema
declares, and are persisted to a single JSON document after every
committed write. A failed write restores the pre-transaction snapshot.
"""

import contextlib
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from ..errors import StorageError
from .records import RecordStore
from .schema import (
    BOOLEAN_COLUMNS,
    TABLE_INDEXES,
    TABLE_KEYS,
    table_columns,
    validate_column_name,
    validate_table_name,
)

logger = logging.getLogger(__name__)

# Bump when the persisted layout changes
DB_VERSION = 3

Key = Tuple[Any, ...]


def _normalize(column: str, value: Any) -> Any:
    if column in BOOLEAN_COLUMNS and value is not None:
        return bool(value)
    return value


def _matches(row: Dict[str, Any], where: Dict[str, Any]) -> bool:
    for column, expected in where.items():
        actual = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in {_normalize(column, v) for v in expected}:
                return False
        elif expected is None:
            if actual is not None:
                return False
        elif actual != _normalize(column, expected):
            return False
    return True


class _Table:
    """Rows of one table plus its secondary indexes."""

    def __init__(self, name: str):
        self.name = name
        self.keys = TABLE_KEYS[name]
        self.columns = table_columns(name)
        self.rows: Dict[Key, Dict[str, Any]] = {}
        self.indexes: Dict[str, Dict[Any, Set[Key]]] = {c: {} for c in TABLE_INDEXES.get(name, ())}

    def key_of(self, row: Dict[str, Any]) -> Key:
        try:
            return tuple(row[k] for k in self.keys)
        except KeyError as e:
            raise ValueError(f"Row for {self.name} is missing key column {e}") from e

    def put(self, row: Dict[str, Any]) -> None:
        key = self.key_of(row)
        self.remove(key)
        self.rows[key] = row
        for column, index in self.indexes.items():
            index.setdefault(row.get(column), set()).add(key)

    def remove(self, key: Key) -> None:
        old = self.rows.pop(key, None)
        if old is None:
            return
        for column, index in self.indexes.items():
            bucket = index.get(old.get(column))
            if bucket is not None:
                bucket.discard(key)
                if not bucket:
                    del index[old.get(column)]

    def candidates(self, where: Dict[str, Any]) -> Iterable[Key]:
        """Narrow the scan with a key lookup or an index where possible."""
        if all(k in where and not isinstance(where[k], (list, tuple, set, frozenset)) for k in self.keys):
            key = tuple(_normalize(k, where[k]) for k in self.keys)
            return [key] if key in self.rows else []
        for column, index in self.indexes.items():
            value = where.get(column)
            if value is not None and not isinstance(value, (list, tuple, set, frozenset)):
                return list(index.get(_normalize(column, value), ()))
        return list(self.rows)

    def find(self, where: Dict[str, Any]) -> List[Key]:
        for column in where:
            validate_column_name(self.name, column)
        return [k for k in self.candidates(where) if _matches(self.rows[k], where)]


class KeyedTransaction:
    def __init__(self, tables: Dict[str, _Table]):
        self.tables = tables

    def _table(self, table: str) -> _Table:
        validate_table_name(table)
        return self.tables[table]

    def select(self, table: str, **where: Any) -> List[Dict[str, Any]]:
        t = self._table(table)
        return [copy.deepcopy(t.rows[k]) for k in t.find(where)]

    def delete(self, table: str, **where: Any) -> int:
        t = self._table(table)
        keys = t.find(where)
        for key in keys:
            t.remove(key)
        if table == "core_members" and keys:
            # Mirror the SQL ON DELETE CASCADE
            scouts = [k[0] for k in keys]
            self.delete("member_sections", scout_id=scouts)
        return len(keys)

    def upsert(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        t = self._table(table)
        written = 0
        for row in rows:
            unknown = set(row) - set(t.columns)
            if unknown:
                raise ValueError(f"Invalid columns for {table}: {sorted(unknown)}")
            if table == "member_sections" and (row.get("scout_id"),) not in self.tables["core_members"].rows:
                raise ValueError(f"Membership for unknown member {row.get('scout_id')}")
            normalized = {c: _normalize(c, copy.deepcopy(row.get(c))) for c in t.columns}
            existing = t.rows.get(t.key_of(normalized))
            if existing is not None:
                # Columns absent from the row keep their stored value
                normalized = {**existing, **{c: normalized[c] for c in row}}
            t.put(normalized)
            written += 1
        return written

    def count(self, table: str, **where: Any) -> int:
        return len(self._table(table).find(where))


class KeyedObjectStore(RecordStore):
    """Local store persisted as one JSON document."""

    backend_name = "keyed"

    def __init__(self, path: Optional[Path] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.path = Path(path) if path is not None else None
        self._tables: Dict[str, _Table] = {}

    def initialize(self) -> None:
        self._tables = {name: _Table(name) for name in TABLE_KEYS}
        if self.path is not None and self.path.exists():
            try:
                document = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to read keyed store at {self.path}: {e}")
                raise StorageError(f"Cannot open keyed store: {e}", context="initialize store", cause=e) from e
            version = document.get("db_version", 0)
            if version != DB_VERSION:
                logger.info(f"Keyed store version {version} != {DB_VERSION}, upgrading in place")
            for name, rows in (document.get("tables") or {}).items():
                if name not in self._tables:
                    logger.warning(f"Ignoring unknown table {name} in keyed store")
                    continue
                table = self._tables[name]
                for row in rows:
                    table.put({c: _normalize(c, row.get(c)) for c in table.columns})
        self._initialized = True
        logger.debug(f"Keyed store ready ({self.path or 'memory only'})")

    def close(self) -> None:
        super().close()
        self._tables = {}

    def _persist(self) -> None:
        if self.path is None:
            return
        document = {
            "db_version": DB_VERSION,
            "tables": {name: list(t.rows.values()) for name, t in self._tables.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Atomic write: write to temp file, fsync, then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".store_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, str(self.path))
        except Exception:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise

    @contextlib.contextmanager
    def _transaction(self, write: bool = True) -> Iterator[KeyedTransaction]:
        if not write:
            yield KeyedTransaction(self._tables)
            return
        snapshot = copy.deepcopy(self._tables)
        try:
            yield KeyedTransaction(self._tables)
            self._persist()
        except Exception as e:
            logger.debug(f"Transaction failed, restoring snapshot: {e}")
            self._tables = snapshot
            raise
