"""SQLite backend for the local store."""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..errors import StorageError
from .records import RecordStore
from .schema import (
    BOOLEAN_COLUMNS,
    JSON_COLUMNS,
    TABLE_KEYS,
    init_db,
    table_columns,
    validate_column_name,
    validate_table_name,
)

logger = logging.getLogger(__name__)


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def _from_json(value: Optional[str]) -> Any:
    if value is None or value == "":
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Undecodable JSON column value: {value!r:.60}")
        return None


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        return _to_json(value)
    if column in BOOLEAN_COLUMNS:
        return None if value is None else int(bool(value))
    return value


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for column in row.keys():
        value = row[column]
        if column in JSON_COLUMNS:
            value = _from_json(value)
        elif column in BOOLEAN_COLUMNS and value is not None:
            value = bool(value)
        out[column] = value
    return out


def _where_clause(table: str, where: Dict[str, Any]) -> Tuple[str, List[Any]]:
    """Build a WHERE clause. Lists match any member; None matches NULL."""
    if not where:
        return "", []
    parts: List[str] = []
    params: List[Any] = []
    for column, value in where.items():
        validate_column_name(table, column)
        if isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                parts.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            parts.append(f"{column} IN ({placeholders})")
            params.extend(_encode(column, v) for v in values)
        elif value is None:
            parts.append(f"{column} IS NULL")
        else:
            parts.append(f"{column} = ?")
            params.append(_encode(column, value))
    return " WHERE " + " AND ".join(parts), params


class SQLiteTransaction:
    """Row operations on one open connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def select(self, table: str, **where: Any) -> List[Dict[str, Any]]:
        validate_table_name(table)
        clause, params = _where_clause(table, where)
        rows = self.conn.execute(f"SELECT * FROM {table}{clause}", params).fetchall()
        return [_decode_row(r) for r in rows]

    def delete(self, table: str, **where: Any) -> int:
        validate_table_name(table)
        clause, params = _where_clause(table, where)
        cursor = self.conn.execute(f"DELETE FROM {table}{clause}", params)
        return cursor.rowcount

    def upsert(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        """Insert or update by primary key.

        Uses ON CONFLICT DO UPDATE rather than INSERT OR REPLACE so that a
        parent row update never cascades deletes to its children.
        """
        validate_table_name(table)
        keys = TABLE_KEYS[table]
        allowed = set(table_columns(table))
        written = 0
        for row in rows:
            columns = [c for c in row if c in allowed]
            unknown = set(row) - allowed
            if unknown:
                raise ValueError(f"Invalid columns for {table}: {sorted(unknown)}")
            updates = [c for c in columns if c not in keys]
            placeholders = ", ".join("?" for _ in columns)
            if updates:
                conflict = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
            else:
                conflict = "DO NOTHING"
            sql = (
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT({', '.join(keys)}) {conflict}"
            )
            self.conn.execute(sql, [_encode(c, row[c]) for c in columns])
            written += 1
        return written

    def count(self, table: str, **where: Any) -> int:
        validate_table_name(table)
        clause, params = _where_clause(table, where)
        return self.conn.execute(f"SELECT COUNT(*) FROM {table}{clause}", params).fetchone()[0]


class SQLiteStore(RecordStore):
    """Local store on a single SQLite file.

    A connection is opened per operation; every write operation is one
    transaction committed on success and rolled back on any exception.
    """

    backend_name = "sqlite"

    def __init__(self, db_path: Path, **kwargs: Any):
        super().__init__(**kwargs)
        self.db_path = Path(db_path)

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection.

        Prefer the _connect() context manager, which handles
        commit/rollback and close.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                init_db(conn)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to initialize SQLite store at {self.db_path}: {e}")
            raise StorageError(f"Cannot open database: {e}", context="initialize store", cause=e) from e
        self._initialized = True
        logger.debug(f"SQLite store ready at {self.db_path}")

    @contextlib.contextmanager
    def _transaction(self, write: bool = True) -> Iterator[SQLiteTransaction]:
        with self._connect() as conn:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield SQLiteTransaction(conn)
