"""Database schema and table metadata for the local store.

Contains:
- Schema DDL (SCHEMA) and version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Per-table key and column metadata shared by both backends
- Database initialization (init_db) and migration (migrate_schema)
"""

import logging
import sqlite3
from typing import Dict, FrozenSet, Tuple

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 3  # v3: server_hash / local_snapshot version columns

VERSION_COLUMNS: Tuple[str, ...] = (
    "version",
    "local_version",
    "last_sync_version",
    "is_locally_modified",
    "updated_at",
    "last_synced_at",
    "conflict_resolution_needed",
    "server_hash",
    "local_snapshot",
)

# Primary key columns per table
TABLE_KEYS: Dict[str, Tuple[str, ...]] = {
    "sections": ("section_id",),
    "terms": ("section_id", "term_id"),
    "current_active_terms": ("section_id",),
    "events": ("event_id",),
    "attendance": ("event_id", "scout_id", "is_shared_section"),
    "shared_event_metadata": ("event_id",),
    "core_members": ("scout_id",),
    "member_sections": ("scout_id", "section_id"),
    "flexi_lists": ("section_id", "extra_id"),
    "flexi_structure": ("extra_id",),
    "flexi_data": ("extra_id", "section_id", "term_id", "scout_id"),
    "sync_status": ("table_name",),
    "sync_metadata": ("key",),
    "page_cache": ("cache_key",),
}

# Content columns per table (version columns are appended for VERSIONED_TABLES)
TABLE_CONTENT_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "sections": ("section_id", "name", "section_type", "is_default", "permissions"),
    "terms": ("section_id", "term_id", "name", "start_date", "end_date"),
    "current_active_terms": (
        "section_id",
        "term_id",
        "term_name",
        "start_date",
        "end_date",
        "last_updated",
    ),
    "events": (
        "event_id",
        "section_id",
        "term_id",
        "name",
        "start_date",
        "start_time",
        "end_date",
        "location",
        "notes",
        "cost",
    ),
    "attendance": (
        "event_id",
        "scout_id",
        "is_shared_section",
        "section_id",
        "first_name",
        "last_name",
        "attending",
        "patrol",
        "notes",
    ),
    "shared_event_metadata": ("event_id", "is_shared", "owner_section_id", "sections", "updated_at"),
    "core_members": (
        "scout_id",
        "first_name",
        "last_name",
        "date_of_birth",
        "age",
        "photo_guid",
        "has_photo",
        "contact_groups",
        "custom_data",
        "flattened_fields",
        "read_only",
    ),
    "member_sections": (
        "scout_id",
        "section_id",
        "section_name",
        "person_type",
        "patrol",
        "patrol_id",
        "role",
        "started",
        "joined",
        "end_date",
        "active",
    ),
    "flexi_lists": ("section_id", "extra_id", "name", "archived", "soft_deleted"),
    "flexi_structure": (
        "extra_id",
        "name",
        "section_id",
        "term_id",
        "config",
        "structure",
        "updated_at",
    ),
    "flexi_data": (
        "extra_id",
        "section_id",
        "term_id",
        "scout_id",
        "first_name",
        "last_name",
        "data",
    ),
    "sync_status": ("table_name", "last_sync_at", "needs_sync"),
    "sync_metadata": ("key", "value"),
    "page_cache": ("cache_key", "payload", "timestamp"),
}

# Tables carrying per-record version bookkeeping
VERSIONED_TABLES: FrozenSet[str] = frozenset({"sections", "events", "attendance", "core_members"})

# Columns holding JSON documents
JSON_COLUMNS: FrozenSet[str] = frozenset(
    {
        "permissions",
        "sections",
        "contact_groups",
        "custom_data",
        "flattened_fields",
        "read_only",
        "config",
        "structure",
        "data",
        "value",
        "payload",
        "local_snapshot",
    }
)

# Columns stored as 0/1 integers
BOOLEAN_COLUMNS: FrozenSet[str] = frozenset(
    {
        "is_default",
        "is_shared_section",
        "is_shared",
        "has_photo",
        "active",
        "archived",
        "soft_deleted",
        "needs_sync",
        "is_locally_modified",
        "conflict_resolution_needed",
    }
)

# Secondary indexes (the keyed backend maintains the same set in memory)
TABLE_INDEXES: Dict[str, Tuple[str, ...]] = {
    "terms": ("section_id",),
    "events": ("section_id", "term_id", "start_date"),
    "attendance": ("event_id", "scout_id"),
    "member_sections": ("section_id", "scout_id"),
    "flexi_lists": ("section_id", "extra_id"),
    "flexi_data": ("extra_id", "section_id", "term_id", "scout_id"),
    "sections": ("section_type",),
}

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(TABLE_KEYS) | {"schema_version"}

# Tables holding cached upstream data (purged on logout)
ENTITY_TABLES: Tuple[str, ...] = (
    "attendance",
    "shared_event_metadata",
    "events",
    "member_sections",
    "core_members",
    "flexi_data",
    "flexi_lists",
    "flexi_structure",
    "current_active_terms",
    "terms",
    "sections",
    "sync_status",
    "page_cache",
)

# Tables whose presence means "there is cached data to show offline"
OFFLINE_DATA_TABLES: Tuple[str, ...] = (
    "sections",
    "terms",
    "events",
    "attendance",
    "core_members",
)


def table_columns(table: str) -> Tuple[str, ...]:
    """All stored columns of a table, in DDL order."""
    validate_table_name(table)
    columns = TABLE_CONTENT_COLUMNS[table]
    if table in VERSIONED_TABLES:
        return columns + VERSION_COLUMNS
    return columns


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def validate_column_name(table: str, column: str) -> str:
    if column not in table_columns(table):
        raise ValueError(f"Invalid column for {table}: {column}")
    return column


_VERSION_DDL = """
    version INTEGER DEFAULT 1,
    local_version INTEGER DEFAULT 1,
    last_sync_version INTEGER DEFAULT 1,
    is_locally_modified INTEGER DEFAULT 0,
    updated_at TEXT,
    last_synced_at TEXT,
    conflict_resolution_needed INTEGER DEFAULT 0,
    server_hash TEXT,
    local_snapshot TEXT"""

SCHEMA = f"""
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sections (
    section_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    section_type TEXT,
    is_default INTEGER DEFAULT 0,
    permissions TEXT,  -- JSON object
{_VERSION_DDL}
);
CREATE INDEX IF NOT EXISTS idx_sections_type ON sections(section_type);

CREATE TABLE IF NOT EXISTS terms (
    section_id INTEGER NOT NULL,
    term_id TEXT NOT NULL,
    name TEXT NOT NULL,
    start_date TEXT,
    end_date TEXT,
    PRIMARY KEY (section_id, term_id)
);
CREATE INDEX IF NOT EXISTS idx_terms_section ON terms(section_id);

CREATE TABLE IF NOT EXISTS current_active_terms (
    section_id INTEGER PRIMARY KEY,
    term_id TEXT NOT NULL,
    term_name TEXT,
    start_date TEXT,
    end_date TEXT,
    last_updated TEXT
);

CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    section_id INTEGER NOT NULL,
    term_id TEXT,
    name TEXT NOT NULL,
    start_date TEXT,
    start_time TEXT,
    end_date TEXT,
    location TEXT,
    notes TEXT,
    cost TEXT,
{_VERSION_DDL}
);
CREATE INDEX IF NOT EXISTS idx_events_section ON events(section_id);
CREATE INDEX IF NOT EXISTS idx_events_term ON events(term_id);
CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_date);

-- Regular and shared-section rows for the same event coexist
CREATE TABLE IF NOT EXISTS attendance (
    event_id TEXT NOT NULL,
    scout_id INTEGER NOT NULL,
    is_shared_section INTEGER NOT NULL DEFAULT 0,
    section_id INTEGER,
    first_name TEXT,
    last_name TEXT,
    attending TEXT,
    patrol TEXT,
    notes TEXT,
{_VERSION_DDL},
    PRIMARY KEY (event_id, scout_id, is_shared_section)
);
CREATE INDEX IF NOT EXISTS idx_attendance_event ON attendance(event_id);
CREATE INDEX IF NOT EXISTS idx_attendance_scout ON attendance(scout_id);

CREATE TABLE IF NOT EXISTS shared_event_metadata (
    event_id TEXT PRIMARY KEY,
    is_shared INTEGER DEFAULT 0,
    owner_section_id INTEGER,
    sections TEXT,  -- JSON array of section ids, ascending
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS core_members (
    scout_id INTEGER PRIMARY KEY,
    first_name TEXT,
    last_name TEXT,
    date_of_birth TEXT,
    age TEXT,
    photo_guid TEXT,
    has_photo INTEGER DEFAULT 0,
    contact_groups TEXT,    -- JSON object
    custom_data TEXT,       -- JSON object
    flattened_fields TEXT,  -- JSON object
    read_only TEXT,         -- JSON object
{_VERSION_DDL}
);
CREATE INDEX IF NOT EXISTS idx_core_members_name ON core_members(last_name, first_name);

CREATE TABLE IF NOT EXISTS member_sections (
    scout_id INTEGER NOT NULL REFERENCES core_members(scout_id) ON DELETE CASCADE,
    section_id INTEGER NOT NULL,
    section_name TEXT,
    person_type TEXT,
    patrol TEXT,
    patrol_id INTEGER,
    role TEXT,
    started TEXT,
    joined TEXT,
    end_date TEXT,
    active INTEGER DEFAULT 1,
    PRIMARY KEY (scout_id, section_id)
);
CREATE INDEX IF NOT EXISTS idx_member_sections_section ON member_sections(section_id);

CREATE TABLE IF NOT EXISTS flexi_lists (
    section_id INTEGER NOT NULL,
    extra_id TEXT NOT NULL,
    name TEXT NOT NULL,
    archived INTEGER DEFAULT 0,
    soft_deleted INTEGER DEFAULT 0,
    PRIMARY KEY (section_id, extra_id)
);
CREATE INDEX IF NOT EXISTS idx_flexi_lists_extra ON flexi_lists(extra_id);

CREATE TABLE IF NOT EXISTS flexi_structure (
    extra_id TEXT PRIMARY KEY,
    name TEXT,
    section_id INTEGER,
    term_id TEXT,
    config TEXT,     -- JSON
    structure TEXT,  -- JSON array of field definitions
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS flexi_data (
    extra_id TEXT NOT NULL,
    section_id INTEGER NOT NULL,
    term_id TEXT NOT NULL,
    scout_id INTEGER NOT NULL,
    first_name TEXT,
    last_name TEXT,
    data TEXT,  -- JSON object of passthrough columns
    PRIMARY KEY (extra_id, section_id, term_id, scout_id)
);
CREATE INDEX IF NOT EXISTS idx_flexi_data_scope ON flexi_data(extra_id, section_id, term_id);
CREATE INDEX IF NOT EXISTS idx_flexi_data_scout ON flexi_data(scout_id);

CREATE TABLE IF NOT EXISTS sync_status (
    table_name TEXT PRIMARY KEY,
    last_sync_at TEXT,
    needs_sync INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value TEXT  -- JSON
);

CREATE TABLE IF NOT EXISTS page_cache (
    cache_key TEXT PRIMARY KEY,
    payload TEXT,  -- JSON
    timestamp REAL NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and bring an existing database up to SCHEMA_VERSION."""
    current = _current_version(conn)
    conn.executescript(SCHEMA)
    if current is not None and current < SCHEMA_VERSION:
        migrate_schema(conn, current)
    conn.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    logger.debug("Local store schema at version %d", SCHEMA_VERSION)


def _current_version(conn: sqlite3.Connection) -> "int | None":
    exists = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    ).fetchone()
    if not exists:
        return None
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else None


def migrate_schema(conn: sqlite3.Connection, from_version: int) -> None:
    """Add columns introduced after ``from_version``.

    Older databases predate server_hash/local_snapshot (v3) and the
    archived/soft_deleted flexi flags (v2).
    """
    for table in VERSIONED_TABLES:
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({validate_table_name(table)})")}
        for column in VERSION_COLUMNS:
            if column in existing:
                continue
            col_type = "INTEGER" if column in BOOLEAN_COLUMNS or column.endswith("version") else "TEXT"
            logger.info("Migrating %s: adding %s", table, column)
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")

    existing = {row[1] for row in conn.execute("PRAGMA table_info(flexi_lists)")}
    for column in ("archived", "soft_deleted"):
        if column not in existing:
            logger.info("Migrating flexi_lists: adding %s", column)
            conn.execute(f"ALTER TABLE flexi_lists ADD COLUMN {column} INTEGER DEFAULT 0")
    logger.info("Migrated local store schema from v%d to v%d", from_version, SCHEMA_VERSION)
