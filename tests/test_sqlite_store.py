"""SQLite backend specifics: persistence, schema and transactions."""

import sqlite3

import pytest

from viking_sync.errors import StorageError
from viking_sync.storage import SQLiteStore
from viking_sync.storage.schema import SCHEMA, SCHEMA_VERSION, validate_table_name


class TestSQLiteStore:
    def test_creates_database_file(self, tmp_path):
        path = tmp_path / "nested" / "app_store.db"
        store = SQLiteStore(path)
        store.initialize()

        assert path.exists()
        assert store.backend_name == "sqlite"
        assert store.is_initialized

    def test_schema_version_recorded(self, sqlite_store):
        conn = sqlite3.connect(sqlite_store.db_path)
        try:
            version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
        finally:
            conn.close()
        assert version == SCHEMA_VERSION

    def test_schema_executes_cleanly(self):
        conn = sqlite3.connect(":memory:")
        try:
            conn.executescript(SCHEMA)
            columns = [row[1] for row in conn.execute("PRAGMA table_info(attendance)")]
            pk = [row[1] for row in sorted(conn.execute("PRAGMA table_info(attendance)"), key=lambda r: r[5]) if row[5]]
        finally:
            conn.close()

        assert "local_snapshot" in columns
        assert pk == ["event_id", "scout_id", "is_shared_section"]

    def test_versioned_attendance_round_trip(self, sqlite_store):
        sqlite_store.save_attendance("E1", [{"scoutid": 5, "firstname": "Ada", "attending": "Yes"}])

        rows = sqlite_store.get_attendance("E1")
        assert [r.scout_id for r in rows] == [5]

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "app_store.db"
        first = SQLiteStore(path)
        first.initialize()
        first.save_sections([{"section_id": 1, "name": "Beavers", "permissions": {"events": 20}}])
        first.close()

        second = SQLiteStore(path)
        second.initialize()

        sections = second.get_sections()
        assert [s.name for s in sections] == ["Beavers"]
        assert sections[0].permissions == {"events": 20}

    def test_initialize_is_idempotent(self, sqlite_store):
        sqlite_store.save_sections([{"section_id": 1, "name": "Beavers"}])
        sqlite_store.initialize()

        assert len(sqlite_store.get_sections()) == 1

    def test_unopenable_path_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file in the way")
        store = SQLiteStore(blocker / "app_store.db")

        with pytest.raises(StorageError):
            store.initialize()
        assert not store.is_initialized

    def test_failed_write_rolls_back(self, sqlite_store):
        sqlite_store.save_sections([{"section_id": 1, "name": "Beavers"}])

        # Membership without a core member violates the foreign key
        with pytest.raises(StorageError):
            with sqlite_store._write("bad write") as tx:
                tx.delete("sections")
                tx.upsert("member_sections", [{"scout_id": 999, "section_id": 1}])

        assert [s.section_id for s in sqlite_store.get_sections()] == [1]

    def test_deleting_member_cascades_memberships(self, sqlite_store):
        sqlite_store.save_members([1], [{"scoutid": 5, "firstname": "Ada"}])

        with sqlite_store._write("delete member") as tx:
            tx.delete("core_members", scout_id=5)
            remaining = tx.count("member_sections")

        assert remaining == 0

    def test_member_update_keeps_memberships(self, sqlite_store):
        sqlite_store.save_members([1], [{"scoutid": 5, "firstname": "Ada"}])
        sqlite_store.save_members([1], [{"scoutid": 5, "firstname": "Ada", "lastname": "Lovelace"}])

        member = sqlite_store.get_member(5)
        assert member.last_name == "Lovelace"
        assert [s.section_id for s in member.sections] == [1]

    def test_invalid_table_name_rejected(self):
        with pytest.raises(ValueError):
            validate_table_name("sections; DROP TABLE events")

    def test_invalid_column_rejected(self, sqlite_store):
        with pytest.raises(StorageError):
            with sqlite_store._write("bad column") as tx:
                tx.upsert("sections", [{"section_id": 1, "name": "x", "bogus": 1}])
