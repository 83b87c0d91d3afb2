"""Mutations behind the auth write-guard."""

import json

import pytest

from viking_sync.errors import AuthExpiredError, NotFoundError, RecordValidationError, UnknownError


@pytest.fixture
def seeded(logged_in_app):
    store = logged_in_app.store
    store.save_sections([{"section_id": 2, "name": "1st Walton Cubs", "section_type": "cubs"}])
    store.save_events(2, [{"eventid": "E1", "name": "Camp Weekend", "startdate_g": "2024-07-20", "termid": "T2"}])
    store.save_attendance("E1", [{"scoutid": 5, "firstname": "Ada", "lastname": "Lovelace", "attending": "Yes"}])
    return logged_in_app


class TestFlexiWrites:
    @pytest.mark.asyncio
    async def test_update_posts_then_mirrors_locally(self, seeded, mock_api):
        mock_api.route("/update-flexi-record", {"ok": True})

        row = await seeded.writes.update_flexi_record(2, 5, "X1", "f_3", "Signed in", "T2")

        body = json.loads(mock_api.calls[0].content)
        assert body["section"] == "cubs"
        assert body["value"] == "Signed in"
        assert row.data == {"f_3": "Signed in"}
        assert seeded.store.get_flexi_data("X1", 2, "T2")[0].data["f_3"] == "Signed in"

    @pytest.mark.asyncio
    async def test_invalid_column_writes_nothing(self, seeded, mock_api):
        with pytest.raises(RecordValidationError):
            await seeded.writes.update_flexi_record(2, 5, "X1", "firstname", "Bob", "T2")

        assert mock_api.calls == []
        assert seeded.store.get_flexi_data("X1", 2, "T2") == []

    @pytest.mark.asyncio
    async def test_upstream_failure_writes_nothing_locally(self, seeded, mock_api):
        mock_api.route("/update-flexi-record", (400, {"error": "column locked"}))

        with pytest.raises(UnknownError):
            await seeded.writes.update_flexi_record(2, 5, "X1", "f_3", "Signed in", "T2")

        assert seeded.store.get_flexi_data("X1", 2, "T2") == []

    @pytest.mark.asyncio
    async def test_signed_out_rejected(self, app, mock_api):
        with pytest.raises(AuthExpiredError):
            await app.writes.update_flexi_record(2, 5, "X1", "f_3", "Signed in", "T2", "cubs")

        assert mock_api.calls == []


class TestAttendanceEdits:
    def test_edit_is_versioned(self, seeded):
        edited = seeded.writes.record_attendance_change("E1", 5, attending="No", notes="Poorly")

        assert edited.attending == "No"
        assert edited.versions.is_locally_modified is True
        assert edited.versions.local_version == 2
        assert [a.scout_id for a in seeded.store.get_locally_modified("attendance")] == [5]

    def test_unknown_field_rejected(self, seeded):
        with pytest.raises(ValueError):
            seeded.writes.record_attendance_change("E1", 5, first_name="Eve")

    def test_missing_row(self, seeded):
        with pytest.raises(NotFoundError):
            seeded.writes.record_attendance_change("E1", 99, attending="No")

    def test_offline_with_cache_rejected(self, seeded):
        seeded.auth.on_auth_failure(401, "Unauthorized")

        with pytest.raises(AuthExpiredError):
            seeded.writes.record_attendance_change("E1", 5, attending="No")

        assert seeded.store.get_attendance("E1")[0].attending == "Yes"
