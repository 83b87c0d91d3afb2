"""Upstream endpoint wrappers and payload normalisation."""

import json

import pytest

from viking_sync.api import payloads
from viking_sync.errors import RecordValidationError


class TestPayloads:
    def test_user_roles_keyed_by_index(self):
        data = {
            "0": {"sectionid": "11", "sectionname": "Beavers", "section": "beavers", "isDefault": "1"},
            "1": {"section_id": 12, "name": "Cubs"},
            "2": {"sectionname": "Fallback"},
            "_meta": {"ignored": True},
        }

        sections = payloads.normalize_user_roles(data)

        assert [s["section_id"] for s in sections] == [11, 12, 2]
        assert sections[0]["is_default"] is True
        assert sections[0]["section_type"] == "beavers"
        assert sections[1]["name"] == "Cubs"

    def test_user_roles_invalid_id_filtered(self):
        sections = payloads.normalize_user_roles({"0": {"sectionid": "abc", "sectionname": "Bad"}})

        assert sections == []

    def test_user_roles_non_object(self):
        assert payloads.normalize_user_roles("nonsense") == []

    def test_terms_skip_metadata_keys(self):
        data = {
            "11": [{"termid": "T1", "name": "Summer"}],
            "_rateLimitInfo": {"remaining": 100},
            "12": "not a list",
        }

        grouped = payloads.normalize_terms(data)

        assert list(grouped) == [11]
        assert grouped[11][0]["section_id"] == 11

    def test_members_grid(self):
        data = {
            "data": {
                "members": [
                    {"member_id": "5", "firstname": "Ada", "lastname": "Lovelace", "patrol_id": "-2", "age": 34},
                    {"firstname": "No id"},
                ]
            }
        }

        members = payloads.normalize_members(data, section_id=11)

        assert len(members) == 1
        member = members[0]
        assert member["scout_id"] == 5
        assert member["section_id"] == 11
        assert member["first_name"] == "Ada"
        assert member["person_type"] == "Leaders"
        assert member["age"] == "34"
        assert "member_id" not in member

    def test_items_unwrap(self):
        assert payloads.items_of({"items": [1, 2]}) == [1, 2]
        assert payloads.items_of([3]) == [3]
        assert payloads.items_of({"other": []}) == []

    def test_startup_globals(self):
        info = payloads.normalize_startup({"globals": {"userid": 9, "firstname": "Sam", "lastname": "Lee"}})

        assert info["user_id"] == 9
        assert info["first_name"] == "Sam"
        assert payloads.normalize_startup({}) == {}

    def test_flexi_structure_strips_rate_info(self):
        body = payloads.normalize_flexi_structure({"name": "Badges", "_rateLimitInfo": {}}, "X1")

        assert body == {"name": "Badges", "extra_id": "X1"}
        assert payloads.normalize_flexi_structure({}, "X1") is None


class TestOsmClient:
    @pytest.mark.asyncio
    async def test_get_events_adds_section(self, client, mock_api):
        mock_api.route("/get-events", {"items": [{"eventid": "E1", "name": "Camp"}]})

        events = await client.get_events(11, "T1")

        assert events == [{"eventid": "E1", "name": "Camp", "section_id": 11}]
        request = mock_api.calls[0]
        assert request.url.params["sectionid"] == "11"
        assert request.url.params["termid"] == "T1"
        assert request.headers["authorization"] == "Bearer token-abc"

    @pytest.mark.asyncio
    async def test_members_grid_is_post(self, client, mock_api):
        mock_api.route("/get-members-grid", {"data": {"members": [{"scoutid": 5, "firstname": "Ada"}]}})

        members = await client.get_members_grid(11, "T1")

        request = mock_api.calls[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"section_id": 11, "term_id": "T1"}
        assert members[0]["scout_id"] == 5

    @pytest.mark.asyncio
    async def test_terms(self, client, mock_api):
        mock_api.route("/get-terms", {"11": [{"termid": "T1"}], "_x": []})

        terms = await client.get_terms()

        assert list(terms) == [11]

    @pytest.mark.asyncio
    async def test_shared_attendance_defaults(self, client, mock_api):
        mock_api.route("/get-shared-event-attendance", "unexpected")

        body = await client.get_shared_event_attendance("E1", 11)

        assert body == {"combined_attendance": [], "summary": {}, "sections": []}

    @pytest.mark.asyncio
    async def test_flexi_records_tagged_with_section(self, client, mock_api):
        mock_api.route("/get-flexi-records", {"items": [{"extraid": "X1", "name": "Badges"}, "junk"]})

        records = await client.get_flexi_records(11)

        assert records == [{"extraid": "X1", "name": "Badges", "section_id": 11}]
        assert mock_api.calls[0].url.params["archived"] == "n"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("column", ["name", "f_", "f_1a", "1"])
    async def test_update_flexi_rejects_bad_column(self, client, mock_api, column):
        with pytest.raises(RecordValidationError):
            await client.update_flexi_record(11, 5, "X1", column, "Yes", "T1", "cubs")

        assert mock_api.calls == []

    @pytest.mark.asyncio
    async def test_update_flexi_posts_cell(self, client, mock_api):
        mock_api.route("/update-flexi-record", {"ok": True})

        await client.update_flexi_record(11, 5, "X1", "f_3", "Yes", "T1", "cubs")

        body = json.loads(mock_api.calls[0].content)
        assert body["columnid"] == "f_3"
        assert body["scoutid"] == 5
        assert body["section"] == "cubs"

    @pytest.mark.asyncio
    async def test_health_uses_probe(self, client, mock_api):
        mock_api.route("/health", {"status": "ok"})

        result = await client.health()

        assert result["healthy"] is True
        assert "authorization" not in mock_api.calls[0].headers
