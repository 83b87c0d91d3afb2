"""Tests for the schema validation boundary."""

from unittest.mock import MagicMock

import pytest

from viking_sync.errors import RecordValidationError
from viking_sync.types import Event, PersonType, RecordKind
from viking_sync.validation import known_field_names, parse, parse_array, SectionSchema


class TestIdentifierCanonicalisation:
    def test_numeric_string_section_id_becomes_int(self):
        section = parse(RecordKind.SECTION, {"sectionid": "42", "sectionname": "Cubs"})
        assert section.section_id == 42
        assert section.name == "Cubs"

    def test_event_id_becomes_string(self):
        event = parse(RecordKind.EVENT, {"eventid": 1001, "sectionid": 1, "name": "Camp"})
        assert event.event_id == "1001"
        assert isinstance(event.event_id, str)

    def test_integral_float_ids_are_accepted(self):
        term = parse(RecordKind.TERM, {"termid": 7.0, "sectionid": 1.0, "name": "Autumn"})
        assert term.term_id == "7"
        assert term.section_id == 1

    def test_boolean_ids_are_rejected(self):
        with pytest.raises(RecordValidationError) as exc_info:
            parse(RecordKind.SECTION, {"section_id": True, "name": "Cubs"})
        assert exc_info.value.issues
        assert exc_info.value.issues[0]["loc"] == "section_id"

    def test_non_numeric_section_id_is_rejected(self):
        with pytest.raises(RecordValidationError):
            parse(RecordKind.SECTION, {"section_id": "abc", "name": "Cubs"})

    def test_blank_name_is_rejected(self):
        with pytest.raises(RecordValidationError):
            parse(RecordKind.SECTION, {"section_id": 1, "name": "   "})

    def test_non_object_payload_is_rejected(self):
        with pytest.raises(RecordValidationError) as exc_info:
            parse(RecordKind.EVENT, ["not", "an", "object"])
        assert exc_info.value.kind.value == "validation"


class TestFieldAliases:
    def test_section_type_aliases(self):
        for alias in ("type", "sectiontype", "section"):
            section = parse(RecordKind.SECTION, {"section_id": 1, "name": "Cubs", alias: "cubs"})
            assert section.section_type == "cubs"

    def test_is_default_flag_from_string(self):
        section = parse(RecordKind.SECTION, {"section_id": 1, "name": "Cubs", "isDefault": "1"})
        assert section.is_default is True

    def test_event_prefers_iso_start_date(self):
        event = parse(
            RecordKind.EVENT,
            {
                "eventid": "1",
                "sectionid": 1,
                "name": "Camp",
                "startdate_g": "2024-07-10",
                "startdate": "10/07/2024",
            },
        )
        assert event.start_date == "2024-07-10"

    def test_event_accepts_date_field(self):
        event = parse(RecordKind.EVENT, {"eventid": "1", "sectionid": 1, "name": "Camp", "date": "2024-07-10"})
        assert event.start_date == "2024-07-10"

    def test_attendance_scout_id_aliases(self):
        for alias in ("scoutid", "member_id"):
            record = parse(RecordKind.ATTENDANCE, {"eventid": "1", alias: "55"})
            assert record.scout_id == 55

    def test_shared_attendance_requires_section(self):
        with pytest.raises(RecordValidationError):
            parse(RecordKind.SHARED_ATTENDANCE, {"event_id": "1", "scout_id": 5})

        record = parse(RecordKind.SHARED_ATTENDANCE, {"event_id": "1", "scout_id": 5, "sectionid": "9"})
        assert record.section_id == 9
        assert record.is_shared_section is True

    def test_flexi_list_extraid_alias(self):
        flexi = parse(RecordKind.FLEXI_LIST, {"extraid": 12, "sectionid": 1, "name": "Viking Event Mgmt"})
        assert flexi.extra_id == "12"
        assert flexi.archived is False


class TestUnknownFields:
    def test_unknown_fields_dropped_from_events(self):
        event = parse(
            RecordKind.EVENT,
            {"eventid": "1", "sectionid": 1, "name": "Camp", "mystery": "x"},
        )
        assert isinstance(event, Event)
        assert not hasattr(event, "mystery")

    def test_member_unknown_fields_kept_in_flattened_fields(self):
        member = parse(
            RecordKind.MEMBER,
            {"scoutid": 5, "firstname": "Ada", "lastname": "Lovelace", "_filterstring": "ada lovelace"},
        )
        assert member.flattened_fields["_filterstring"] == "ada lovelace"

    def test_member_photo_flag_from_pic(self):
        member = parse(RecordKind.MEMBER, {"scoutid": 5, "pic": True})
        assert member.has_photo is True

    def test_member_photo_flag_from_guid(self):
        member = parse(RecordKind.MEMBER, {"scoutid": 5, "photo_guid": "abc"})
        assert member.has_photo is True

    def test_member_grid_row_becomes_membership(self):
        member = parse(
            RecordKind.MEMBER,
            {"scoutid": 5, "sectionid": 1, "patrol_id": -2, "patrol": "Leaders"},
        )
        assert len(member.sections) == 1
        assert member.sections[0].section_id == 1
        assert member.sections[0].person_type == PersonType.LEADERS.value

    def test_empty_list_maps_become_dicts(self):
        member = parse(RecordKind.MEMBER, {"scoutid": 5, "contact_groups": [], "custom_data": None})
        assert member.contact_groups == {}
        assert member.custom_data == {}

    def test_flexi_data_columns_are_passthrough(self):
        row = parse(
            RecordKind.FLEXI_DATA,
            {"extraid": 3, "sectionid": 1, "termid": 2, "scoutid": 5, "f_1": "yes", "f_2": "no"},
        )
        assert row.data == {"f_1": "yes", "f_2": "no"}

    def test_known_field_names_include_aliases(self):
        names = known_field_names(SectionSchema)
        assert {"section_id", "sectionid", "sectionname", "isDefault"} <= names


class TestParseArray:
    def test_partial_success_with_indexed_errors(self):
        result = parse_array(
            RecordKind.EVENT,
            [
                {"eventid": "1", "sectionid": 1, "name": "Camp"},
                {"eventid": "2", "sectionid": "x", "name": "Hike"},
                {"eventid": "3", "sectionid": 1, "name": "Swim"},
                "garbage",
            ],
        )
        assert [e.event_id for e in result.valid] == ["1", "3"]
        assert [issue.index for issue in result.errors] == [1, 3]
        assert not result.ok

    def test_dropped_fields_reported_once(self):
        reporter = MagicMock()
        result = parse_array(
            RecordKind.TERM,
            [
                {"termid": 1, "sectionid": 1, "name": "A", "junk": 1},
                {"termid": 2, "sectionid": 1, "name": "B", "junk": 2, "other": 3},
            ],
            reporter=reporter,
        )
        assert result.dropped_fields == ["junk", "other"]
        assert reporter.capture_message.call_count == 1
        assert reporter.capture_message.call_args.kwargs["context"]["fields"] == ["junk", "other"]

    def test_none_is_empty(self):
        result = parse_array(RecordKind.SECTION, None)
        assert result.valid == []
        assert result.ok

    def test_records_can_be_revalidated(self):
        event = parse(RecordKind.EVENT, {"eventid": "1", "sectionid": 1, "name": "Camp"})
        again = parse(RecordKind.EVENT, event)
        assert again == event
