"""Shared-event detection across sections."""

from viking_sync.sync import detect_shared_events, group_shared_events, shared_metadata_for
from viking_sync.types import Event


def _event(event_id, section_id, name="Camp Weekend", start="2024-07-20"):
    return Event(event_id=event_id, section_id=section_id, name=name, start_date=start)


class TestGrouping:
    def test_same_name_and_date_across_sections(self):
        groups = group_shared_events([_event("E2", 2), _event("E1", 1), _event("E9", 1, name="Hike")])

        assert list(groups) == [("Camp Weekend", "2024-07-20")]
        assert [e.event_id for e in groups[("Camp Weekend", "2024-07-20")]] == ["E1", "E2"]

    def test_name_matched_exactly(self):
        groups = group_shared_events([_event("E1", 1, name="Camp Weekend"), _event("E2", 2, name="camp weekend ")])

        assert groups == {}

    def test_start_date_matched_exactly(self):
        groups = group_shared_events([_event("E1", 1, start="2024-07-20 09:00:00"), _event("E2", 2)])

        assert groups == {}

    def test_duplicates_within_one_section_are_shared(self):
        groups = group_shared_events([_event("E1", 1), _event("E2", 1)])

        assert [e.event_id for e in groups[("Camp Weekend", "2024-07-20")]] == ["E1", "E2"]

    def test_events_without_dates_skipped(self):
        assert group_shared_events([_event("E1", 1, start=None), _event("E2", 2, start=None)]) == {}


class TestMetadata:
    def test_owner_is_lowest_section(self):
        metadata = shared_metadata_for([_event("E3", 3), _event("E1", 1), _event("E2", 2)])

        assert [m.event_id for m in metadata] == ["E1", "E2", "E3"]
        assert all(m.is_shared for m in metadata)
        assert {m.owner_section_id for m in metadata} == {1}
        assert metadata[0].sections == [1, 2, 3]

    def test_single_section_group_lists_section_once(self):
        metadata = shared_metadata_for([_event("A", 1), _event("B", 1)])

        assert {m.event_id for m in metadata} == {"A", "B"}
        assert all(m.sections == [1] and m.owner_section_id == 1 for m in metadata)


class TestDetectSharedEvents:
    def test_camp_weekend_in_two_sections(self, store):
        store.save_sections([{"section_id": 1, "name": "1st Walton Beavers"}, {"section_id": 2, "name": "1st Walton Cubs"}])
        store.save_events(1, [{"eventid": "E1", "name": "Camp Weekend", "startdate_g": "2024-07-20"}])
        store.save_events(2, [{"eventid": "E2", "name": "Camp Weekend", "startdate_g": "2024-07-20"}])

        saved = detect_shared_events(store)

        assert len(saved) == 2
        for event_id in ("E1", "E2"):
            meta = store.get_shared_event_metadata(event_id)
            assert meta.is_shared is True
            assert set(meta.sections) == {1, 2}

    def test_rerun_leaves_metadata_untouched(self, store):
        store.save_events(1, [{"eventid": "E1", "name": "Camp Weekend", "startdate_g": "2024-07-20"}])
        store.save_events(2, [{"eventid": "E2", "name": "Camp Weekend", "startdate_g": "2024-07-20"}])
        detect_shared_events(store)
        before = store.get_shared_event_metadata("E1")

        detect_shared_events(store)

        assert store.get_shared_event_metadata("E1") == before

    def test_nothing_shared(self, store):
        store.save_events(1, [{"eventid": "E1", "name": "Camp Weekend", "startdate_g": "2024-07-20"}])

        assert detect_shared_events(store) == []
        assert store.get_shared_event_metadata("E1") is None
