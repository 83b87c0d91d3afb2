"""Member merge across sections."""

import itertools

import pytest

from viking_sync.storage import SQLiteStore
from viking_sync.storage.merge import deep_merge, merge_member_content

SECTION_PAYLOADS = {
    1: {
        "scoutid": 5,
        "sectionid": 1,
        "firstname": "Ada",
        "lastname": "Lovelace",
        "patrol": "Red",
        "contact_groups": {"primary": {"phone": "0123"}},
        "custom_data": {"medical": {"allergy": "nuts"}},
    },
    2: {
        "scoutid": 5,
        "sectionid": 2,
        "firstname": "Ada",
        "lastname": "Lovelace",
        "patrol": "Blue",
        "contact_groups": {"primary": {"email": "ada@example.test"}},
        "custom_data": {"consents": {"photos": "yes"}},
    },
    3: {
        "scoutid": 5,
        "sectionid": 3,
        "firstname": "Ada",
        "lastname": "Lovelace",
        "dob": "2014-03-01",
        "flattened_fields": {"badge": "gold"},
    },
}


class TestDeepMerge:
    def test_nested_keys_union(self):
        assert deep_merge({"a": {"x": 1}}, {"a": {"y": 2}}) == {"a": {"x": 1, "y": 2}}

    def test_newer_wins_on_collision(self):
        assert deep_merge({"a": 1}, {"a": 2}) == {"a": 2}

    def test_none_does_not_erase(self):
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_inputs_not_mutated(self):
        base = {"a": {"x": 1}}
        deep_merge(base, {"a": {"y": 2}})
        assert base == {"a": {"x": 1}}


class TestMergeMemberContent:
    def test_first_ingest_copies(self):
        incoming = {"scout_id": 5, "first_name": "Ada"}
        assert merge_member_content(None, incoming) == incoming

    def test_scalars_take_newer_non_null(self):
        merged = merge_member_content(
            {"scout_id": 5, "first_name": "Ada", "age": "10"},
            {"scout_id": 5, "first_name": "Ada", "age": None},
        )
        assert merged["age"] == "10"


class TestIngestOrder:
    @pytest.mark.parametrize("order", list(itertools.permutations([1, 2, 3])))
    def test_order_does_not_change_core_member(self, tmp_path, order):
        store = SQLiteStore(tmp_path / f"order_{'_'.join(map(str, order))}.db", now_fn=lambda: "2024-07-01")
        store.initialize()
        for section_id in order:
            store.save_members([section_id], [SECTION_PAYLOADS[section_id]])

        member = store.get_member(5)

        assert member.contact_groups == {"primary": {"phone": "0123", "email": "ada@example.test"}}
        assert member.custom_data == {"medical": {"allergy": "nuts"}, "consents": {"photos": "yes"}}
        assert member.flattened_fields == {"badge": "gold"}
        assert member.date_of_birth == "2014-03-01"
        assert [s.section_id for s in member.sections] == [1, 2, 3]
        assert {s.section_id: s.patrol for s in member.sections}[2] == "Blue"

    def test_reingest_is_idempotent(self, store):
        for section_id in (1, 2, 1, 2):
            store.save_members([section_id], [SECTION_PAYLOADS[section_id]])
        before = store.get_member(5)

        store.save_members([1], [SECTION_PAYLOADS[1]])

        assert store.get_member(5) == before
