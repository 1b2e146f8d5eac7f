"""Unit tests for the slot decision logic."""

import json

import pytest

from backend.app.services.ams_snapshot import parse_tray
from backend.app.services.spool_matcher import (
    SyncAction,
    catalog_key,
    decide,
    find_catalog_entry,
    find_existing_spool,
    find_internal_filament,
    find_mergeable_spool,
    find_tagged_spool,
    is_weight_plausible,
)
from backend.tests.conftest import TRAY_UUID


@pytest.fixture
def slot(tray_factory):
    return parse_tray(0, tray_factory())


class TestFindTaggedSpool:
    def test_matches_json_encoded_tag(self, slot, spool_factory):
        spool = spool_factory(tag=json.dumps(TRAY_UUID))
        assert find_tagged_spool(slot, [spool]) is spool

    def test_matches_plain_tag(self, slot, spool_factory):
        spool = spool_factory(tag=TRAY_UUID)
        assert find_tagged_spool(slot, [spool]) is spool

    def test_other_tag_does_not_match(self, slot, spool_factory):
        assert find_tagged_spool(slot, [spool_factory(tag=json.dumps("FFFF"))]) is None

    def test_first_match_wins(self, slot, spool_factory):
        first = spool_factory(spool_id=1, tag=json.dumps(TRAY_UUID))
        second = spool_factory(spool_id=2, tag=json.dumps(TRAY_UUID))
        assert find_tagged_spool(slot, [first, second]) is first


class TestCatalogLookup:
    def test_underscored_name_matches(self, slot, catalog_entry):
        assert find_catalog_entry(slot, [catalog_entry]) is catalog_entry

    def test_color_must_match(self, slot, catalog_entry):
        catalog_entry["color_hex"] = "FFFFFF"
        assert find_catalog_entry(slot, [catalog_entry]) is None

    def test_color_compare_ignores_case(self, tray_factory, catalog_entry):
        slot = parse_tray(0, tray_factory(tray_color="0A2B3CFF"))
        catalog_entry["color_hex"] = "0a2b3c"
        assert find_catalog_entry(slot, [catalog_entry]) is catalog_entry

    def test_transform_order(self, tray_factory):
        """Lowercased name is tried before the underscored one."""
        slot = parse_tray(0, tray_factory(tray_sub_brands="PLA Matte"))
        underscored = {"id": "bambulab_pla_matte_black", "color_hex": "000000"}
        lowercased = {"id": "bambulab_pla matte_black", "color_hex": "000000"}
        assert find_catalog_entry(slot, [underscored, lowercased]) is lowercased

    def test_first_word_letters_fallback(self, tray_factory):
        slot = parse_tray(0, tray_factory(tray_sub_brands="PETG-HF Basic", tray_type="PETG"))
        entry = {"id": "bambulab_petghf_black", "color_hex": "000000"}
        assert find_catalog_entry(slot, [entry]) is entry

    def test_support_material_uses_type_prefix(self, tray_factory):
        slot = parse_tray(0, tray_factory(tray_sub_brands="Support for PLA", tray_type="PLA-S"))
        assert catalog_key(slot, "support_for_pla") == "bambulab_pla_support_for_pla"

        entry = {"id": "bambulab_pla_support_for_pla_black", "color_hex": "000000"}
        assert find_catalog_entry(slot, [entry]) is entry

    def test_internal_filament_by_external_id(self, catalog_entry):
        filament = {"id": 7, "external_id": "bambulab_pla_basic_black"}
        assert find_internal_filament(catalog_entry, [{"id": 6, "external_id": "x"}, filament]) is filament

    def test_no_internal_filament_without_catalog_entry(self):
        assert find_internal_filament(None, [{"id": 7, "external_id": None}]) is None


class TestWeightPlausibility:
    """Remain 80% of a 1000 g reel expects 800 g, accepted within ±15%."""

    @pytest.mark.parametrize(
        "remaining,expected",
        [(681, True), (800, True), (919, True), (679, False), (921, False)],
    )
    def test_tolerance_window(self, slot, spool_factory, remaining, expected):
        spool = spool_factory(remaining_weight=remaining, used_weight=1000 - remaining)
        assert is_weight_plausible(spool, slot) is expected

    def test_half_reel_window(self, tray_factory, spool_factory):
        slot = parse_tray(0, tray_factory(remain=50))
        assert is_weight_plausible(spool_factory(remaining_weight=425, used_weight=575), slot) is True
        assert is_weight_plausible(spool_factory(remaining_weight=575, used_weight=425), slot) is True
        assert is_weight_plausible(spool_factory(remaining_weight=424, used_weight=576), slot) is False
        assert is_weight_plausible(spool_factory(remaining_weight=576, used_weight=424), slot) is False

    def test_unused_spool_is_plausible(self, slot, spool_factory):
        assert is_weight_plausible(spool_factory(remaining_weight=1000, used_weight=0), slot) is True

    def test_empty_spool_is_plausible(self, slot, spool_factory):
        assert is_weight_plausible(spool_factory(remaining_weight=0, used_weight=1000), slot) is True

    def test_unknown_remaining_weight(self, slot, spool_factory):
        assert is_weight_plausible(spool_factory(remaining_weight=None, used_weight=300), slot) is False


class TestMergeCandidates:
    def test_untagged_matching_spool(self, slot, spool_factory):
        spool = spool_factory()
        assert find_mergeable_spool(slot, [spool]) is spool

    def test_material_compare_ignores_case(self, slot, spool_factory):
        spool = spool_factory(material="pla basic")
        assert find_mergeable_spool(slot, [spool]) is spool

    def test_tagged_spool_is_not_a_candidate(self, slot, spool_factory):
        assert find_mergeable_spool(slot, [spool_factory(tag=json.dumps("FFFF"))]) is None

    def test_wrong_color_is_not_a_candidate(self, slot, spool_factory):
        assert find_mergeable_spool(slot, [spool_factory(color_hex="FF0000")]) is None


class TestLegacyExistingSpool:
    def test_decoded_tag_match(self, slot, spool_factory):
        spool = spool_factory(tag=json.dumps(TRAY_UUID))
        assert find_existing_spool(slot, [spool]) is spool

    def test_material_must_match_exactly(self, slot, spool_factory):
        assert find_existing_spool(slot, [spool_factory(material="pla basic", tag=json.dumps(TRAY_UUID))]) is None

    def test_malformed_tag_ignored(self, slot, spool_factory):
        assert find_existing_spool(slot, [spool_factory(tag='"unterminated')]) is None

    @pytest.mark.parametrize("tag", [TRAY_UUID, "0123456789ABCDEF0123456789ABCDEF", "deadbeef"])
    def test_agrees_with_tagged_lookup(self, tray_factory, spool_factory, tag):
        """Both lookups find the same spool for well-formed JSON tags."""
        slot = parse_tray(0, tray_factory(tray_uuid=tag))
        spools = [spool_factory(spool_id=1, tag=json.dumps("other")), spool_factory(spool_id=2, tag=json.dumps(tag))]
        assert find_existing_spool(slot, spools) is find_tagged_spool(slot, spools)


class TestDecide:
    def test_no_match_anywhere(self, slot):
        decision = decide(slot, [], [], [])
        assert decision.action == SyncAction.NO_ACTION
        assert decision.action.label == "No actions available"

    def test_catalog_only_creates_filament_and_spool(self, slot, catalog_entry):
        decision = decide(slot, [], [catalog_entry], [])
        assert decision.action == SyncAction.CREATE_FILAMENT_AND_SPOOL
        assert decision.catalog_entry is catalog_entry

    def test_internal_filament_creates_spool(self, slot, catalog_entry):
        filament = {"id": 7, "external_id": catalog_entry["id"]}
        decision = decide(slot, [], [catalog_entry], [filament])
        assert decision.action == SyncAction.CREATE_SPOOL
        assert decision.internal_filament is filament

    def test_merge_beats_create(self, slot, spool_factory, catalog_entry):
        filament = {"id": 7, "external_id": catalog_entry["id"]}
        spool = spool_factory()
        decision = decide(slot, [spool], [catalog_entry], [filament])
        assert decision.action == SyncAction.MERGE
        assert decision.mergeable_spool is spool

    def test_tag_match_beats_everything(self, slot, spool_factory, catalog_entry):
        """A tagged spool is updated even if a merge candidate and filament exist."""
        filament = {"id": 7, "external_id": catalog_entry["id"]}
        tagged = spool_factory(spool_id=3, tag=json.dumps(TRAY_UUID), remaining_weight=100, used_weight=900)
        untagged = spool_factory(spool_id=4)
        decision = decide(slot, [untagged, tagged], [catalog_entry], [filament])
        assert decision.action == SyncAction.UPDATE
        assert decision.existing_spool is tagged

    def test_only_merge_and_create_need_confirmation(self):
        assert SyncAction.MERGE.needs_confirmation
        assert SyncAction.CREATE_SPOOL.needs_confirmation
        assert SyncAction.CREATE_FILAMENT_AND_SPOOL.needs_confirmation
        assert not SyncAction.UPDATE.needs_confirmation
        assert not SyncAction.NO_ACTION.needs_confirmation
