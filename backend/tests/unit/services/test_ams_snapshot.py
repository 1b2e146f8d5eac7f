"""Unit tests for AMS report parsing and slot classification."""

import pytest

from backend.app.services.ams_snapshot import (
    TRANSLUCENT_WHITE,
    AMSSnapshot,
    SlotKind,
    classify_tray,
    normalize_snapshot,
    parse_ams_report,
    parse_tray,
)


class TestClassifyTray:
    """Tests for EMPTY / FOREIGN / OWN_BRAND classification."""

    def test_own_brand_reel(self, tray_factory):
        assert classify_tray(tray_factory()) == SlotKind.OWN_BRAND

    def test_id_only_tray_is_empty(self):
        assert classify_tray({"id": "1"}) == SlotKind.EMPTY

    def test_sparse_tray_is_empty(self):
        """Fewer than four populated attributes means nothing is loaded."""
        assert classify_tray({"id": "1", "state": 11, "tray_type": ""}) == SlotKind.EMPTY

    def test_zero_uuid_and_zero_color_is_empty(self, tray_factory):
        tray = tray_factory(tray_uuid="0" * 32, tray_color="00000000")
        assert classify_tray(tray) == SlotKind.EMPTY

    def test_zero_uuid_with_color_is_foreign(self, tray_factory):
        tray = tray_factory(tray_uuid="0" * 32, tray_sub_brands="", tray_color="FF0000FF")
        assert classify_tray(tray) == SlotKind.FOREIGN

    def test_missing_sub_brands_is_foreign(self, tray_factory):
        """Third-party reels with a generic preset report no sub brand."""
        assert classify_tray(tray_factory(tray_sub_brands="")) == SlotKind.FOREIGN


class TestParseAmsReport:
    """Tests for extracting the AMS snapshot from MQTT reports."""

    def test_report_without_ams_returns_none(self):
        assert parse_ams_report({"print": {"gcode_state": "IDLE"}}) is None

    def test_non_print_report_returns_none(self):
        assert parse_ams_report({"info": {"command": "get_version"}}) is None

    def test_ams_without_unit_list_returns_none(self):
        assert parse_ams_report({"print": {"ams": {"tray_now": "255"}}}) is None

    def test_parses_units_and_slots(self, report_factory):
        snapshot = parse_ams_report(report_factory())

        assert len(snapshot.units) == 1
        unit = snapshot.units[0]
        assert unit.letter == "A"
        assert unit.humidity == "4"
        assert unit.temp == "24.5"
        assert [slot.label for slot in unit.slots] == ["A0", "A1", "A2", "A3"]
        assert [slot.kind for slot in unit.slots] == [
            SlotKind.OWN_BRAND,
            SlotKind.EMPTY,
            SlotKind.EMPTY,
            SlotKind.EMPTY,
        ]

    def test_own_brand_slot_fields(self, report_factory):
        slot = parse_ams_report(report_factory()).slots[0]

        assert slot.tray_sub_brands == "PLA Basic"
        assert slot.tray_type == "PLA"
        assert slot.remain == 80
        assert slot.tray_weight == 1000
        assert slot.color_hex == "000000"
        assert slot.remaining_weight == 800

    def test_second_unit_gets_letter_b(self, tray_factory):
        report = {
            "print": {
                "ams": {
                    "ams": [
                        {"id": "0", "humidity": "4", "temp": "24", "tray": [{"id": "0"}]},
                        {"id": "1", "humidity": "3", "temp": "25", "tray": [tray_factory(id="2")]},
                    ]
                }
            }
        }
        snapshot = parse_ams_report(report)
        assert snapshot.units[1].letter == "B"
        assert snapshot.units[1].slots[0].label == "B2"

    def test_identical_reports_produce_equal_snapshots(self, report_factory):
        assert parse_ams_report(report_factory()) == parse_ams_report(report_factory())


class TestSnapshotValidity:
    def test_valid_with_readings(self, report_factory):
        assert parse_ams_report(report_factory()).is_valid is True

    @pytest.mark.parametrize("humidity,temp", [("", "24.5"), ("4", ""), ("", "")])
    def test_missing_ambient_readings_invalid(self, report_factory, humidity, temp):
        assert parse_ams_report(report_factory(humidity=humidity, temp=temp)).is_valid is False

    def test_no_units_invalid(self):
        assert AMSSnapshot(units=()).is_valid is False


class TestNormalize:
    def test_parse_keeps_raw_remain(self, tray_factory):
        assert parse_tray(0, tray_factory(remain=-1)).remain == -1

    def test_missing_remain_parsed_as_unknown(self, tray_factory):
        tray = tray_factory()
        del tray["remain"]
        assert parse_tray(0, tray).remain == -1

    def test_unknown_remain_clamped_to_zero(self, report_factory, tray_factory):
        snapshot = parse_ams_report(report_factory(trays=[tray_factory(remain=-1)]))
        assert normalize_snapshot(snapshot).slots[0].remain == 0

    def test_petg_translucent_black_remapped(self, report_factory, tray_factory):
        tray = tray_factory(tray_sub_brands="PETG Translucent", tray_type="PETG", tray_color="00000000")
        snapshot = normalize_snapshot(parse_ams_report(report_factory(trays=[tray])))
        assert snapshot.slots[0].tray_color == TRANSLUCENT_WHITE
        assert snapshot.slots[0].color_hex == "FFFFFF"

    def test_other_colors_untouched(self, report_factory):
        snapshot = parse_ams_report(report_factory())
        assert normalize_snapshot(snapshot) == snapshot
