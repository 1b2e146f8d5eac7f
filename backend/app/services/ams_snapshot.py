"""Typed view of the AMS section of a Bambu Lab MQTT report."""

from dataclasses import dataclass, replace
from enum import Enum


# Zero-value sentinels reported for trays without a readable RFID tag
ZERO_TRAY_UUID = "00000000000000000000000000000000"
ZERO_COLOR = "00000000"

# PETG Translucent reports a fully transparent black; Spoolman's catalog lists it as translucent white
TRANSLUCENT_MATERIAL = "PETG Translucent"
TRANSLUCENT_WHITE = "FFFFFF00"

# A tray that only reports its id (and maybe a state flag) is not loaded
MIN_POPULATED_ATTRIBUTES = 4


class SlotKind(str, Enum):
    EMPTY = "empty"  # nothing loaded or no usable data
    FOREIGN = "foreign"  # loaded, but without an identity tag (third-party reel)
    OWN_BRAND = "own_brand"  # Bambu Lab reel with a tray UUID


@dataclass(frozen=True)
class AMSSlot:
    """One tray of an AMS unit."""

    ams_id: int  # 0-3 for regular AMS units
    tray_id: int  # 0-3
    kind: SlotKind
    tray_type: str = ""  # PLA, PETG, PLA-S, ...
    tray_sub_brands: str = ""  # Full name like "PLA Basic", "Support for PLA"
    tray_color: str = ""  # RRGGBBAA
    remain: int = 0  # Remaining percentage
    tray_weight: int = 0  # Net filament weight in grams
    tray_uuid: str = ""  # Reel identity tag
    tag_uid: str = ""  # RFID chip UID (differs between readers, not used for matching)
    tray_info_idx: str = ""  # Bambu filament preset ID like "GFA00"

    @property
    def label(self) -> str:
        """Slot label as printed on the AMS, e.g. 'A0' for the first tray of the first unit."""
        return f"{chr(ord('A') + self.ams_id)}{self.tray_id}"

    @property
    def color_hex(self) -> str:
        """RGB part of the tray color (alpha dropped)."""
        return self.tray_color[:6]

    @property
    def remaining_weight(self) -> float:
        """Remaining filament in grams implied by the AMS estimate."""
        return (self.remain / 100.0) * self.tray_weight


@dataclass(frozen=True)
class AMSUnit:
    """One AMS unit with its ambient readings and trays."""

    id: int
    humidity: str
    temp: str
    slots: tuple[AMSSlot, ...]

    @property
    def letter(self) -> str:
        return chr(ord("A") + self.id)

    @property
    def has_ambient_readings(self) -> bool:
        return self.humidity != "" and self.temp != ""


@dataclass(frozen=True)
class AMSSnapshot:
    """Point-in-time AMS reading of one printer."""

    units: tuple[AMSUnit, ...]

    @property
    def is_valid(self) -> bool:
        """A snapshot without humidity/temperature is a partial report and not reconciled."""
        return bool(self.units) and all(unit.has_ambient_readings for unit in self.units)

    @property
    def slots(self) -> list[AMSSlot]:
        return [slot for unit in self.units for slot in unit.slots]


def _to_int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def is_zero(value: str) -> bool:
    """Check whether an identifier is empty or consists of zeros only."""
    return not value or value == "0" * len(value)


def classify_tray(tray: dict) -> SlotKind:
    """Classify a raw tray dict from the MQTT report."""
    populated = sum(1 for value in tray.values() if value not in (None, ""))
    if populated < MIN_POPULATED_ATTRIBUTES:
        return SlotKind.EMPTY

    tray_uuid = _text(tray.get("tray_uuid"))
    tray_color = _text(tray.get("tray_color"))
    if is_zero(tray_uuid) and is_zero(tray_color):
        return SlotKind.EMPTY

    if is_zero(tray_uuid) or not _text(tray.get("tray_sub_brands")):
        return SlotKind.FOREIGN

    return SlotKind.OWN_BRAND


def parse_tray(ams_id: int, tray: dict) -> AMSSlot:
    """Parse a raw tray dict into an AMSSlot."""
    kind = classify_tray(tray)
    tray_id = _to_int(tray.get("id"))
    if kind == SlotKind.EMPTY:
        return AMSSlot(ams_id=ams_id, tray_id=tray_id, kind=kind)

    return AMSSlot(
        ams_id=ams_id,
        tray_id=tray_id,
        kind=kind,
        tray_type=_text(tray.get("tray_type")),
        tray_sub_brands=_text(tray.get("tray_sub_brands")),
        tray_color=_text(tray.get("tray_color")),
        remain=_to_int(tray.get("remain"), default=-1),
        tray_weight=_to_int(tray.get("tray_weight")),
        tray_uuid=_text(tray.get("tray_uuid")),
        tag_uid=_text(tray.get("tag_uid")),
        tray_info_idx=_text(tray.get("tray_info_idx")),
    )


def parse_ams_report(payload: dict) -> AMSSnapshot | None:
    """Extract the AMS snapshot from an MQTT report.

    Args:
        payload: Decoded JSON report from device/<serial>/report

    Returns:
        AMSSnapshot, or None when the report carries no print.ams.ams array.
    """
    print_data = payload.get("print")
    if not isinstance(print_data, dict):
        return None
    ams_data = print_data.get("ams")
    if not isinstance(ams_data, dict):
        return None
    units_data = ams_data.get("ams")
    if not isinstance(units_data, list):
        return None

    units = []
    for unit in units_data:
        if not isinstance(unit, dict):
            continue
        ams_id = _to_int(unit.get("id"))
        trays = unit.get("tray")
        slots = tuple(parse_tray(ams_id, tray) for tray in trays if isinstance(tray, dict)) if isinstance(trays, list) else ()
        units.append(
            AMSUnit(
                id=ams_id,
                humidity=_text(unit.get("humidity")),
                temp=_text(unit.get("temp")),
                slots=slots,
            )
        )
    return AMSSnapshot(units=tuple(units))


def normalize_slot(slot: AMSSlot) -> AMSSlot:
    """Clamp the remaining percentage and remap known special-case colors."""
    if slot.kind == SlotKind.EMPTY:
        return slot

    changes = {}
    if slot.remain < 0:
        changes["remain"] = 0
    if slot.tray_sub_brands == TRANSLUCENT_MATERIAL and slot.tray_color == ZERO_COLOR:
        changes["tray_color"] = TRANSLUCENT_WHITE
    return replace(slot, **changes) if changes else slot


def normalize_snapshot(snapshot: AMSSnapshot) -> AMSSnapshot:
    """Apply normalize_slot to every slot of the snapshot."""
    return AMSSnapshot(
        units=tuple(
            replace(unit, slots=tuple(normalize_slot(slot) for slot in unit.slots))
            for unit in snapshot.units
        )
    )
