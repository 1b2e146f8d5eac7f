"""Match AMS slots against Spoolman spools, filaments and the external catalog.

Everything in here is pure: the reconciler fetches the inventory once per
pass and hands the lists in. Spools, filaments and catalog entries are the
dicts Spoolman returns.

Decision priority, highest first:

    UPDATE > MERGE > CREATE_SPOOL > CREATE_FILAMENT_AND_SPOOL > NO_ACTION
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from backend.app.services.ams_snapshot import AMSSlot
from backend.app.services.spoolman import strip_tag

CATALOG_VENDOR_PREFIX = "bambulab"

# Allowed deviation between Spoolman's remaining weight and the AMS estimate for a merge
MERGE_TOLERANCE = 0.15


class SyncAction(str, Enum):
    UPDATE = "update"
    MERGE = "merge"
    CREATE_SPOOL = "create_spool"
    CREATE_FILAMENT_AND_SPOOL = "create_filament_and_spool"
    NO_ACTION = "no_action"

    @property
    def label(self) -> str:
        return _ACTION_LABELS[self]

    @property
    def needs_confirmation(self) -> bool:
        """Inventory-shape changes that wait for the operator in manual mode."""
        return self in (SyncAction.MERGE, SyncAction.CREATE_SPOOL, SyncAction.CREATE_FILAMENT_AND_SPOOL)


_ACTION_LABELS = {
    SyncAction.UPDATE: "Update Spool",
    SyncAction.MERGE: "Merge Spool",
    SyncAction.CREATE_SPOOL: "Create Spool",
    SyncAction.CREATE_FILAMENT_AND_SPOOL: "Create Filament & Spool",
    SyncAction.NO_ACTION: "No actions available",
}


@dataclass(frozen=True)
class Decision:
    """What to do with one slot, plus everything resolved on the way."""

    action: SyncAction
    existing_spool: dict | None = None
    mergeable_spool: dict | None = None
    internal_filament: dict | None = None
    catalog_entry: dict | None = None


# Name transforms tried in order when looking up a catalog entry
def _lowercase(material: str) -> str:
    return material.lower()


def _underscored(material: str) -> str:
    return re.sub(r"\s+", "_", material).lower()


def _first_word_letters(material: str) -> str:
    first = material.split(" ")[0]
    return re.sub(r"[^A-Za-z]", "", first).lower()


NAME_TRANSFORMS: tuple[Callable[[str], str], ...] = (_lowercase, _underscored, _first_word_letters)


def _type_prefix(tray_type: str) -> str:
    """Leading letters of the tray type, e.g. 'PLA-S' -> 'pla'."""
    match = re.match(r"[A-Za-z]+", tray_type or "")
    return match.group(0).lower() if match else ""


def catalog_key(slot: AMSSlot, name: str) -> str:
    """Catalog id prefix for a transformed material name.

    Support materials are listed under their base material in the catalog,
    e.g. 'bambulab_pla_support_for_pla_petg_...'.
    """
    if "support" in slot.tray_sub_brands.lower():
        prefix = _type_prefix(slot.tray_type)
        if prefix:
            return f"{CATALOG_VENDOR_PREFIX}_{prefix}_{name}"
    return f"{CATALOG_VENDOR_PREFIX}_{name}"


def _same_color(color_hex: str | None, slot: AMSSlot) -> bool:
    return (color_hex or "").lower() == slot.color_hex.lower()


def _stored_tag(spool: dict) -> str | None:
    extra = spool.get("extra") or {}
    return extra.get("tag")


def find_tagged_spool(slot: AMSSlot, spools: list[dict]) -> dict | None:
    """First spool whose quote-stripped tag equals the slot's tray UUID."""
    if not slot.tray_uuid:
        return None
    for spool in spools:
        if strip_tag(_stored_tag(spool)) == slot.tray_uuid:
            return spool
    return None


def find_catalog_entry(slot: AMSSlot, catalog: list[dict]) -> dict | None:
    """Find the external catalog entry for a slot by vendor+material id prefix and color."""
    if not slot.tray_sub_brands:
        return None
    for transform in NAME_TRANSFORMS:
        key = catalog_key(slot, transform(slot.tray_sub_brands))
        for entry in catalog:
            if str(entry.get("id", "")).startswith(key) and _same_color(entry.get("color_hex"), slot):
                return entry
    return None


def find_internal_filament(catalog_entry: dict | None, filaments: list[dict]) -> dict | None:
    """Internal filament created from the given catalog entry."""
    if not catalog_entry:
        return None
    for filament in filaments:
        if filament.get("external_id") == catalog_entry.get("id"):
            return filament
    return None


def _same_material_and_color(spool: dict, slot: AMSSlot) -> bool:
    filament = spool.get("filament") or {}
    material = filament.get("material") or ""
    return material.lower() == slot.tray_sub_brands.lower() and _same_color(filament.get("color_hex"), slot)


def is_weight_plausible(spool: dict, slot: AMSSlot) -> bool:
    """Check whether a spool's weight history is consistent with the slot's reel."""
    remaining = spool.get("remaining_weight")
    used = spool.get("used_weight")
    if remaining == 0 or used == 0:
        return True
    if remaining is None:
        return False
    expected = (slot.remain / 100.0) * (spool.get("initial_weight") or 0)
    return abs(remaining - expected) <= expected * MERGE_TOLERANCE


def find_mergeable_spool(slot: AMSSlot, spools: list[dict]) -> dict | None:
    """First untagged spool with the slot's material and color and a plausible weight."""
    for spool in spools:
        if strip_tag(_stored_tag(spool)):
            continue
        if _same_material_and_color(spool, slot) and is_weight_plausible(spool, slot):
            return spool
    return None


def _decoded_tag(spool: dict) -> str | None:
    stored = _stored_tag(spool)
    if not stored:
        return None
    try:
        value = json.loads(stored)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, str) else None


def find_existing_spool(slot: AMSSlot, spools: list[dict]) -> dict | None:
    """Legacy exact match on material, color and JSON-decoded tag."""
    if not slot.tray_uuid:
        return None
    for spool in spools:
        filament = spool.get("filament") or {}
        if (
            filament.get("material") == slot.tray_sub_brands
            and _same_color(filament.get("color_hex"), slot)
            and _decoded_tag(spool) == slot.tray_uuid
        ):
            return spool
    return None


def decide(slot: AMSSlot, spools: list[dict], catalog: list[dict], filaments: list[dict]) -> Decision:
    """Decide what to do with an own-brand slot."""
    catalog_entry = find_catalog_entry(slot, catalog)
    internal_filament = find_internal_filament(catalog_entry, filaments)
    resolved = {"catalog_entry": catalog_entry, "internal_filament": internal_filament}

    tagged = find_tagged_spool(slot, spools)
    if tagged:
        return Decision(SyncAction.UPDATE, existing_spool=tagged, **resolved)

    mergeable = find_mergeable_spool(slot, spools)
    if mergeable:
        return Decision(SyncAction.MERGE, mergeable_spool=mergeable, **resolved)

    existing = find_existing_spool(slot, spools)
    if existing:
        return Decision(SyncAction.UPDATE, existing_spool=existing, **resolved)

    if internal_filament:
        return Decision(SyncAction.CREATE_SPOOL, **resolved)

    if catalog_entry:
        return Decision(SyncAction.CREATE_FILAMENT_AND_SPOOL, **resolved)

    return Decision(SyncAction.NO_ACTION, **resolved)
