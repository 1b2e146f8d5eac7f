"""Reconcile AMS telemetry with the Spoolman inventory.

One pass handles one printer snapshot: fetch the inventory, decide per slot
(see spool_matcher), execute what may be executed and publish the result
as the printer's slot view.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from backend.app.services.ams_snapshot import AMSSlot, AMSSnapshot, SlotKind, normalize_snapshot
from backend.app.services.spool_matcher import Decision, SyncAction, decide
from backend.app.services.spoolman import SpoolmanClient, SpoolmanError

if TYPE_CHECKING:
    from backend.app.services.printer_manager import PrinterSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotView:
    """Published reconciliation result for one slot."""

    slot: AMSSlot
    decision: Decision
    pending: bool = False  # waiting for operator confirmation
    executed: bool = False  # action was carried out during this pass
    error: str | None = None

    @property
    def action(self) -> SyncAction:
        return self.decision.action


def spool_fingerprint(spools: list[dict]) -> tuple:
    """Ordered (tag, remaining weight) pairs used to detect inventory changes."""
    return tuple(((spool.get("extra") or {}).get("tag"), spool.get("remaining_weight")) for spool in spools)


def _describe(slot: AMSSlot) -> str:
    return f"[{slot.label}] {slot.tray_sub_brands} {slot.tray_color} ({slot.remain}%) [[ {slot.tray_uuid} ]]"


class SpoolReconciler:
    """Runs reconciliation passes and executes inventory changes."""

    def __init__(self, client: SpoolmanClient, automatic: bool = False, vendor_id: int | None = None):
        self.client = client
        self.automatic = automatic
        self.vendor_id = vendor_id

    @property
    def mode(self) -> str:
        return "automatic" if self.automatic else "manual"

    async def reconcile(self, session: "PrinterSession", snapshot: AMSSnapshot) -> bool:
        """Run one pass for a printer if its guard allows it.

        Snapshots arriving while a pass is running, or before the update
        interval has elapsed, are dropped.

        Returns:
            True if a pass ran, False if the snapshot was dropped.
        """
        now = datetime.now(timezone.utc)
        if not session.should_reconcile(now):
            return False

        generation = session.begin_pass()
        try:
            await self._run_pass(session, snapshot, now, generation)
        except Exception as e:
            logger.exception("[%s] Reconciliation pass failed: %s", session.serial_number, e)
        finally:
            session.end_pass(generation)
        return True

    async def _run_pass(self, session: "PrinterSession", snapshot: AMSSnapshot, now: datetime, generation: int):
        snapshot = normalize_snapshot(snapshot)
        if not snapshot.is_valid:
            logger.info("[%s] Incomplete AMS data (no humidity/temperature), skipping", session.serial_number)
            session.mark_reconciled(now, generation=generation)
            return

        spools, spools_available = await self._fetch_spools()
        catalog = await self.client.get_external_filaments()
        filaments = await self.client.get_filaments()

        fingerprint = spool_fingerprint(spools)
        if (
            spools_available
            and snapshot == session.last_snapshot
            and fingerprint == session.last_spool_fingerprint
        ):
            logger.info(
                "[%s] No new AMS data or changes in Spoolman found, next update at %s",
                session.serial_number,
                session.next_update_at(now).strftime("%d.%m.%Y %H:%M:%S"),
            )
            session.mark_reconciled(now, generation=generation)
            return

        rows = []
        for unit in snapshot.units:
            logger.info("[%s] AMS [%s] (hum: %s, temp: %s°C)", session.serial_number, unit.letter, unit.humidity, unit.temp)
            for slot in unit.slots:
                if not session.is_current(generation):
                    logger.info("[%s] Connection closed during pass, abandoning it", session.serial_number)
                    return
                rows.append(await self._reconcile_slot(session, slot, spools, catalog, filaments, spools_available))

        session.publish(tuple(rows), now, generation=generation)
        if spools_available:
            session.mark_reconciled(now, snapshot=snapshot, spool_fingerprint=fingerprint, generation=generation)
        else:
            # Keep the previous state so the next pass looks at this snapshot again
            session.mark_reconciled(now, generation=generation)

    async def _fetch_spools(self) -> tuple[list[dict], bool]:
        try:
            return await self.client.get_spools(), True
        except Exception as e:
            logger.error("Spool inventory unavailable, treating as empty: %s", e)
            return [], False

    async def _reconcile_slot(
        self,
        session: "PrinterSession",
        slot: AMSSlot,
        spools: list[dict],
        catalog: list[dict],
        filaments: list[dict],
        spools_available: bool,
    ) -> SlotView:
        if slot.kind == SlotKind.EMPTY:
            return SlotView(slot=slot, decision=Decision(SyncAction.NO_ACTION))

        if slot.kind == SlotKind.FOREIGN:
            logger.info("[%s]     - [%s] %s %s (no identity tag, read only)", session.serial_number, slot.label, slot.tray_type, slot.tray_color)
            return SlotView(slot=slot, decision=Decision(SyncAction.NO_ACTION))

        decision = decide(slot, spools, catalog, filaments)
        logger.info("[%s]     - %s", session.serial_number, _describe(slot))

        if decision.action == SyncAction.UPDATE:
            try:
                await self.update_spool(slot, decision.existing_spool)
            except SpoolmanError as e:
                return SlotView(slot=slot, decision=decision, error=str(e))
            return SlotView(slot=slot, decision=decision, executed=True)

        if not decision.action.needs_confirmation:
            logger.info("[%s]         - No matching Spool, Filament or catalog entry found", session.serial_number)
            return SlotView(slot=slot, decision=decision)

        logger.info("[%s]         - %s possible", session.serial_number, decision.action.label)
        if not self.automatic:
            return SlotView(slot=slot, decision=decision, pending=True)
        if not spools_available:
            logger.warning("[%s]         - Skipping %s, spool inventory unavailable", session.serial_number, decision.action.label)
            return SlotView(slot=slot, decision=decision)

        try:
            await self.execute(decision.action, slot, decision)
        except SpoolmanError as e:
            # Tag stays unset, the next pass arrives at the same decision and retries
            return SlotView(slot=slot, decision=decision, error=str(e))
        return SlotView(slot=slot, decision=decision, executed=True)

    async def execute(self, action: SyncAction, slot: AMSSlot, decision: Decision) -> dict:
        """Carry out a merge/create decision.

        Shared by automatic mode and the operator confirmation endpoints.

        Raises:
            ValueError: If the decision lacks what the action needs.
            SpoolmanError: If Spoolman rejects the change.
        """
        if action == SyncAction.MERGE:
            if not decision.mergeable_spool:
                raise ValueError("Merge requires a mergeable spool")
            return await self.merge_spool(slot, decision.mergeable_spool)
        if action == SyncAction.CREATE_SPOOL:
            if not decision.internal_filament:
                raise ValueError("Creating a spool requires an internal filament")
            return await self.create_spool(slot, decision.internal_filament)
        if action == SyncAction.CREATE_FILAMENT_AND_SPOOL:
            if not decision.catalog_entry:
                raise ValueError("Creating a filament requires a catalog entry")
            return await self.create_filament_and_spool(slot, decision.catalog_entry)
        raise ValueError(f"Action {action.value} cannot be executed")

    async def update_spool(self, slot: AMSSlot, spool: dict) -> dict:
        """Sync remaining weight and last use of a tagged spool."""
        result = await self.client.update_spool_weight(spool["id"], slot.remaining_weight)
        filament = spool.get("filament") or {}
        logger.info("        - Updated Spool-ID %s => %s", spool["id"], filament.get("name"))
        return result

    async def merge_spool(self, slot: AMSSlot, spool: dict) -> dict:
        """Link an untagged spool to the slot's reel."""
        if not slot.tray_uuid:
            raise ValueError("Slot has no identity tag")
        result = await self.client.set_spool_tag(spool["id"], slot.tray_uuid)
        filament = spool.get("filament") or {}
        logger.info("          Spool successfully merged with Spool-ID %s => %s", spool["id"], filament.get("name"))
        return result

    async def create_spool(self, slot: AMSSlot, filament: dict) -> dict:
        """Create a tagged spool for an existing internal filament."""
        if not slot.tray_uuid:
            raise ValueError("Slot has no identity tag")
        result = await self.client.create_spool(filament["id"], slot.tray_weight, slot.tray_uuid)
        logger.info("          Spool successfully created for Spool in AMS Slot => %s", slot.label)
        return result

    async def create_filament_and_spool(self, slot: AMSSlot, catalog_entry: dict) -> dict:
        """Create an internal filament from the catalog entry, then a tagged spool for it."""
        if not slot.tray_uuid:
            raise ValueError("Slot has no identity tag")
        filament = await self.client.create_filament_from_catalog(catalog_entry, slot.tray_sub_brands, self.vendor_id)
        result = await self.client.create_spool(filament["id"], slot.tray_weight, slot.tray_uuid)
        logger.info("          Filament and Spool successfully created for Spool in AMS Slot => %s", slot.label)
        return result
