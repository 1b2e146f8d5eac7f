"""Operator confirmation of pending merge/create actions (manual mode)."""

import logging

from fastapi import APIRouter, HTTPException

from backend.app.core.websocket import ws_manager
from backend.app.schemas.spool_sync import SpoolActionRequest, SpoolActionResult
from backend.app.services.printer_manager import printer_manager
from backend.app.services.spool_matcher import SyncAction
from backend.app.services.spoolman import SpoolmanError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/spools", tags=["spools"])


def _check_ids(request: SpoolActionRequest, spool: dict | None, filament: dict | None, catalog_entry: dict | None):
    """Reject requests made against an outdated slot view."""
    if request.spool_id is not None and (not spool or spool.get("id") != request.spool_id):
        raise HTTPException(400, "Spool does not match the current slot view")
    if request.filament_id is not None and (not filament or filament.get("id") != request.filament_id):
        raise HTTPException(400, "Filament does not match the current slot view")
    if request.catalog_id is not None and (not catalog_entry or catalog_entry.get("id") != request.catalog_id):
        raise HTTPException(400, "Catalog entry does not match the current slot view")


async def _execute_action(request: SpoolActionRequest, action: SyncAction) -> SpoolActionResult:
    reconciler = printer_manager.reconciler
    if reconciler is None:
        raise HTTPException(503, "Spoolman is not available")

    session = printer_manager.get_session(request.printer_id)
    if not session:
        raise HTTPException(404, "Printer not found")

    row = session.find_slot_view(request.slot)
    if not row:
        raise HTTPException(404, f"Slot {request.slot} not found")

    decision = row.decision
    if not row.pending or decision.action != action:
        raise HTTPException(400, f"{action.label} is not available for slot {request.slot}")
    _check_ids(request, decision.mergeable_spool, decision.internal_filament, decision.catalog_entry)

    try:
        result = await reconciler.execute(action, row.slot, decision)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except SpoolmanError as e:
        raise HTTPException(502, str(e))

    logger.info("[%s] Operator confirmed %s for slot %s", session.serial_number, action.label, request.slot)
    session.mark_slot_executed(request.slot)
    await ws_manager.send_printer_refresh(session.printer_id)

    return SpoolActionResult(success=True, action=action.value, slot=request.slot, spool_id=result.get("id"))


@router.post("/merge", response_model=SpoolActionResult)
async def merge_spool(request: SpoolActionRequest):
    """Tag an existing untagged spool with the slot's reel identity."""
    return await _execute_action(request, SyncAction.MERGE)


@router.post("/create", response_model=SpoolActionResult)
async def create_spool(request: SpoolActionRequest):
    """Create a tagged spool for the slot's existing filament."""
    return await _execute_action(request, SyncAction.CREATE_SPOOL)


@router.post("/create-with-filament", response_model=SpoolActionResult)
async def create_filament_and_spool(request: SpoolActionRequest):
    """Create the filament from the external catalog, then a tagged spool."""
    return await _execute_action(request, SyncAction.CREATE_FILAMENT_AND_SPOOL)
