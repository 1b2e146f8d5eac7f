from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import clamp_update_interval, settings
from backend.app.core.database import get_db
from backend.app.models.printer import Printer
from backend.app.schemas.spool_sync import PrinterStatus, SlotViewResponse
from backend.app.services.printer_manager import (
    ConnectionStatus,
    printer_manager,
    session_to_dict,
    slot_view_to_dict,
)

router = APIRouter(prefix="/printers", tags=["printers"])


def printer_status(printer: Printer) -> PrinterStatus:
    """Build the status of a configured printer, with or without a live session."""
    session = printer_manager.get_session(printer.id)
    if session:
        data = session_to_dict(session)
    else:
        data = {
            "id": printer.id,
            "name": printer.name,
            "serial_number": printer.serial_number,
            "ip_address": printer.ip_address,
            "status": ConnectionStatus.DISCONNECTED.value,
            "running": False,
            "reconciling": False,
            "update_interval": clamp_update_interval(
                printer.update_interval if printer.update_interval is not None else settings.update_interval
            ),
        }
    return PrinterStatus(mode=settings.mode, **data)


async def _get_printer(db: AsyncSession, printer_id: int) -> Printer:
    result = await db.execute(select(Printer).where(Printer.id == printer_id))
    printer = result.scalar_one_or_none()
    if not printer:
        raise HTTPException(404, "Printer not found")
    return printer


@router.get("/", response_model=list[PrinterStatus])
async def list_printers(db: AsyncSession = Depends(get_db)):
    """List all configured printers with their connection status."""
    result = await db.execute(select(Printer).order_by(Printer.name))
    return [printer_status(printer) for printer in result.scalars().all()]


@router.get("/{printer_id}/status", response_model=PrinterStatus)
async def get_printer_status(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Get connection and reconciliation status of a printer."""
    printer = await _get_printer(db, printer_id)
    return printer_status(printer)


@router.get("/{printer_id}/slots", response_model=list[SlotViewResponse])
async def get_printer_slots(printer_id: int, db: AsyncSession = Depends(get_db)):
    """Get the slot view published by the last reconciliation pass."""
    await _get_printer(db, printer_id)
    session = printer_manager.get_session(printer_id)
    if not session:
        return []
    # Read the tuple once; a pass may publish a new one meanwhile
    view = session.view
    return [slot_view_to_dict(row) for row in view]
