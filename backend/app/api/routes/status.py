"""Service status API routes."""

from fastapi import APIRouter

from backend.app.core.config import APP_VERSION, settings
from backend.app.schemas.spool_sync import ServiceStatus, SpoolmanStatus
from backend.app.services.fleet_monitor import fleet_monitor
from backend.app.services.printer_manager import printer_manager
from backend.app.services.spoolman import get_spoolman_client

router = APIRouter(tags=["status"])


@router.get("/status", response_model=ServiceStatus)
async def get_status():
    """Spoolman connection, sync mode and number of monitored printers."""
    client = await get_spoolman_client()
    reconciler = printer_manager.reconciler
    return ServiceStatus(
        version=APP_VERSION,
        mode=settings.mode,
        monitoring=fleet_monitor.is_running,
        printers=len(printer_manager.get_all_sessions()),
        spoolman=SpoolmanStatus(
            url=client.base_url if client else (settings.spoolman_base_url or None),
            connected=client.is_connected if client else False,
            vendor_id=reconciler.vendor_id if reconciler else None,
        ),
    )
