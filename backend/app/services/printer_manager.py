import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.config import clamp_update_interval, settings
from backend.app.models.printer import Printer
from backend.app.services.ams_snapshot import AMSSnapshot, parse_ams_report
from backend.app.services.bambu_mqtt import BambuMQTTClient
from backend.app.services.reconciler import SlotView, SpoolReconciler

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONCILING = "reconciling"
    ERROR = "error"


class PrinterSession:
    """Connection and reconciliation state of one printer.

    Only touched from the event loop; MQTT callbacks are marshalled there
    by the PrinterManager.
    """

    def __init__(
        self,
        printer_id: int,
        name: str,
        serial_number: str,
        ip_address: str,
        access_code: str,
        update_interval: float | None = None,
    ):
        self.printer_id = printer_id
        self.name = name
        self.serial_number = serial_number
        self.ip_address = ip_address
        self.access_code = access_code
        self.update_interval = clamp_update_interval(
            update_interval if update_interval is not None else settings.update_interval
        )

        self.status = ConnectionStatus.DISCONNECTED
        self.running = False
        self.client: BambuMQTTClient | None = None
        self.first_run = True
        self._reconciling = False
        self._generation = 0

        self.last_snapshot: AMSSnapshot | None = None
        self.last_spool_fingerprint: tuple | None = None
        self.last_reconciled_at: datetime | None = None
        self.last_ams_update_at: datetime | None = None
        self.last_report_at: datetime | None = None

        # Replaced as a whole on publish, readers never see a partial view
        self.view: tuple[SlotView, ...] = ()

    @classmethod
    def from_printer(cls, printer: Printer) -> "PrinterSession":
        return cls(
            printer_id=printer.id,
            name=printer.name,
            serial_number=printer.serial_number,
            ip_address=printer.ip_address,
            access_code=printer.access_code,
            update_interval=printer.update_interval,
        )

    @property
    def is_reconciling(self) -> bool:
        return self._reconciling

    def is_current(self, generation: int | None) -> bool:
        """Whether a pass started in this generation may still write session state."""
        return generation is None or generation == self._generation

    def should_reconcile(self, now: datetime) -> bool:
        """Whether a new snapshot may start a reconciliation pass."""
        if self._reconciling:
            return False
        if self.first_run or self.last_reconciled_at is None:
            return True
        return (now - self.last_reconciled_at).total_seconds() > self.update_interval

    def begin_pass(self) -> int:
        """Take the single-flight flag and return the pass generation."""
        if self._reconciling:
            raise RuntimeError(f"Printer {self.serial_number} is already reconciling")
        self._reconciling = True
        if self.status == ConnectionStatus.CONNECTED:
            self.status = ConnectionStatus.RECONCILING
        return self._generation

    def end_pass(self, generation: int | None = None):
        # A pass outliving a transport close must not release a newer pass's flag
        if not self.is_current(generation):
            return
        self._reconciling = False
        if self.status == ConnectionStatus.RECONCILING:
            self.status = ConnectionStatus.CONNECTED

    def mark_reconciled(
        self,
        now: datetime,
        snapshot: AMSSnapshot | None = None,
        spool_fingerprint: tuple | None = None,
        generation: int | None = None,
    ):
        """Record a finished pass; snapshot and fingerprint are only stored when given."""
        if not self.is_current(generation):
            return
        self.last_reconciled_at = now
        self.first_run = False
        if snapshot is not None:
            self.last_snapshot = snapshot
            self.last_spool_fingerprint = spool_fingerprint

    def publish(self, view: tuple[SlotView, ...], now: datetime, generation: int | None = None):
        if not self.is_current(generation):
            return
        self.view = view
        self.last_ams_update_at = now

    def next_update_at(self, now: datetime | None = None) -> datetime:
        base = self.last_reconciled_at or now or datetime.now(timezone.utc)
        return base + timedelta(seconds=self.update_interval)

    def transport_closed(self):
        """Reset state after the MQTT connection went away.

        Bumps the generation so a pass still running on the old connection
        can no longer touch the session.
        """
        self.status = ConnectionStatus.DISCONNECTED
        self.running = False
        self._reconciling = False
        self._generation += 1
        self.client = None

    def find_slot_view(self, label: str) -> SlotView | None:
        for row in self.view:
            if row.slot.label == label:
                return row
        return None

    def mark_slot_executed(self, label: str):
        """Publish a view where the slot's pending action is done.

        The stored snapshot is dropped so the next due pass re-reads the inventory.
        """
        self.view = tuple(
            replace(row, pending=False, executed=True, error=None) if row.slot.label == label else row
            for row in self.view
        )
        self.last_snapshot = None


class PrinterManager:
    """Manager for multiple printer sessions."""

    def __init__(self):
        self._sessions: dict[int, PrinterSession] = {}
        self._reconciler: SpoolReconciler | None = None
        self._on_refresh: Callable[[int], Awaitable[None]] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop):
        """Set the event loop for async callbacks."""
        self._loop = loop

    def set_reconciler(self, reconciler: SpoolReconciler | None):
        """Set the reconciler that handles incoming AMS snapshots."""
        self._reconciler = reconciler

    def set_refresh_callback(self, callback: Callable[[int], Awaitable[None]]):
        """Set callback fired after a printer's view or status changed."""
        self._on_refresh = callback

    @property
    def reconciler(self) -> SpoolReconciler | None:
        return self._reconciler

    def _schedule_async(self, coro):
        """Schedule an async coroutine from a sync context."""
        if self._loop and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()

    def add_printer(self, printer: Printer) -> PrinterSession:
        """Register a printer, replacing any previous session for it."""
        if printer.id in self._sessions:
            self.stop_session(printer.id)
        session = PrinterSession.from_printer(printer)
        self._sessions[printer.id] = session
        return session

    def get_session(self, printer_id: int) -> PrinterSession | None:
        return self._sessions.get(printer_id)

    def get_all_sessions(self) -> list[PrinterSession]:
        return list(self._sessions.values())

    def start_session(self, printer_id: int) -> bool:
        """Open the MQTT subscription for a printer.

        Returns:
            True if a new connection attempt was started, False if the session
            is unknown or already running.
        """
        session = self._sessions.get(printer_id)
        if not session or session.running:
            return False

        client = None

        def on_connection_change(connected: bool):
            self._schedule_async(self._handle_connection_change(printer_id, client, connected))

        def on_report(payload: dict):
            self._schedule_async(self._handle_report(printer_id, client, payload))

        client = BambuMQTTClient(
            ip_address=session.ip_address,
            serial_number=session.serial_number,
            access_code=session.access_code,
            on_connection_change=on_connection_change,
            on_report=on_report,
        )

        session.status = ConnectionStatus.CONNECTING
        session.running = True
        session.client = client
        try:
            client.connect()
        except Exception as e:
            logger.error("[%s] Failed to start MQTT connection: %s", session.serial_number, e)
            session.transport_closed()
            session.status = ConnectionStatus.ERROR
            return False

        logger.info("[%s] Connecting to MQTT at %s", session.serial_number, session.ip_address)
        return True

    def stop_session(self, printer_id: int):
        """Close the MQTT subscription of a printer and mark it disconnected."""
        session = self._sessions.get(printer_id)
        if not session:
            return
        was_connected = session.status != ConnectionStatus.DISCONNECTED
        if session.client:
            session.client.disconnect()
        session.transport_closed()
        if was_connected:
            self._notify(printer_id)

    def disconnect_all(self):
        """Disconnect from all printers."""
        for printer_id in list(self._sessions.keys()):
            self.stop_session(printer_id)

    def _notify(self, printer_id: int):
        if self._on_refresh:
            self._schedule_async(self._on_refresh(printer_id))

    async def _handle_connection_change(self, printer_id: int, client: BambuMQTTClient | None, connected: bool):
        session = self._sessions.get(printer_id)
        # Events from a client that has since been replaced are stale
        if not session or client is None or session.client is not client:
            return

        if connected:
            if session.status != ConnectionStatus.RECONCILING:
                session.status = ConnectionStatus.CONNECTED
        else:
            logger.warning("[%s] MQTT connection lost", session.serial_number)
            client.disconnect()
            session.transport_closed()

        if self._on_refresh:
            await self._on_refresh(printer_id)

    async def _handle_report(self, printer_id: int, client: BambuMQTTClient | None, payload: dict):
        session = self._sessions.get(printer_id)
        if not session or client is None or session.client is not client:
            return

        session.last_report_at = datetime.now(timezone.utc)
        snapshot = parse_ams_report(payload)
        if snapshot is None or self._reconciler is None:
            return

        ran = await self._reconciler.reconcile(session, snapshot)
        if ran and self._on_refresh:
            await self._on_refresh(printer_id)


def session_to_dict(session: PrinterSession) -> dict:
    """Convert a PrinterSession to a dict for the status endpoints."""
    return {
        "id": session.printer_id,
        "name": session.name,
        "serial_number": session.serial_number,
        "ip_address": session.ip_address,
        "status": session.status.value,
        "running": session.running,
        "reconciling": session.is_reconciling,
        "update_interval": session.update_interval,
        "last_report": session.last_report_at.isoformat() if session.last_report_at else None,
        "last_ams_update": session.last_ams_update_at.isoformat() if session.last_ams_update_at else None,
        "last_reconciled": session.last_reconciled_at.isoformat() if session.last_reconciled_at else None,
        "next_update": session.next_update_at().isoformat() if session.last_reconciled_at else None,
    }


def slot_view_to_dict(row: SlotView) -> dict:
    """Convert a published slot row to a dict for the API."""
    slot = row.slot
    decision = row.decision
    spool = decision.existing_spool or decision.mergeable_spool
    return {
        "slot": slot.label,
        "ams_id": slot.ams_id,
        "tray_id": slot.tray_id,
        "kind": slot.kind.value,
        "tray_type": slot.tray_type,
        "tray_sub_brands": slot.tray_sub_brands,
        "tray_color": slot.tray_color,
        "remain": slot.remain,
        "tray_weight": slot.tray_weight,
        "tray_uuid": slot.tray_uuid,
        "action": decision.action.value,
        "action_label": decision.action.label,
        "pending": row.pending,
        "executed": row.executed,
        "error": row.error,
        "spool_id": spool.get("id") if spool else None,
        "filament_id": decision.internal_filament.get("id") if decision.internal_filament else None,
        "catalog_id": decision.catalog_entry.get("id") if decision.catalog_entry else None,
    }


# Global printer manager instance
printer_manager = PrinterManager()


async def load_active_printers(db: AsyncSession) -> list[Printer]:
    result = await db.execute(
        select(Printer).where(Printer.is_active == True)
    )
    return list(result.scalars().all())


async def init_printer_sessions(db: AsyncSession):
    """Register sessions for all active printers.

    Connections are opened by the fleet monitor once a printer answers its probe.
    """
    printers = await load_active_printers(db)
    for printer in printers:
        printer_manager.add_printer(printer)
    logger.info("Registered %d printer(s)", len(printers))
