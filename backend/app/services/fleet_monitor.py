"""Periodic reachability probe that (re)starts printer MQTT sessions."""

import asyncio
import logging

from backend.app.core.config import settings
from backend.app.services.bambu_mqtt import BambuMQTTClient
from backend.app.services.printer_manager import ConnectionStatus, PrinterManager, PrinterSession, printer_manager

logger = logging.getLogger(__name__)


async def check_port(ip: str, port: int = BambuMQTTClient.MQTT_PORT, timeout: float = 2.0) -> bool:
    """Test TCP connectivity to ip:port. Returns True if reachable."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
        writer.close()
        await writer.wait_closed()
        return True
    except (OSError, asyncio.TimeoutError):
        return False


class FleetMonitor:
    """Probes every registered printer on a fixed tick.

    A reachable printer without a running session gets one started; an
    unreachable printer has its session torn down and marked disconnected.
    """

    def __init__(self, manager: PrinterManager, interval: float | None = None, probe_timeout: float | None = None):
        self.manager = manager
        self.interval = interval if interval is not None else settings.ping_interval
        self.probe_timeout = probe_timeout if probe_timeout is not None else settings.probe_timeout
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the background probe loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._monitor_loop())
            logger.info("Fleet monitor started (interval %ss)", self.interval)

    def stop(self):
        """Stop the background probe loop."""
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Fleet monitor stopped")

    async def _monitor_loop(self):
        while True:
            try:
                await self.check_all()
            except Exception as e:
                logger.error(f"Error in fleet monitor tick: {e}")

            await asyncio.sleep(self.interval)

    async def check_all(self):
        """Probe all printers concurrently and act on the results."""
        sessions = self.manager.get_all_sessions()
        if not sessions:
            return
        await asyncio.gather(*(self.check_printer(session) for session in sessions))

    async def check_printer(self, session: PrinterSession):
        reachable = await check_port(session.ip_address, timeout=self.probe_timeout)

        if reachable:
            if not session.running:
                logger.info("[%s] MQTT not running, attempting to (re)connect", session.serial_number)
                self.manager.start_session(session.printer_id)
            return

        if session.running or session.status != ConnectionStatus.DISCONNECTED:
            logger.warning("[%s] Printer not reachable at %s", session.serial_number, session.ip_address)
            self.manager.stop_session(session.printer_id)
        else:
            logger.debug("[%s] Printer still not reachable", session.serial_number)


# Global fleet monitor instance (started after bootstrap)
fleet_monitor = FleetMonitor(printer_manager)
