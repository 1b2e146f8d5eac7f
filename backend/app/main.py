import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI

# Import settings first for logging configuration
from backend.app.core.config import settings as app_settings, APP_VERSION

# Configure logging based on settings
# DEBUG=true -> DEBUG level, else use LOG_LEVEL setting
log_level_str = "DEBUG" if app_settings.debug else app_settings.log_level.upper()
log_level = getattr(logging, log_level_str, logging.INFO)
log_format = '%(asctime)s %(levelname)s [%(name)s] %(message)s'

# Create root logger
root_logger = logging.getLogger()
root_logger.setLevel(log_level)

# Console handler - always enabled
console_handler = logging.StreamHandler()
console_handler.setLevel(log_level)
console_handler.setFormatter(logging.Formatter(log_format))
root_logger.addHandler(console_handler)

# File handler - only in production or if explicitly enabled
if app_settings.log_to_file:
    log_file = app_settings.log_dir / "spoolsync.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5*1024*1024,  # 5MB
        backupCount=3,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(file_handler)
    logging.info(f"Logging to file: {log_file}")

# Reduce noise from third-party libraries in production
if not app_settings.debug:
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("paho").setLevel(logging.WARNING)

logging.info(f"{app_settings.app_name} starting - debug={app_settings.debug}, log_level={log_level_str}, mode={app_settings.mode}")

from backend.app.core.database import init_db, async_session
from backend.app.core.websocket import ws_manager
from backend.app.api.routes import printers, spools, status, websocket
from backend.app.services.bootstrap import BootstrapError, bootstrap_spoolman
from backend.app.services.fleet_monitor import fleet_monitor
from backend.app.services.printer_manager import printer_manager, init_printer_sessions
from backend.app.services.reconciler import SpoolReconciler
from backend.app.services.spoolman import init_spoolman_client, close_spoolman_client


async def start_sync() -> bool:
    """Check Spoolman, register printers and start the fleet monitor.

    Returns:
        True if monitoring started, False if startup checks failed.
    """
    spoolman_url = app_settings.spoolman_base_url
    if not spoolman_url:
        logging.error("SPOOLMAN_URL (or SPOOLMAN_IP) is not configured, printer monitoring disabled")
        return False

    client = await init_spoolman_client(spoolman_url)
    try:
        vendor_id = await bootstrap_spoolman(client)
    except BootstrapError as e:
        logging.error(f"Spoolman bootstrap failed, printer monitoring disabled: {e}")
        return False

    printer_manager.set_reconciler(
        SpoolReconciler(client, automatic=app_settings.automatic_mode, vendor_id=vendor_id)
    )

    async with async_session() as db:
        await init_printer_sessions(db)

    fleet_monitor.start()
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_db()

    # Set up printer manager callbacks
    loop = asyncio.get_event_loop()
    printer_manager.set_event_loop(loop)
    printer_manager.set_refresh_callback(ws_manager.send_printer_refresh)

    await start_sync()

    yield

    # Shutdown
    fleet_monitor.stop()
    printer_manager.disconnect_all()
    printer_manager.set_reconciler(None)
    await close_spoolman_client()


app = FastAPI(
    title=app_settings.app_name,
    description="Sync Bambu Lab AMS spools with Spoolman",
    version=APP_VERSION,
    lifespan=lifespan,
)

# API routes
app.include_router(status.router, prefix=app_settings.api_prefix)
app.include_router(printers.router, prefix=app_settings.api_prefix)
app.include_router(spools.router, prefix=app_settings.api_prefix)
app.include_router(websocket.router, prefix=app_settings.api_prefix)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
