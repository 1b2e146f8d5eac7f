"""Shared test fixtures for the AMS Spool Sync backend tests."""

import copy
import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# IMPORTANT: Set environment variables BEFORE any app imports
# This must happen before settings/config are loaded
os.environ["LOG_TO_FILE"] = "false"
os.environ["DEBUG"] = "false"
os.environ.setdefault("MODE", "manual")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

# Ensure settings use our env vars - import and override before database import
from backend.app.core.config import settings  # noqa: E402

settings.log_to_file = False

from backend.app.core.database import Base  # noqa: E402

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TRAY_UUID = "A1B2C3D4E5F60718293A4B5C6D7E8F90"


@pytest.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # Import all models to register them
    from backend.app.models import printer  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session_maker = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session_maker() as session:
        yield session


@pytest.fixture
async def async_client(test_engine, db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    from backend.app.core.database import get_db
    from backend.app.main import app

    # Create a new session maker for the test engine
    test_async_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with test_async_session() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    # Also patch the module-level async_session used by services
    with (
        patch("backend.app.core.database.async_session", test_async_session),
        patch("backend.app.main.async_session", test_async_session),
    ):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()


# ============================================================================
# Mock External Services
# ============================================================================


@pytest.fixture
def mock_spoolman_client():
    """SpoolmanClient stand-in with an empty inventory."""
    client = MagicMock()
    client.base_url = "http://spoolman.local:7912"
    client.is_connected = True
    client.health_check = AsyncMock(return_value=True)
    client.get_spools = AsyncMock(return_value=[])
    client.get_filaments = AsyncMock(return_value=[])
    client.get_external_filaments = AsyncMock(return_value=[])
    client.ensure_vendor = AsyncMock(return_value=1)
    client.ensure_tag_extra_field = AsyncMock(return_value=True)
    client.update_spool_weight = AsyncMock(return_value={"id": 1})
    client.set_spool_tag = AsyncMock(return_value={"id": 1})
    client.create_spool = AsyncMock(return_value={"id": 100})
    client.create_filament_from_catalog = AsyncMock(return_value={"id": 50})
    return client


@pytest.fixture
def mock_mqtt_client():
    """Mock the MQTT client for printer communication tests."""
    with patch("backend.app.services.printer_manager.BambuMQTTClient") as mock:
        instance = MagicMock()
        instance.connected = False
        instance.connect = MagicMock()
        instance.disconnect = MagicMock()
        mock.return_value = instance
        yield mock


# ============================================================================
# Factory Fixtures for Test Data
# ============================================================================


def _pla_basic_tray(**overrides) -> dict:
    tray = {
        "id": "0",
        "remain": 80,
        "tag_uid": "1234ABCD00000000",
        "tray_id_name": "A00-K0",
        "tray_info_idx": "GFA00",
        "tray_type": "PLA",
        "tray_sub_brands": "PLA Basic",
        "tray_color": "000000FF",
        "tray_weight": "1000",
        "tray_diameter": "1.75",
        "tray_uuid": TRAY_UUID,
        "nozzle_temp_max": "230",
        "nozzle_temp_min": "190",
    }
    tray.update(overrides)
    return tray


@pytest.fixture
def tray_factory():
    """Factory for raw MQTT tray dicts, defaulting to a black PLA Basic reel."""
    return _pla_basic_tray


@pytest.fixture
def report_factory():
    """Factory for MQTT reports carrying one AMS unit."""

    def _create_report(trays: list[dict] | None = None, humidity: str = "4", temp: str = "24.5") -> dict:
        if trays is None:
            trays = [_pla_basic_tray(), {"id": "1"}, {"id": "2"}, {"id": "3"}]
        return {
            "print": {
                "ams": {
                    "ams": [
                        {
                            "id": "0",
                            "humidity": humidity,
                            "temp": temp,
                            "tray": copy.deepcopy(trays),
                        }
                    ]
                }
            }
        }

    return _create_report


@pytest.fixture
def catalog_entry():
    """External catalog entry matching the default PLA Basic tray."""
    return {
        "id": "bambulab_pla_basic_black",
        "manufacturer": "Bambu Lab",
        "name": "PLA Basic Black",
        "material": "PLA",
        "density": 1.26,
        "diameter": 1.75,
        "weight": 1000,
        "spool_weight": 250,
        "spool_type": "plastic",
        "color_hex": "000000",
        "extruder_temp": 220,
        "bed_temp": 65,
        "finish": None,
        "pattern": None,
        "translucent": False,
        "glow": False,
    }


@pytest.fixture
def spool_factory():
    """Factory for Spoolman spool dicts."""

    def _create_spool(
        spool_id: int = 1,
        material: str = "PLA Basic",
        color_hex: str = "000000",
        tag: str | None = None,
        remaining_weight: float | None = 800,
        used_weight: float | None = 200,
        initial_weight: float | None = 1000,
    ) -> dict:
        spool = {
            "id": spool_id,
            "filament": {
                "id": 10 + spool_id,
                "name": f"{material} {color_hex}",
                "material": material,
                "color_hex": color_hex,
            },
            "remaining_weight": remaining_weight,
            "used_weight": used_weight,
            "initial_weight": initial_weight,
            "extra": {},
        }
        if tag is not None:
            spool["extra"]["tag"] = tag
        return spool

    return _create_spool


@pytest.fixture
def printer_factory(db_session):
    """Factory to create printers in the test database."""
    _counter = [0]

    async def _create_printer(**kwargs):
        from backend.app.models.printer import Printer

        _counter[0] += 1
        counter = _counter[0]

        defaults = {
            "name": f"Test Printer {counter}",
            "ip_address": f"192.168.1.{100 + counter}",
            "serial_number": f"00M09A{counter:09d}",
            "access_code": "12345678",
            "is_active": True,
        }
        defaults.update(kwargs)

        printer = Printer(**defaults)
        db_session.add(printer)
        await db_session.commit()
        await db_session.refresh(printer)
        return printer

    return _create_printer
