from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Application version - single source of truth
APP_VERSION = "0.3.0"

# Base directory for path calculations
_base_dir = Path(__file__).resolve().parent.parent.parent.parent

# Bounds for the per-printer reconciliation interval (seconds)
MIN_UPDATE_INTERVAL = 5
MAX_UPDATE_INTERVAL = 300


def clamp_update_interval(seconds: float) -> float:
    """Clamp an update interval to the supported range."""
    return min(max(seconds, MIN_UPDATE_INTERVAL), MAX_UPDATE_INTERVAL)


class Settings(BaseSettings):
    app_name: str = "AMS Spool Sync"
    debug: bool = False  # Default to production mode

    # Paths
    base_dir: Path = _base_dir
    log_dir: Path = base_dir / "logs"
    database_url: str = f"sqlite+aiosqlite:///{_base_dir / 'spoolsync.db'}"

    # Logging
    log_level: str = "INFO"  # Override with LOG_LEVEL env var or DEBUG=true
    log_to_file: bool = True  # Set to false to disable file logging

    # API
    api_prefix: str = "/api/v1"

    # Spoolman - either a full URL or the legacy IP/port pair
    spoolman_url: str = ""
    spoolman_ip: str = ""
    spoolman_port: int = 7912

    # "automatic" executes merge/create decisions, "manual" waits for the operator
    mode: str = "manual"

    # Seconds between reconciliation passes per printer
    update_interval: float = 120
    # Seconds between reachability probes of the fleet
    ping_interval: float = 5
    probe_timeout: float = 2.0

    # Printer seeded into the database on startup (optional)
    printer_id: str = ""  # Serial number
    printer_code: str = ""  # LAN access code
    printer_ip: str = ""
    printer_name: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("mode")
    @classmethod
    def _normalize_mode(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("automatic", "manual"):
            raise ValueError("MODE must be 'automatic' or 'manual'")
        return value

    @field_validator("update_interval")
    @classmethod
    def _clamp_update_interval(cls, value: float) -> float:
        return clamp_update_interval(value)

    @property
    def spoolman_base_url(self) -> str:
        """Spoolman base URL, built from SPOOLMAN_IP/SPOOLMAN_PORT if no URL is set."""
        if self.spoolman_url:
            return self.spoolman_url.rstrip("/")
        if self.spoolman_ip:
            return f"http://{self.spoolman_ip}:{self.spoolman_port}"
        return ""

    @property
    def automatic_mode(self) -> bool:
        return self.mode == "automatic"


settings = Settings()

# Ensure directories exist
if settings.log_to_file:
    settings.log_dir.mkdir(exist_ok=True)
