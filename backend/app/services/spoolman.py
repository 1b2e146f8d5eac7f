"""Spoolman inventory client used by the AMS reconciliation."""

import asyncio
import json
import logging
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

VENDOR_NAME = "Bambu Lab"
EMPTY_SPOOL_WEIGHT = 250  # Bambu Lab plastic spool core, grams
DEFAULT_FILAMENT_WEIGHT = 1000  # Net weight of a Bambu Lab refill, grams
TAG_FIELD = "tag"


def encode_tag(tray_uuid: str) -> str:
    """Encode a tray UUID the way Spoolman stores text extra fields (JSON string)."""
    return json.dumps(tray_uuid)


def strip_tag(stored_tag: str | None) -> str:
    """Remove the JSON quoting from a stored tag value."""
    if not stored_tag:
        return ""
    return stored_tag.replace('"', "")


class SpoolmanError(Exception):
    """Raised when a Spoolman write is rejected or cannot be delivered."""


class SpoolmanClient:
    """Client for interacting with Spoolman API."""

    def __init__(self, base_url: str):
        """Initialize the Spoolman client.

        Args:
            base_url: The base URL of the Spoolman server (e.g., http://localhost:7912)
        """
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v1"
        self._client: httpx.AsyncClient | None = None
        self._connected = False

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling limits.

        Configures the client to prevent idle connection issues:
        - max_keepalive_connections=5: Limit number of persistent connections
        - keepalive_expiry=30: Close idle connections after 30 seconds
        - max_connections=10: Limit total connections to prevent resource exhaustion
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=10.0,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if Spoolman server is reachable and reports itself healthy.

        Returns:
            True if server is healthy, False otherwise.
        """
        try:
            client = await self._get_client()
            response = await client.get(f"{self.api_url}/health")
            self._connected = response.status_code == 200 and response.json().get("status") == "healthy"
            return self._connected
        except Exception as e:
            logger.warning("Spoolman health check failed: %s", e)
            self._connected = False
            return False

    @property
    def is_connected(self) -> bool:
        """Check if client is connected to Spoolman."""
        return self._connected

    async def get_spools(self) -> list[dict]:
        """Get all spools from Spoolman with retry logic.

        Attempts to fetch spools up to 3 times with 500ms delay between attempts.
        This handles transient network errors like closed connections.

        Returns:
            List of spool dictionaries.

        Raises:
            Exception: If all 3 retry attempts fail.
        """
        max_attempts = 3
        retry_delay = 0.5  # 500ms

        for attempt in range(1, max_attempts + 1):
            try:
                client = await self._get_client()
                response = await client.get(f"{self.api_url}/spool")
                response.raise_for_status()
                spools = response.json()
                if attempt > 1:
                    logger.info("Successfully fetched %d spools on attempt %d", len(spools), attempt)
                return spools
            except (httpx.ReadError, httpx.RemoteProtocolError, httpx.ConnectError) as e:
                # Connection-related errors - close and recreate client for next attempt
                if attempt < max_attempts:
                    logger.warning(
                        "Connection error getting spools (attempt %d/%d): %s. Recreating client and retrying in %dms...",
                        attempt,
                        max_attempts,
                        e,
                        int(retry_delay * 1000),
                    )
                    await self.close()
                    await asyncio.sleep(retry_delay)
                else:
                    logger.error("Failed to get spools from Spoolman after %d attempts: %s", max_attempts, e)
                    raise
            except Exception as e:
                # Other errors (HTTP errors, JSON decode errors, etc.)
                if attempt < max_attempts:
                    logger.warning(
                        "Failed to get spools from Spoolman (attempt %d/%d): %s. Retrying in %dms...",
                        attempt,
                        max_attempts,
                        e,
                        int(retry_delay * 1000),
                    )
                    await asyncio.sleep(retry_delay)
                else:
                    logger.error("Failed to get spools from Spoolman after %d attempts: %s", max_attempts, e)
                    raise

    async def get_filaments(self) -> list[dict]:
        """Get all internal filaments from Spoolman.

        Returns:
            List of filament dictionaries.
        """
        try:
            client = await self._get_client()
            response = await client.get(f"{self.api_url}/filament")
            response.raise_for_status()
            return response.json()
        except Exception as e:
            logger.error("Failed to get filaments from Spoolman: %s", e)
            return []

    async def get_external_filaments(self) -> list[dict]:
        """Get external/library filaments from Spoolman.

        Returns:
            List of external filament dictionaries.
        """
        try:
            client = await self._get_client()
            response = await client.get(f"{self.api_url}/external/filament")
            response.raise_for_status()
            return response.json()
        except Exception as e:
            logger.error("Failed to get external filaments from Spoolman: %s", e)
            return []

    async def get_vendors(self) -> list[dict]:
        """Get all vendors from Spoolman.

        Returns:
            List of vendor dictionaries.
        """
        try:
            client = await self._get_client()
            response = await client.get(f"{self.api_url}/vendor")
            response.raise_for_status()
            return response.json()
        except Exception as e:
            logger.error("Failed to get vendors from Spoolman: %s", e)
            return []

    async def create_vendor(self, name: str, empty_spool_weight: float = EMPTY_SPOOL_WEIGHT) -> dict | None:
        """Create a new vendor in Spoolman.

        Args:
            name: Vendor name (e.g., "Bambu Lab"), also used as external_id
            empty_spool_weight: Weight of an empty spool of this vendor in grams

        Returns:
            Created vendor dictionary or None on failure.
        """
        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.api_url}/vendor",
                json={"name": name, "external_id": name, "empty_spool_weight": empty_spool_weight},
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Failed to create vendor in Spoolman: %s, response: %s", e, e.response.text)
            return None
        except Exception as e:
            logger.error("Failed to create vendor in Spoolman: %s", e)
            return None

    async def get_spool_fields(self) -> list[dict]:
        """Get the extra field definitions registered for spools.

        Returns:
            List of field dictionaries.
        """
        try:
            client = await self._get_client()
            response = await client.get(f"{self.api_url}/field/spool")
            response.raise_for_status()
            return response.json()
        except Exception as e:
            logger.error("Failed to get spool extra fields from Spoolman: %s", e)
            return []

    async def create_tag_field(self) -> bool:
        """Register the 'tag' text extra field for spools.

        Returns:
            True if Spoolman accepted the field, False on failure.
        """
        field_data = {
            "name": TAG_FIELD,
            "field_type": "text",
        }
        try:
            client = await self._get_client()
            response = await client.post(f"{self.api_url}/field/spool/{TAG_FIELD}", json=field_data)
            if response.status_code in (200, 201):
                logger.info("Created '%s' extra field in Spoolman", TAG_FIELD)
                return True
            logger.warning("Failed to create '%s' extra field: %s - %s", TAG_FIELD, response.status_code, response.text)
            return False
        except Exception as e:
            logger.warning("Failed to create '%s' extra field: %s", TAG_FIELD, e)
            return False

    async def ensure_vendor(self) -> int | None:
        """Ensure the Bambu Lab vendor exists and return its ID.

        Returns:
            Vendor ID or None on failure.
        """
        vendors = await self.get_vendors()
        for vendor in vendors:
            if vendor.get("name") == VENDOR_NAME or vendor.get("external_id") == VENDOR_NAME:
                logger.info('Vendor "%s" exists: true', VENDOR_NAME)
                return vendor["id"]

        logger.info('Vendor "%s" exists: false, creating it', VENDOR_NAME)
        vendor = await self.create_vendor(VENDOR_NAME)
        if vendor and vendor.get("id"):
            logger.info('Vendor "%s" successfully created', VENDOR_NAME)
            return vendor["id"]
        return None

    async def ensure_tag_extra_field(self) -> bool:
        """Ensure the 'tag' extra field exists for spools.

        Spoolman requires extra fields to be registered before use.
        The field stores the tray UUID that links a spool to its physical reel.

        Returns:
            True if field exists or was created, False on failure.
        """
        fields = await self.get_spool_fields()
        if any(field.get("key") == TAG_FIELD or field.get("name") == TAG_FIELD for field in fields):
            logger.info("Spoolman extra field '%s' for spools is set: true", TAG_FIELD)
            return True

        logger.info("Spoolman extra field '%s' for spools is set: false", TAG_FIELD)
        return await self.create_tag_field()

    def _get_material_density(self, material: str | None) -> float:
        """Get typical density for a filament material type.

        Args:
            material: Material type (PLA, PETG, ABS, etc.)

        Returns:
            Density in g/cm³
        """
        # Typical densities for common filament materials
        densities = {
            "PLA-CF": 1.29,
            "PLA": 1.24,
            "PETG": 1.27,
            "ABS": 1.04,
            "ASA": 1.07,
            "TPU": 1.21,
            "PA-CF": 1.20,
            "PA": 1.14,  # Nylon
            "PC": 1.20,
            "PVA": 1.23,
            "HIPS": 1.04,
            "PP": 0.90,
            "PET": 1.38,
        }
        if material:
            mat_upper = material.upper()
            for key, density in densities.items():
                if mat_upper == key or mat_upper.startswith(key):
                    return density
        return 1.24  # Default to PLA density

    async def create_filament_from_catalog(
        self,
        catalog_entry: dict,
        material: str,
        vendor_id: int | None,
    ) -> dict:
        """Create an internal filament from an external catalog entry.

        Args:
            catalog_entry: External filament dictionary from /external/filament
            material: Material name as reported by the AMS (e.g. "PLA Basic")
            vendor_id: ID of the Bambu Lab vendor

        Returns:
            Created filament dictionary.

        Raises:
            SpoolmanError: If Spoolman rejects or cannot receive the filament.
        """
        density = catalog_entry.get("density") or self._get_material_density(catalog_entry.get("material"))
        data = {
            "name": catalog_entry.get("name") or material,
            "material": material,
            "density": density,
            "diameter": catalog_entry.get("diameter") or 1.75,
            "spool_weight": EMPTY_SPOOL_WEIGHT,
            "weight": DEFAULT_FILAMENT_WEIGHT,
            "settings_extruder_temp": catalog_entry.get("extruder_temp"),
            "settings_bed_temp": catalog_entry.get("bed_temp"),
            "color_hex": catalog_entry.get("color_hex"),
            "external_id": catalog_entry.get("id"),
            "spool_type": catalog_entry.get("spool_type"),
            "color_hexes": catalog_entry.get("color_hexes"),
            "finish": catalog_entry.get("finish"),
            "multi_color_direction": catalog_entry.get("multi_color_direction"),
            "pattern": catalog_entry.get("pattern"),
            "translucent": catalog_entry.get("translucent"),
            "glow": catalog_entry.get("glow"),
        }
        if vendor_id:
            data["vendor_id"] = vendor_id
        # Spoolman rejects explicit nulls for some of these fields
        data = {key: value for key, value in data.items() if value is not None}

        logger.debug("Creating filament in Spoolman: %s", data)
        result = await self._write("post", "/filament", data, "create filament")
        logger.info("Created filament %s (%s) in Spoolman", result.get("id"), data["name"])
        return result

    async def create_spool(self, filament_id: int, initial_weight: float, tray_uuid: str) -> dict:
        """Create a new spool in Spoolman linked to a physical reel.

        Args:
            filament_id: ID of the internal filament
            initial_weight: Net filament weight of the reel in grams
            tray_uuid: Identity tag of the reel, stored in extra.tag

        Returns:
            Created spool dictionary.

        Raises:
            SpoolmanError: If Spoolman rejects or cannot receive the spool.
        """
        data = {
            "filament_id": filament_id,
            "initial_weight": initial_weight,
            "first_used": datetime.now(timezone.utc).isoformat(),
            "extra": {TAG_FIELD: encode_tag(tray_uuid)},
        }
        logger.debug("Creating spool in Spoolman: %s", data)
        result = await self._write("post", "/spool", data, "create spool")
        logger.info("Created spool %s in Spoolman", result.get("id"))
        return result

    async def update_spool_weight(self, spool_id: int, remaining_weight: float) -> dict:
        """Update remaining weight and last_used of an existing spool.

        Raises:
            SpoolmanError: If Spoolman rejects or cannot receive the update.
        """
        data = {
            "remaining_weight": remaining_weight,
            "last_used": datetime.now(timezone.utc).isoformat(),
        }
        return await self._write("patch", f"/spool/{spool_id}", data, "update spool")

    async def set_spool_tag(self, spool_id: int, tray_uuid: str) -> dict:
        """Attach a reel identity tag to an existing spool.

        Raises:
            SpoolmanError: If Spoolman rejects or cannot receive the update.
        """
        data = {"extra": {TAG_FIELD: encode_tag(tray_uuid)}}
        return await self._write("patch", f"/spool/{spool_id}", data, "merge spool")

    async def _write(self, method: str, path: str, data: dict, action: str) -> dict:
        try:
            client = await self._get_client()
            response = await client.request(method.upper(), f"{self.api_url}{path}", json=data)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Failed to %s in Spoolman: %s, response: %s", action, e, e.response.text)
            raise SpoolmanError(f"Spoolman rejected {action}: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Failed to %s in Spoolman: %s", action, e)
            raise SpoolmanError(f"Could not {action}: {e}") from e
        except ValueError as e:
            logger.error("Spoolman returned an unreadable response to %s: %s", action, e)
            raise SpoolmanError(f"Unreadable Spoolman response to {action}") from e


# Global client instance (initialized on startup)
_spoolman_client: SpoolmanClient | None = None


async def get_spoolman_client() -> SpoolmanClient | None:
    """Get the global Spoolman client instance.

    Returns:
        SpoolmanClient instance or None if not configured.
    """
    return _spoolman_client


async def init_spoolman_client(url: str) -> SpoolmanClient:
    """Initialize the global Spoolman client.

    Args:
        url: Spoolman server URL

    Returns:
        Initialized SpoolmanClient instance.
    """
    global _spoolman_client
    if _spoolman_client:
        await _spoolman_client.close()

    _spoolman_client = SpoolmanClient(url)
    return _spoolman_client


async def close_spoolman_client():
    """Close the global Spoolman client."""
    global _spoolman_client
    if _spoolman_client:
        await _spoolman_client.close()
        _spoolman_client = None
