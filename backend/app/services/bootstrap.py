"""Startup checks and one-time setup of the Spoolman instance."""

import logging

from backend.app.services.spoolman import SpoolmanClient

logger = logging.getLogger(__name__)


class BootstrapError(Exception):
    """Spoolman is not usable; printer monitoring must not start."""


async def bootstrap_spoolman(client: SpoolmanClient) -> int:
    """Verify Spoolman and make sure the vendor and tag field exist.

    Returns:
        The Spoolman vendor id new filaments are created under.

    Raises:
        BootstrapError: If Spoolman is unhealthy or setup fails.
    """
    if not await client.health_check():
        raise BootstrapError(f"Spoolman at {client.base_url} is not healthy")
    logger.info("Spoolman at %s is healthy", client.base_url)

    vendor_id = await client.ensure_vendor()
    if vendor_id is None:
        raise BootstrapError("Could not find or create the Bambu Lab vendor in Spoolman")

    if not await client.ensure_tag_extra_field():
        raise BootstrapError("Could not find or create the 'tag' extra field for spools")

    logger.info("Spoolman bootstrap complete (vendor id %s)", vendor_id)
    return vendor_id
