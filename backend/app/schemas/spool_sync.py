from pydantic import BaseModel, Field


class SpoolmanStatus(BaseModel):
    """Spoolman connection status."""

    url: str | None
    connected: bool
    vendor_id: int | None = None


class ServiceStatus(BaseModel):
    version: str
    mode: str  # "automatic" or "manual"
    monitoring: bool  # fleet monitor running (false when startup checks failed)
    printers: int
    spoolman: SpoolmanStatus


class PrinterStatus(BaseModel):
    id: int
    name: str
    serial_number: str
    ip_address: str
    status: str  # disconnected, connecting, connected, reconciling, error
    running: bool
    reconciling: bool
    update_interval: float
    mode: str
    last_report: str | None = None  # last MQTT report of any kind
    last_ams_update: str | None = None
    last_reconciled: str | None = None
    next_update: str | None = None


class SlotViewResponse(BaseModel):
    """One row of a printer's published slot view."""

    slot: str  # e.g. "A0"
    ams_id: int
    tray_id: int
    kind: str  # empty, foreign, own_brand
    tray_type: str
    tray_sub_brands: str
    tray_color: str
    remain: int
    tray_weight: int
    tray_uuid: str
    action: str
    action_label: str
    pending: bool  # operator may confirm the action
    executed: bool
    error: str | None = None
    spool_id: int | None = None
    filament_id: int | None = None
    catalog_id: str | None = None


class SpoolActionRequest(BaseModel):
    """Operator confirmation of a pending slot action."""

    printer_id: int
    slot: str = Field(..., pattern=r"^[A-Z]\d$")  # e.g. "B2"
    # Ids as shown in the slot view; rejected if the view has moved on
    spool_id: int | None = None
    filament_id: int | None = None
    catalog_id: str | None = None


class SpoolActionResult(BaseModel):
    success: bool
    action: str
    slot: str
    spool_id: int | None = None
