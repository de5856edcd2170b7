"""
Device telemetry record and its JSON wire decoder.

Wire shape:
    {"imei": "...", "lat": 1.5, "lng": 2.5, "gps_ts": 1000, "uptime": 50,
     "csq": 20, "vbat": 380, "up_vbat": 390, "ip": "10.0.0.1"}

Unknown keys are ignored. Only "imei" is required; any other absent key takes its zero value
(0, 0.0 or ""). A key that is present must carry its JSON type, and integer fields must fit
their column width. No range or plausibility checks are made.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from emqx_pg_bridge.errors import PayloadMalformed

Int16 = Annotated[int, Field(ge=-(2**15), le=2**15 - 1)]
Int64 = Annotated[int, Field(ge=-(2**63), le=2**63 - 1)]

# Insert order; must match the target table layout.
COLUMNS: tuple[str, ...] = (
    "imei",
    "lat",
    "lng",
    "gps_ts",
    "uptime",
    "csq",
    "vbat",
    "up_vbat",
    "ip",
    "receivetime",
)


class TelemetryRecord(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")

    imei: str
    # absent keys are stored as zero values
    lat: float = 0.0
    lng: float = 0.0
    gps_ts: Int64 = 0
    uptime: Int64 = 0
    csq: Int16 = 0
    vbat: Int16 = 0
    up_vbat: Int16 = 0
    ip: str = ""

    def to_row(self, received_at: datetime) -> tuple[Any, ...]:
        """Column values in COLUMNS order, with receivetime stamped by the caller."""
        return (
            self.imei,
            self.lat,
            self.lng,
            self.gps_ts,
            self.uptime,
            self.csq,
            self.vbat,
            self.up_vbat,
            self.ip,
            received_at,
        )


def decode_record(payload: bytes | str) -> TelemetryRecord:
    """Decode one inbound payload. Raises PayloadMalformed on any JSON or type error."""
    try:
        return TelemetryRecord.model_validate_json(payload)
    except ValidationError as exc:
        raise PayloadMalformed(_summarize(exc)) from exc


def _summarize(exc: ValidationError) -> str:
    errors = exc.errors(include_url=False, include_input=False)
    parts = []
    for err in errors[:3]:
        loc = ".".join(str(p) for p in err["loc"]) or "<payload>"
        parts.append(f"{loc}: {err['msg']}")
    if len(errors) > 3:
        parts.append(f"(+{len(errors) - 3} more)")
    return "; ".join(parts)
