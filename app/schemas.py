"""Pydantic schemas for persisted records and the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.records import AlertLevel, Reading


class IngestStatus(str, Enum):
    """Terminal outcomes of pushing one message through the pipeline."""

    stored = "stored"
    location_updated = "location_updated"
    malformed = "malformed"
    unregistered = "unregistered"
    failed = "failed"


class AlertState(BaseModel):
    """Current alert record for one farm."""

    farm_id: str
    alert_level: AlertLevel
    last_moth_count: int = Field(..., ge=0)
    last_temperature: Optional[float] = None
    last_larva_density: Optional[float] = None
    last_device_id: Optional[str] = None
    last_updated: datetime


class FarmLocation(BaseModel):
    """Last reported coordinates for a farm."""

    farm_id: str
    latitude: float
    longitude: float
    device_id: Optional[str] = None
    updated_at: datetime


class StoredReading(BaseModel):
    """A reading as appended to the per-device history log."""

    device_id: str
    farm_id: Optional[str] = None
    moth_count: int = Field(..., ge=0)
    temperature: float
    degree_days: Optional[float] = None
    larva_density: Optional[float] = None
    alert_level: Optional[AlertLevel] = None
    captured_at: datetime

    @classmethod
    def from_reading(
        cls,
        reading: Reading,
        farm_id: Optional[str] = None,
        alert_level: Optional[AlertLevel] = None,
    ) -> "StoredReading":
        return cls(
            device_id=reading.device_id,
            farm_id=farm_id,
            moth_count=reading.moth_count,
            temperature=reading.temperature,
            degree_days=reading.degree_days,
            larva_density=reading.larva_density,
            alert_level=alert_level,
            captured_at=reading.captured_at,
        )


class TrapState(BaseModel):
    """Latest known view of a trap, merged from status and location reports."""

    farm_id: Optional[str] = None
    moth_count: Optional[int] = None
    temperature: Optional[float] = None
    alert_level: Optional[AlertLevel] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_updated: Optional[datetime] = None


class LiveEvent(BaseModel):
    """Incremental update delivered to connected dashboard sessions."""

    type: str
    device_id: str
    farm_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class IngestResult(BaseModel):
    """Outcome of a single ingestion, returned by the webhook endpoint."""

    status: IngestStatus
    device_id: Optional[str] = None
    farm_id: Optional[str] = None
    alert_level: Optional[AlertLevel] = None
    reason: Optional[str] = None
    errors: List[str] = Field(
        default_factory=list,
        description="Best-effort side effects that failed without aborting ingestion.",
    )


class BrokerMessage(BaseModel):
    """A raw topic/payload pair, as a broker webhook or test harness sends it."""

    topic: str = Field(..., min_length=1)
    payload: str


class InjectResponse(BaseModel):
    accepted: bool
    topic: str


class HealthResponse(BaseModel):
    status: str
    bridge_state: str
    live_subscribers: int
