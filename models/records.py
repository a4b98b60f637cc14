"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class AlertLevel(str, Enum):
    """Ordered pest risk classification."""

    green = "Green"
    yellow = "Yellow"
    red = "Red"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {AlertLevel.green: 0, AlertLevel.yellow: 1, AlertLevel.red: 2}


class MessageKind(str, Enum):
    status = "status"
    location = "location"
    legacy = "legacy"


@dataclass(frozen=True, slots=True)
class StatusMessage:
    """Compact CSV status report published on ``<ns>/<device_id>/status``."""

    device_id: str
    moth_count: int
    temperature: float
    status_code: int
    precomputed_level: AlertLevel

    kind = MessageKind.status


@dataclass(frozen=True, slots=True)
class LocationMessage:
    """Position report published on ``<ns>/<device_id>/location``."""

    device_id: str
    latitude: float
    longitude: float

    kind = MessageKind.location


@dataclass(frozen=True, slots=True)
class LegacyMessage:
    """Structured JSON record from the aggregate ingestion path."""

    device_id: str
    moth_count: int
    temperature: float
    degree_days: Optional[float] = None
    larva_density: Optional[float] = None
    precomputed_level: Optional[AlertLevel] = None

    kind = MessageKind.legacy


DecodedMessage = Union[StatusMessage, LocationMessage, LegacyMessage]


@dataclass(frozen=True, slots=True)
class Reading:
    """A single immutable trap observation, stamped at ingestion."""

    device_id: str
    moth_count: int
    temperature: float
    captured_at: datetime
    degree_days: Optional[float] = None
    larva_density: Optional[float] = None
