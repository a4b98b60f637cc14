"""Decoding of raw trap messages into typed domain messages.

Two wire shapes are accepted:

* topic-routed CSV on ``<namespace>/<device_id>/status`` (``moth_count,temperature,status_code``)
  and ``<namespace>/<device_id>/location`` (``latitude,longitude``);
* a structured JSON record on the aggregate legacy topic.

The codec is pure. Every failure is raised as a :class:`DecodeError` subclass and the
whole message is rejected; nothing is ever partially accepted.
"""

from __future__ import annotations

import json
import math
from typing import Any, Mapping, Optional, Union

from models.records import (
    AlertLevel,
    DecodedMessage,
    LegacyMessage,
    LocationMessage,
    MessageKind,
    StatusMessage,
)

_STATUS_CODE_LEVELS = {
    1: AlertLevel.green,
    2: AlertLevel.yellow,
    3: AlertLevel.red,
}

# Checked in this order; the first label found wins.
_LABEL_PRIORITY = (
    ("red", AlertLevel.red),
    ("yellow", AlertLevel.yellow),
    ("green", AlertLevel.green),
)


class DecodeError(ValueError):
    """Base class for messages that cannot be turned into a domain message."""

    reason = "decode error"


class MalformedTopic(DecodeError):
    reason = "malformed topic"

    def __init__(self, topic: str) -> None:
        super().__init__(f"Malformed topic {topic!r}.")
        self.topic = topic


class UnknownMessageKind(DecodeError):
    reason = "unknown message kind"

    def __init__(self, topic: str, kind: str) -> None:
        super().__init__(f"Unknown message kind {kind!r} on topic {topic!r}.")
        self.topic = topic
        self.kind = kind


class MalformedPayload(DecodeError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Malformed payload: {reason}.")
        self.reason = reason


def level_from_status_code(status_code: int) -> AlertLevel:
    """Map a device status code to a level; unknown codes fail safe to green."""
    return _STATUS_CODE_LEVELS.get(status_code, AlertLevel.green)


def level_from_label(label: Optional[str]) -> Optional[AlertLevel]:
    """Find a precomputed level inside free text such as ``"RED - spray now"``."""
    if not label:
        return None
    lowered = label.lower()
    for needle, level in _LABEL_PRIORITY:
        if needle in lowered:
            return level
    return None


def first_present(record: Mapping[str, Any], *aliases: str) -> Any:
    """Return the first non-null value among ``aliases``."""
    for alias in aliases:
        value = record.get(alias)
        if value is not None:
            return value
    return None


class PayloadCodec:
    """Turns ``(topic, payload)`` pairs into typed messages."""

    def __init__(self, namespace: str = "ladybug", legacy_topic: Optional[str] = None) -> None:
        self.namespace = namespace.strip("/").lower()
        self.legacy_topic = (legacy_topic or f"{self.namespace}/ingest").strip("/").lower()

    @property
    def subscriptions(self) -> list[str]:
        """Wildcard topics covering every message shape this codec accepts."""
        return [
            f"{self.namespace}/+/{MessageKind.status.value}",
            f"{self.namespace}/+/{MessageKind.location.value}",
            self.legacy_topic,
        ]

    def decode(self, topic: str, payload: Union[bytes, str]) -> DecodedMessage:
        text = self._payload_text(payload)
        if topic.strip("/").lower() == self.legacy_topic:
            return self.decode_legacy_text(text)

        device_id, kind = self.parse_topic(topic)
        if kind is MessageKind.status:
            return self._decode_status(device_id, text)
        return self._decode_location(device_id, text)

    def parse_topic(self, topic: str) -> tuple[str, MessageKind]:
        parts = topic.split("/")
        if len(parts) != 3 or parts[0].lower() != self.namespace:
            raise MalformedTopic(topic)

        # Topic-routed device ids are case-insensitive; legacy records keep theirs.
        device_id = parts[1].strip().lower()
        if not device_id:
            raise MalformedTopic(topic)

        kind = parts[2].lower()
        if kind == MessageKind.status.value:
            return device_id, MessageKind.status
        if kind == MessageKind.location.value:
            return device_id, MessageKind.location
        raise UnknownMessageKind(topic, parts[2])

    def decode_legacy_text(self, text: str) -> LegacyMessage:
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedPayload("legacy payload is not valid JSON") from exc
        if not isinstance(record, dict):
            raise MalformedPayload("legacy payload must be a JSON object")
        return self.decode_legacy(record)

    def decode_legacy(self, record: Mapping[str, Any]) -> LegacyMessage:
        device_id = record.get("device_id")
        if not isinstance(device_id, str) or not device_id.strip():
            raise MalformedPayload("missing device_id")

        moth_count = _coerce_count(record.get("moth_count"), default=0)
        temperature = _coerce_float(
            first_present(record, "temperature_c", "temperature"), "temperature", default=0.0
        )
        degree_days_raw = first_present(record, "computed_degree_days", "degree_days")
        degree_days = (
            None if degree_days_raw is None else _coerce_float(degree_days_raw, "degree_days")
        )
        larva_raw = record.get("larva_density")
        larva_density = None if larva_raw is None else _coerce_float(larva_raw, "larva_density")

        status_label = record.get("computed_status")
        precomputed = level_from_label(status_label) if isinstance(status_label, str) else None

        return LegacyMessage(
            device_id=device_id.strip(),
            moth_count=moth_count,
            temperature=temperature,
            degree_days=degree_days,
            larva_density=larva_density,
            precomputed_level=precomputed,
        )

    def _decode_status(self, device_id: str, text: str) -> StatusMessage:
        fields = _split_fields(text, expected=3, label="status")
        moth_count = _parse_count(fields[0])
        temperature = _parse_float(fields[1], "temperature")
        status_code = _parse_int(fields[2], "status_code")
        return StatusMessage(
            device_id=device_id,
            moth_count=moth_count,
            temperature=temperature,
            status_code=status_code,
            precomputed_level=level_from_status_code(status_code),
        )

    def _decode_location(self, device_id: str, text: str) -> LocationMessage:
        fields = _split_fields(text, expected=2, label="location")
        return LocationMessage(
            device_id=device_id,
            latitude=_parse_float(fields[0], "latitude"),
            longitude=_parse_float(fields[1], "longitude"),
        )

    @staticmethod
    def _payload_text(payload: Union[bytes, str]) -> str:
        if isinstance(payload, (bytes, bytearray)):
            try:
                return bytes(payload).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MalformedPayload("payload is not valid UTF-8") from exc
        return payload


def _split_fields(text: str, expected: int, label: str) -> list[str]:
    fields = [field.strip() for field in text.strip().split(",")]
    if len(fields) != expected:
        raise MalformedPayload(
            f"{label} payload needs {expected} fields, got {len(fields)}"
        )
    return fields


def _parse_int(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise MalformedPayload(f"invalid {name} {raw!r}") from exc


def _parse_count(raw: str) -> int:
    count = _parse_int(raw, "moth_count")
    if count < 0:
        raise MalformedPayload(f"negative moth_count {count}")
    return count


def _parse_float(raw: str, name: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise MalformedPayload(f"invalid {name} {raw!r}") from exc
    if not math.isfinite(value):
        raise MalformedPayload(f"invalid {name} {raw!r}")
    return value


def _coerce_float(value: Any, name: str, default: Optional[float] = None) -> float:
    if value is None and default is not None:
        return default
    if isinstance(value, bool):
        raise MalformedPayload(f"invalid {name} {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise MalformedPayload(f"invalid {name} {value!r}")
        return float(value)
    if isinstance(value, str):
        return _parse_float(value.strip(), name)
    raise MalformedPayload(f"invalid {name} {value!r}")


def _coerce_count(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise MalformedPayload(f"invalid moth_count {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise MalformedPayload(f"invalid moth_count {value!r}")
        value = int(value)
    if isinstance(value, str):
        return _parse_count(value.strip())
    if not isinstance(value, int):
        raise MalformedPayload(f"invalid moth_count {value!r}")
    if value < 0:
        raise MalformedPayload(f"negative moth_count {value}")
    return value
