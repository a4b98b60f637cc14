from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_NAMESPACE_ENV = "LADYBUG_TOPIC_NAMESPACE"
_LEGACY_TOPIC_ENV = "LADYBUG_LEGACY_TOPIC"
_BROKER_HOST_ENV = "MQTT_BROKER_HOST"
_BROKER_PORT_ENV = "MQTT_BROKER_PORT"
_CLIENT_ID_ENV = "MQTT_CLIENT_ID"
_USERNAME_ENV = "MQTT_USERNAME"
_PASSWORD_ENV = "MQTT_PASSWORD"
_KEEPALIVE_ENV = "MQTT_KEEPALIVE"
_QOS_ENV = "MQTT_QOS"
_RECONNECT_MIN_ENV = "MQTT_RECONNECT_MIN_DELAY"
_RECONNECT_MAX_ENV = "MQTT_RECONNECT_MAX_DELAY"
_SUBSCRIBE_RETRIES_ENV = "MQTT_SUBSCRIBE_RETRIES"
_PUBLISH_RESULTS_ENV = "MQTT_PUBLISH_RESULTS"
_RED_THRESHOLD_ENV = "ALERT_RED_THRESHOLD"
_YELLOW_THRESHOLD_ENV = "ALERT_YELLOW_THRESHOLD"
_REJECT_STALE_ENV = "ALERT_REJECT_STALE"
_WEBHOOK_URL_ENV = "ALERT_WEBHOOK_URL"
_ALERT_PATH_ENV = "ALERT_STATE_PATH"
_LOCATION_PATH_ENV = "FARM_LOCATION_PATH"
_REGISTRY_PATH_ENV = "DEVICE_REGISTRY_PATH"
_READING_ROOT_ENV = "READING_LOG_ROOT"
_READING_CACHE_ENV = "READING_LOG_CACHE_SIZE"
_WORKER_COUNT_ENV = "INGEST_WORKER_COUNT"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    topic_namespace: str
    legacy_topic: str
    broker_host: Optional[str]
    broker_port: int
    client_id: str
    broker_username: Optional[str]
    broker_password: Optional[str]
    keepalive: int
    qos: int
    reconnect_min_delay: float
    reconnect_max_delay: float
    subscribe_retries: int
    publish_results: bool
    red_threshold: int
    yellow_threshold: int
    reject_stale: bool
    alert_webhook_url: Optional[str]
    alert_state_path: Optional[str]
    farm_location_path: Optional[str]
    device_registry_path: Optional[str]
    reading_log_root: Optional[str]
    reading_log_cache_size: int
    ingest_workers: int
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if not candidate:
        return default
    return candidate in {"1", "true", "yes", "on"}


def _read_qos(default: int) -> int:
    value = os.getenv(_QOS_ENV)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed in (0, 1, 2) else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    namespace = _read_str_env(_NAMESPACE_ENV, "ladybug")
    reconnect_min = _read_positive_float(_RECONNECT_MIN_ENV, 1.0)
    reconnect_max = _read_positive_float(_RECONNECT_MAX_ENV, 60.0)
    return Settings(
        topic_namespace=namespace,
        legacy_topic=_read_str_env(_LEGACY_TOPIC_ENV, f"{namespace}/ingest"),
        broker_host=_read_optional_env(_BROKER_HOST_ENV, None),
        broker_port=_read_positive_int(_BROKER_PORT_ENV, 1883),
        client_id=_read_str_env(_CLIENT_ID_ENV, "ladybug-ingest"),
        broker_username=_read_optional_env(_USERNAME_ENV, None),
        broker_password=_read_optional_env(_PASSWORD_ENV, None),
        keepalive=_read_positive_int(_KEEPALIVE_ENV, 60),
        qos=_read_qos(1),
        reconnect_min_delay=reconnect_min,
        reconnect_max_delay=max(reconnect_max, reconnect_min),
        subscribe_retries=_read_positive_int(_SUBSCRIBE_RETRIES_ENV, 3),
        publish_results=_read_bool(_PUBLISH_RESULTS_ENV, True),
        red_threshold=_read_positive_int(_RED_THRESHOLD_ENV, 20),
        yellow_threshold=_read_positive_int(_YELLOW_THRESHOLD_ENV, 10),
        reject_stale=_read_bool(_REJECT_STALE_ENV, False),
        alert_webhook_url=_read_optional_env(_WEBHOOK_URL_ENV, None),
        alert_state_path=_read_optional_env(_ALERT_PATH_ENV, "./tmp/alert_states.json"),
        farm_location_path=_read_optional_env(_LOCATION_PATH_ENV, "./tmp/farm_locations.json"),
        device_registry_path=_read_optional_env(_REGISTRY_PATH_ENV, "./tmp/devices.json"),
        reading_log_root=_read_optional_env(_READING_ROOT_ENV, "./tmp/readings"),
        reading_log_cache_size=_read_positive_int(_READING_CACHE_ENV, 500),
        ingest_workers=_read_positive_int(_WORKER_COUNT_ENV, 4),
        log_level=_read_log_level("INFO"),
    )
