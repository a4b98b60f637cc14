"""Ingestion of decoded trap messages into storage, alert state and live fan-out."""

from __future__ import annotations

import logging
import time
import zlib
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, List, Mapping, Optional, Set, Tuple, Union

from app.schemas import AlertState, FarmLocation, IngestResult, IngestStatus, StoredReading
from datastore.registry import DeviceRegistry, build_default_registry
from datastore.tables import (
    AlertStateTable,
    FarmLocationTable,
    build_default_alert_table,
    build_default_location_table,
)
from models.records import (
    AlertLevel,
    DecodedMessage,
    LegacyMessage,
    LocationMessage,
    Reading,
    StatusMessage,
)
from services.classifier import RiskClassifier
from services.codec import DecodeError, PayloadCodec
from services.live import LiveHub
from services.notifier import AlertNotifier, build_default_notifier
from settings import get_settings
from storage.reading_log import ReadingLog, build_default_reading_log

logger = logging.getLogger(__name__)


class PipelineClosed(RuntimeError):
    """Raised when a message is offered after shutdown."""


class IngestionPipeline:
    """Turns one inbound message into every side effect it implies.

    Messages are dispatched onto single-thread lanes picked by device id, so one device's
    messages are handled in receipt order while different devices never wait on each
    other's storage round-trips.
    """

    def __init__(
        self,
        codec: PayloadCodec,
        registry: DeviceRegistry,
        classifier: RiskClassifier,
        alerts: AlertStateTable,
        locations: FarmLocationTable,
        readings: ReadingLog,
        hub: LiveHub,
        notifier: AlertNotifier,
        workers: int = 4,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.codec = codec
        self.registry = registry
        self.classifier = classifier
        self.alerts = alerts
        self.locations = locations
        self.readings = readings
        self.hub = hub
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lanes = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ingest-lane-{index}")
            for index in range(max(workers, 1))
        ]
        self._notify_lane = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alert-notify")
        self._pending: Set[Future[Any]] = set()
        self._pending_lock = Lock()
        self._closed = False

    def submit(self, topic: str, payload: Union[bytes, str]) -> Optional[Future[IngestResult]]:
        """Decode and queue a broker message; returns ``None`` when it was dropped."""
        try:
            message = self.codec.decode(topic, payload)
        except DecodeError as exc:
            self._log_decode_failure(topic, exc)
            return None
        try:
            return self._dispatch(message)
        except PipelineClosed:
            logger.warning("Pipeline closed, message not ingested", extra={"topic": topic})
            return None

    def ingest(
        self, topic: str, payload: Union[bytes, str], timeout: Optional[float] = None
    ) -> IngestResult:
        """Process a broker-shaped message and wait for the outcome."""
        try:
            message = self.codec.decode(topic, payload)
        except DecodeError as exc:
            self._log_decode_failure(topic, exc)
            return IngestResult(status=IngestStatus.malformed, reason=str(exc))
        return self._dispatch(message).result(timeout=timeout)

    def ingest_record(
        self, record: Mapping[str, Any], timeout: Optional[float] = None
    ) -> IngestResult:
        """Process a legacy structured record (webhook path) and wait for the outcome."""
        try:
            message = self.codec.decode_legacy(record)
        except DecodeError as exc:
            self._log_decode_failure(self.codec.legacy_topic, exc)
            return IngestResult(status=IngestStatus.malformed, reason=str(exc))
        return self._dispatch(message).result(timeout=timeout)

    def process_message(self, message: DecodedMessage) -> IngestResult:
        if isinstance(message, LocationMessage):
            return self._apply_location(message)
        return self._apply_reading(message)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued message and the notifications it raised are handled."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = set(self._pending)
            if not pending:
                return True
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            _, not_done = wait(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self) -> None:
        """Stop accepting messages and let in-flight ones finish."""
        with self._pending_lock:
            self._closed = True
        for lane in self._lanes:
            lane.shutdown(wait=True)
        # Lanes are drained, so no further notifications can be queued.
        self._notify_lane.shutdown(wait=True)
        self._best_effort("close_notifier", [], self.notifier.close)

    def _dispatch(self, message: DecodedMessage) -> Future[IngestResult]:
        lane = self._lanes[zlib.crc32(message.device_id.encode("utf-8")) % len(self._lanes)]
        with self._pending_lock:
            if self._closed:
                raise PipelineClosed("Ingestion pipeline is shut down.")
            future = lane.submit(self.process_message, message)
            self._pending.add(future)
        future.add_done_callback(self._clear_future)
        return future

    def _clear_future(self, future: Future[Any]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _apply_reading(self, message: Union[StatusMessage, LegacyMessage]) -> IngestResult:
        device_id = message.device_id
        errors: List[str] = []
        farm_id = self._resolve_farm(device_id, message.kind.value, errors)
        if farm_id is None:
            return self._dropped(device_id, errors)

        level = self.classifier.classify(message.moth_count, message.precomputed_level)
        reading = _reading_from(message, captured_at=self._clock())

        # History and alert state are independent targets; neither failure blocks the other.
        self._best_effort(
            "append_reading",
            errors,
            self.readings.append,
            StoredReading.from_reading(reading, farm_id=farm_id, alert_level=level),
            device_id=device_id,
        )
        state = AlertState(
            farm_id=farm_id,
            alert_level=level,
            last_moth_count=reading.moth_count,
            last_temperature=reading.temperature,
            last_larva_density=reading.larva_density,
            last_device_id=device_id,
            last_updated=reading.captured_at,
        )
        upserted, written = self._best_effort(
            "upsert_alert", errors, self.alerts.upsert, state, farm_id=farm_id
        )
        if upserted and not written:
            logger.info(
                "Stale reading left alert state unchanged",
                extra={"device_id": device_id, "farm_id": farm_id},
            )
        self._best_effort(
            "publish_live", errors, self.hub.publish_reading, farm_id, reading, level,
            device_id=device_id,
        )
        if written and level is AlertLevel.red:
            self._best_effort(
                "queue_notify", errors, self._queue_notification, state, farm_id=farm_id
            )

        logger.info(
            "Reading ingested",
            extra={
                "device_id": device_id,
                "farm_id": farm_id,
                "kind": message.kind.value,
                "alert_level": level.value,
            },
        )
        return IngestResult(
            status=IngestStatus.stored,
            device_id=device_id,
            farm_id=farm_id,
            alert_level=level,
            errors=errors,
        )

    def _apply_location(self, message: LocationMessage) -> IngestResult:
        device_id = message.device_id
        errors: List[str] = []
        farm_id = self._resolve_farm(device_id, message.kind.value, errors)
        if farm_id is None:
            return self._dropped(device_id, errors)

        location = FarmLocation(
            farm_id=farm_id,
            latitude=message.latitude,
            longitude=message.longitude,
            device_id=device_id,
            updated_at=self._clock(),
        )
        self._best_effort(
            "update_location", errors, self.locations.update_location, location, farm_id=farm_id
        )
        self._best_effort(
            "publish_live",
            errors,
            self.hub.publish_location,
            device_id,
            farm_id,
            message.latitude,
            message.longitude,
            device_id=device_id,
        )
        logger.info(
            "Farm location updated",
            extra={"device_id": device_id, "farm_id": farm_id, "kind": message.kind.value},
        )
        return IngestResult(
            status=IngestStatus.location_updated,
            device_id=device_id,
            farm_id=farm_id,
            errors=errors,
        )

    def _queue_notification(self, state: AlertState) -> None:
        """Hand a Red alert to the notification worker so slow delivery never holds a lane."""
        with self._pending_lock:
            future = self._notify_lane.submit(self._send_notification, state)
            self._pending.add(future)
        future.add_done_callback(self._clear_future)

    def _send_notification(self, state: AlertState) -> None:
        try:
            self.notifier.notify(state)
        except Exception:
            logger.exception(
                "Alert notification failed",
                extra={"operation": "notify", "farm_id": state.farm_id},
            )

    def _resolve_farm(self, device_id: str, kind: str, errors: List[str]) -> Optional[str]:
        found, farm_id = self._best_effort(
            "lookup_device", errors, self.registry.lookup, device_id, device_id=device_id
        )
        if found and farm_id is None:
            logger.warning(
                "Dropping message from unregistered device",
                extra={"device_id": device_id, "kind": kind},
            )
        return farm_id

    @staticmethod
    def _dropped(device_id: str, errors: List[str]) -> IngestResult:
        if errors:
            return IngestResult(
                status=IngestStatus.failed,
                device_id=device_id,
                reason="device lookup failed",
                errors=errors,
            )
        return IngestResult(
            status=IngestStatus.unregistered,
            device_id=device_id,
            reason=f"Device {device_id!r} is not registered to a farm.",
        )

    @staticmethod
    def _best_effort(
        operation: str, errors: List[str], fn: Callable[..., Any], *args: Any, **context: Any
    ) -> Tuple[bool, Any]:
        try:
            return True, fn(*args)
        except Exception:
            logger.exception(
                "Best-effort step failed", extra={"operation": operation, **context}
            )
            errors.append(operation)
            return False, None

    @staticmethod
    def _log_decode_failure(topic: str, exc: DecodeError) -> None:
        logger.warning(
            "Discarding undecodable message: %s",
            exc,
            extra={"topic": topic, "reason": exc.reason},
        )


def _reading_from(message: Union[StatusMessage, LegacyMessage], captured_at: datetime) -> Reading:
    degree_days = larva_density = None
    if isinstance(message, LegacyMessage):
        degree_days = message.degree_days
        larva_density = message.larva_density
    return Reading(
        device_id=message.device_id,
        moth_count=message.moth_count,
        temperature=message.temperature,
        captured_at=captured_at,
        degree_days=degree_days,
        larva_density=larva_density,
    )


@lru_cache
def build_default_pipeline(workers: Optional[int] = None) -> IngestionPipeline:
    """Factory that wires the pipeline with the configured stores."""
    settings = get_settings()
    return IngestionPipeline(
        codec=PayloadCodec(settings.topic_namespace, settings.legacy_topic),
        registry=build_default_registry(),
        classifier=RiskClassifier(settings.red_threshold, settings.yellow_threshold),
        alerts=build_default_alert_table(),
        locations=build_default_location_table(),
        readings=build_default_reading_log(),
        hub=LiveHub(),
        notifier=build_default_notifier(),
        workers=workers or settings.ingest_workers,
    )
