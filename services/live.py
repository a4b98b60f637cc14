"""Live trap state and fan-out to connected dashboard sessions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Protocol

from app.schemas import LiveEvent, TrapState
from models.records import AlertLevel, Reading

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


class Subscriber(Protocol):
    def deliver(self, event: Event) -> None:
        ...


class QueueSubscriber:
    """Hands events from ingestion threads to an asyncio consumer such as a WebSocket."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 256) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

    def deliver(self, event: Event) -> None:
        self.loop.call_soon_threadsafe(self._put, event)

    async def get(self) -> Event:
        return await self.queue.get()

    def _put(self, event: Event) -> None:
        if self.queue.full():
            # Slow consumer: drop the oldest update, the snapshot fields converge anyway.
            self.queue.get_nowait()
            logger.warning("Live subscriber queue full, dropped oldest event")
        self.queue.put_nowait(event)


class CallbackSubscriber:
    def __init__(self, callback: Callable[[Event], None]) -> None:
        self.callback = callback

    def deliver(self, event: Event) -> None:
        self.callback(event)


class LiveHub:
    """Owns the per-trap state map and the set of live subscribers.

    A new subscriber receives a snapshot taken under the same lock that registers it, so
    every later update reaches it either through the snapshot or as an event.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._traps: Dict[str, TrapState] = {}
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Event:
        """Register ``subscriber`` and return the snapshot it should render first."""
        with self._lock:
            self._subscribers.append(subscriber)
            snapshot = self._snapshot_locked()
            count = len(self._subscribers)
        logger.info("Live subscriber connected", extra={"subscribers": count})
        return snapshot

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
            count = len(self._subscribers)
        logger.info("Live subscriber disconnected", extra={"subscribers": count})

    def snapshot(self) -> Event:
        with self._lock:
            return self._snapshot_locked()

    def trap(self, device_id: str) -> Optional[TrapState]:
        with self._lock:
            state = self._traps.get(device_id)
            return state.model_copy() if state else None

    def publish_reading(
        self, farm_id: str, reading: Reading, alert_level: AlertLevel
    ) -> LiveEvent:
        return self._publish(
            "reading",
            reading.device_id,
            farm_id,
            moth_count=reading.moth_count,
            temperature=reading.temperature,
            alert_level=alert_level,
            last_updated=reading.captured_at,
        )

    def publish_location(
        self, device_id: str, farm_id: str, latitude: float, longitude: float
    ) -> LiveEvent:
        return self._publish(
            "location",
            device_id,
            farm_id,
            latitude=latitude,
            longitude=longitude,
            last_updated=self._clock(),
        )

    def _publish(self, event_type: str, device_id: str, farm_id: str, **changes: Any) -> LiveEvent:
        with self._lock:
            current = self._traps.get(device_id) or TrapState()
            updated = current.model_copy(update={"farm_id": farm_id, **changes})
            self._traps[device_id] = updated
            event = LiveEvent(
                type=event_type,
                device_id=device_id,
                farm_id=farm_id,
                data=updated.model_dump(mode="json"),
                timestamp=self._clock(),
            )
            subscribers = list(self._subscribers)

        payload = event.model_dump(mode="json")
        for subscriber in subscribers:
            try:
                subscriber.deliver(payload)
            except Exception:
                logger.exception(
                    "Dropping live subscriber after delivery failure",
                    extra={"device_id": device_id},
                )
                self.unsubscribe(subscriber)
        return event

    def _snapshot_locked(self) -> Event:
        return {
            "type": "initial_state",
            "traps": {
                device_id: state.model_dump(mode="json")
                for device_id, state in self._traps.items()
            },
            "timestamp": self._clock().isoformat(),
        }
