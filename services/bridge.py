"""Connection to the MQTT broker that feeds the ingestion pipeline."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional, Sequence, Union

import paho.mqtt.client as mqtt

from app.schemas import IngestResult
from services.live import CallbackSubscriber, Event
from services.pipeline import IngestionPipeline, build_default_pipeline
from settings import get_settings

logger = logging.getLogger(__name__)

# Legacy device ids may carry characters a publish topic level cannot.
_TOPIC_RESERVED = frozenset("/+#\x00")

ClientFactory = Callable[[], mqtt.Client]


class BridgeState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    stopped = "stopped"


class BrokerBridge:
    """Keeps one broker connection alive and hands every inbound message to the pipeline.

    A supervisor thread drives ``disconnected -> connecting -> connected`` and falls back
    to ``disconnected`` on any transport failure, waiting a capped exponential delay
    before the next attempt. It only leaves the cycle when :meth:`stop` is called.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        host: str,
        port: int = 1883,
        client_id: str = "ladybug-ingest",
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        qos: int = 1,
        topics: Optional[Sequence[str]] = None,
        reconnect_min_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        subscribe_retries: int = 3,
        publish_results: bool = True,
        client_factory: Optional[ClientFactory] = None,
        loop_timeout: float = 1.0,
    ) -> None:
        self.pipeline = pipeline
        self.host = host
        self.port = port
        self.client_id = client_id
        self.username = username
        self.password = password
        self.keepalive = keepalive
        self.qos = qos
        self.topics = list(topics) if topics is not None else pipeline.codec.subscriptions
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = max(reconnect_max_delay, reconnect_min_delay)
        self.subscribe_retries = max(subscribe_retries, 1)
        self.publish_results = publish_results
        self.loop_timeout = loop_timeout
        self._client_factory = client_factory or self._default_client
        self._client: Optional[mqtt.Client] = None
        self._state = BridgeState.disconnected
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._attempt = 0
        self._results = CallbackSubscriber(self._publish_result)

    @property
    def state(self) -> BridgeState:
        with self._state_lock:
            return self._state

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        if self.publish_results:
            self.pipeline.hub.subscribe(self._results)
        self._thread = threading.Thread(target=self._run, name="mqtt-bridge", daemon=True)
        self._thread.start()
        logger.info("Broker bridge started", extra={"topic": ",".join(self.topics)})

    def stop(self, timeout: float = 10.0) -> None:
        """Disconnect gracefully and wait for the supervisor to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Broker bridge did not stop within %.1fs", timeout)
            self._thread = None
        if self.publish_results:
            self.pipeline.hub.unsubscribe(self._results)
        self._set_state(BridgeState.stopped)

    def inject(self, topic: str, payload: Union[bytes, str]) -> Optional[Future[IngestResult]]:
        """Feed a synthetic message through the same path as a broker delivery."""
        logger.info("Injecting synthetic message", extra={"topic": topic})
        return self.pipeline.submit(topic, payload)

    def next_delay(self, attempt: int) -> float:
        exponent = min(max(attempt - 1, 0), 30)
        return min(self.reconnect_max_delay, self.reconnect_min_delay * (2 ** exponent))

    def _default_client(self) -> mqtt.Client:
        return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)

    def _run(self) -> None:
        client = self._client_factory()
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        if self.username:
            client.username_pw_set(self.username, self.password)
        self._client = client

        try:
            while not self._stop.is_set():
                self._set_state(BridgeState.connecting)
                try:
                    client.connect(self.host, self.port, keepalive=self.keepalive)
                except OSError as exc:
                    self._set_state(BridgeState.disconnected)
                    logger.warning(
                        "Broker connection failed: %s", exc, extra={"reason": type(exc).__name__}
                    )
                    self._wait_before_retry()
                    continue

                rc = mqtt.MQTT_ERR_SUCCESS
                while not self._stop.is_set() and rc == mqtt.MQTT_ERR_SUCCESS:
                    rc = client.loop(timeout=self.loop_timeout)

                if self._stop.is_set():
                    if rc == mqtt.MQTT_ERR_SUCCESS:
                        client.disconnect()
                    break

                self._set_state(BridgeState.disconnected)
                logger.warning(
                    "Broker connection lost", extra={"reason": mqtt.error_string(rc)}
                )
                self._wait_before_retry()
        finally:
            self._client = None
            self._set_state(BridgeState.stopped)

    def _wait_before_retry(self) -> None:
        self._attempt += 1
        delay = self.next_delay(self._attempt)
        logger.warning(
            "Reconnecting to broker",
            extra={"attempt": self._attempt, "delay_s": round(delay, 3)},
        )
        self._stop.wait(delay)

    def _on_connect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            logger.error("Broker refused connection", extra={"reason": str(reason_code)})
            return
        self._attempt = 0
        self._set_state(BridgeState.connected)
        self._subscribe(client)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if not self._stop.is_set():
            self._set_state(BridgeState.disconnected)
        logger.info("Broker disconnected", extra={"reason": str(reason_code)})

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        # An exception here would tear down paho's network loop.
        try:
            self.pipeline.submit(message.topic, message.payload)
        except Exception:
            logger.exception("Failed to hand message to pipeline", extra={"topic": message.topic})

    def _subscribe(self, client: mqtt.Client) -> None:
        subscriptions = [(topic, self.qos) for topic in self.topics]
        for attempt in range(1, self.subscribe_retries + 1):
            result, _mid = client.subscribe(subscriptions)
            if result == mqtt.MQTT_ERR_SUCCESS:
                logger.info("Subscribed to trap topics", extra={"topic": ",".join(self.topics)})
                return
            logger.warning(
                "Subscribe request failed",
                extra={"attempt": attempt, "reason": mqtt.error_string(result)},
            )
        logger.error("Giving up on subscriptions until the next reconnect")

    def _publish_result(self, event: Event) -> None:
        if event.get("type") != "reading":
            return
        client = self._client
        if client is None or self.state is not BridgeState.connected:
            return
        device_id = str(event["device_id"])
        if _TOPIC_RESERVED.intersection(device_id):
            logger.warning(
                "Skipping result publish for device id that is not a topic level",
                extra={"device_id": device_id},
            )
            return
        topic = f"{self.pipeline.codec.namespace}/{device_id}/alert"
        # Runs inside the live hub fan-out; an exception here would unsubscribe the publisher.
        try:
            info = client.publish(topic, json.dumps(event), qos=self.qos)
        except Exception:
            logger.exception("Result publish failed", extra={"topic": topic})
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(
                "Result publish failed",
                extra={"topic": topic, "reason": mqtt.error_string(info.rc)},
            )

    def _set_state(self, state: BridgeState) -> None:
        with self._state_lock:
            if self._state is state:
                return
            previous, self._state = self._state, state
        logger.info(
            "Bridge state %s -> %s", previous.value, state.value, extra={"state": state.value}
        )


@lru_cache
def build_default_bridge() -> Optional[BrokerBridge]:
    """Bridge from environment settings, or ``None`` when no broker is configured."""
    settings = get_settings()
    if not settings.broker_host:
        return None
    return BrokerBridge(
        pipeline=build_default_pipeline(),
        host=settings.broker_host,
        port=settings.broker_port,
        client_id=settings.client_id,
        username=settings.broker_username,
        password=settings.broker_password,
        keepalive=settings.keepalive,
        qos=settings.qos,
        reconnect_min_delay=settings.reconnect_min_delay,
        reconnect_max_delay=settings.reconnect_max_delay,
        subscribe_retries=settings.subscribe_retries,
        publish_results=settings.publish_results,
    )
