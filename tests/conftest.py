from __future__ import annotations

import time
from typing import Callable, Iterator, List

import pytest

from app.schemas import AlertState
from datastore.registry import DeviceRegistry
from datastore.tables import AlertStateTable, FarmLocationTable
from services.classifier import RiskClassifier
from services.codec import PayloadCodec
from services.live import LiveHub
from services.pipeline import IngestionPipeline
from storage.reading_log import ReadingLog


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.notified: List[AlertState] = []
        self.closed = False

    def notify(self, state: AlertState) -> None:
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.notified.append(state)

    def close(self) -> None:
        self.closed = True


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    pytest.fail("Condition not met before timeout.")


@pytest.fixture()
def wait_for() -> Callable[..., None]:
    return _wait_for


@pytest.fixture()
def registry() -> DeviceRegistry:
    return DeviceRegistry(
        {
            "trap7": "farm-7",
            "trap2": "farm-2",
            "ESP_FARM_001": "farm-esp",
        }
    )


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def pipeline(tmp_path, registry, notifier) -> Iterator[IngestionPipeline]:
    service = IngestionPipeline(
        codec=PayloadCodec("ladybug"),
        registry=registry,
        classifier=RiskClassifier(),
        alerts=AlertStateTable(name="test", persistence_path=tmp_path / "alerts.json"),
        locations=FarmLocationTable(name="test", persistence_path=tmp_path / "locations.json"),
        readings=ReadingLog(name="test", root_path=tmp_path / "readings"),
        hub=LiveHub(),
        notifier=notifier,
        workers=2,
    )
    yield service
    service.shutdown()
