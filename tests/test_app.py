from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from datastore.registry import build_default_registry
from datastore.tables import build_default_alert_table, build_default_location_table
from services.bridge import build_default_bridge
from services.pipeline import IngestionPipeline, build_default_pipeline
from settings import get_settings
from storage.reading_log import build_default_reading_log


@pytest.fixture
def api_client(pipeline: IngestionPipeline, monkeypatch) -> Iterator[TestClient]:
    def build_test_pipeline(workers: int | None = None) -> IngestionPipeline:
        return pipeline

    def build_no_bridge() -> None:
        return None

    build_test_pipeline.cache_clear = lambda: None  # type: ignore[attr-defined]
    build_no_bridge.cache_clear = lambda: None  # type: ignore[attr-defined]

    monkeypatch.setattr("app.main.build_default_pipeline", build_test_pipeline)
    monkeypatch.setattr("app.api.build_default_pipeline", build_test_pipeline)
    monkeypatch.setattr("app.main.build_default_bridge", build_no_bridge)
    monkeypatch.setattr("app.api.build_default_bridge", build_no_bridge)

    app = create_app()
    with TestClient(app) as client:
        yield client


_DEFAULT_BUILDERS = (
    get_settings,
    build_default_registry,
    build_default_alert_table,
    build_default_location_table,
    build_default_reading_log,
    build_default_bridge,
    build_default_pipeline,
)


def _clear_default_builders() -> None:
    for builder in _DEFAULT_BUILDERS:
        builder.cache_clear()


def test_lifespan_shuts_down_pipeline_and_clears_cache(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("MQTT_BROKER_HOST", raising=False)
    monkeypatch.setenv("ALERT_STATE_PATH", str(tmp_path / "alerts.json"))
    monkeypatch.setenv("FARM_LOCATION_PATH", str(tmp_path / "locations.json"))
    monkeypatch.setenv("DEVICE_REGISTRY_PATH", str(tmp_path / "devices.json"))
    monkeypatch.setenv("READING_LOG_ROOT", str(tmp_path / "readings"))
    _clear_default_builders()

    app = create_app()
    try:
        with TestClient(app) as client:
            pipeline_during = build_default_pipeline()
            assert client.get("/health").json()["bridge_state"] == "disabled"

        assert pipeline_during.submit("ladybug/trap7/status", "1,20.0,1") is None
        pipeline_after = build_default_pipeline()
        assert pipeline_after is not pipeline_during
        pipeline_after.shutdown()
    finally:
        _clear_default_builders()


def test_ingest_status_message(api_client: TestClient) -> None:
    response = api_client.post(
        "/ingest", json={"topic": "ladybug/trap7/status", "payload": "25,31.5,3"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "stored"
    assert body["farm_id"] == "farm-7"
    assert body["alert_level"] == "Red"
    assert body["errors"] == []

    alert = api_client.get("/alerts/farm-7")
    assert alert.status_code == 200
    assert alert.json()["last_moth_count"] == 25


def test_ingest_accepts_message_alias_and_structured_payload(api_client: TestClient) -> None:
    response = api_client.post(
        "/ingest",
        json={
            "topic": "ladybug/ingest",
            "message": {"device_id": "ESP_FARM_001", "moth_count": 15, "temperature_c": 28},
        },
    )

    assert response.status_code == 200
    assert response.json()["alert_level"] == "Yellow"


def test_ingest_legacy_record_body(api_client: TestClient) -> None:
    response = api_client.post(
        "/ingest",
        json={
            "device_id": "ESP_FARM_001",
            "moth_count": 2,
            "temperature_c": 24.5,
            "computed_status": "RED",
            "larva_density": 0.4,
        },
    )

    assert response.status_code == 200
    assert response.json()["alert_level"] == "Red"

    readings = api_client.get("/devices/ESP_FARM_001/readings").json()
    assert len(readings) == 1
    assert readings[0]["larva_density"] == 0.4
    assert readings[0]["farm_id"] == "farm-esp"


def test_ingest_location_then_read_it_back(api_client: TestClient) -> None:
    response = api_client.post(
        "/ingest", json={"topic": "ladybug/trap2/location", "payload": "15.51848755,121.2739912"}
    )

    assert response.status_code == 200
    assert response.json()["status"] == "location_updated"

    location = api_client.get("/farms/farm-2/location").json()
    assert location["latitude"] == pytest.approx(15.51848755)
    assert api_client.get("/alerts/farm-2").status_code == 404


def test_ingest_rejects_missing_fields(api_client: TestClient) -> None:
    response = api_client.post("/ingest", json={"moth_count": 3})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing topic or payload"

    response = api_client.post("/ingest", json={"topic": "ladybug/trap7/status"})
    assert response.status_code == 400


def test_ingest_malformed_payload_returns_reason(api_client: TestClient) -> None:
    response = api_client.post(
        "/ingest", json={"topic": "ladybug/trap7/status", "payload": "5,notanumber,2"}
    )

    assert response.status_code == 400
    assert "invalid temperature" in response.json()["detail"]
    assert api_client.get("/alerts").json() == []


def test_ingest_unregistered_device_is_accepted_but_dropped(api_client: TestClient) -> None:
    response = api_client.post(
        "/ingest", json={"topic": "ladybug/ghost/status", "payload": "30,20.0,3"}
    )

    assert response.status_code == 202
    assert response.json()["status"] == "unregistered"
    assert api_client.get("/alerts").json() == []


def test_ingest_timeout_returns_service_unavailable(
    api_client: TestClient, pipeline: IngestionPipeline, monkeypatch
) -> None:
    def too_slow(topic, payload, timeout=None):
        raise FutureTimeoutError()

    def record_too_slow(record, timeout=None):
        raise FutureTimeoutError()

    monkeypatch.setattr(pipeline, "ingest", too_slow)
    monkeypatch.setattr(pipeline, "ingest_record", record_too_slow)

    response = api_client.post(
        "/ingest", json={"topic": "ladybug/trap7/status", "payload": "25,31.5,3"}
    )
    legacy = api_client.post("/ingest", json={"device_id": "ESP_FARM_001", "moth_count": 3})

    assert response.status_code == 503
    assert "timed out" in response.json()["detail"]
    assert legacy.status_code == 503


def test_inject_message_runs_asynchronously(api_client: TestClient, pipeline: IngestionPipeline) -> None:
    response = api_client.post(
        "/messages", json={"topic": "ladybug/trap2/status", "payload": "12,22.0,2"}
    )

    assert response.status_code == 202
    assert response.json() == {"accepted": True, "topic": "ladybug/trap2/status"}
    assert pipeline.wait_idle(timeout=5)
    assert api_client.get("/alerts/farm-2").json()["alert_level"] == "Yellow"

    rejected = api_client.post("/messages", json={"topic": "ladybug/trap2/battery", "payload": "3.7"})
    assert rejected.status_code == 202
    assert rejected.json()["accepted"] is False


def test_alerts_are_listed_by_farm(api_client: TestClient) -> None:
    api_client.post("/ingest", json={"topic": "ladybug/trap7/status", "payload": "1,20.0,1"})
    api_client.post("/ingest", json={"topic": "ladybug/trap2/status", "payload": "25,20.0,3"})

    farms = [item["farm_id"] for item in api_client.get("/alerts").json()]

    assert farms == ["farm-2", "farm-7"]


def test_readings_limit_and_validation(api_client: TestClient) -> None:
    for count in range(5):
        api_client.post("/ingest", json={"topic": "ladybug/trap7/status", "payload": f"{count},20.0,1"})

    readings = api_client.get("/devices/trap7/readings", params={"limit": 2}).json()

    assert [item["moth_count"] for item in readings] == [3, 4]
    assert api_client.get("/devices/trap7/readings", params={"limit": 0}).status_code == 422


def test_missing_resources_return_not_found(api_client: TestClient) -> None:
    assert api_client.get("/alerts/nowhere").status_code == 404
    response = api_client.get("/farms/nowhere/location")
    assert response.status_code == 404
    assert "nowhere" in response.json()["detail"]


def test_health_reports_bridge_and_subscribers(api_client: TestClient) -> None:
    body = api_client.get("/health").json()

    assert body == {"status": "ok", "bridge_state": "disabled", "live_subscribers": 0}


def test_websocket_sends_snapshot_then_live_events(api_client: TestClient) -> None:
    api_client.post("/ingest", json={"topic": "ladybug/trap7/status", "payload": "4,20.0,1"})

    with api_client.websocket_connect("/ws") as websocket:
        snapshot = websocket.receive_json()
        assert snapshot["type"] == "initial_state"
        assert snapshot["traps"]["trap7"]["moth_count"] == 4
        assert api_client.get("/health").json()["live_subscribers"] == 1

        api_client.post("/ingest", json={"topic": "ladybug/trap2/location", "payload": "15.5,121.2"})
        event = websocket.receive_json()

    assert event["type"] == "location"
    assert event["device_id"] == "trap2"
    assert event["data"]["latitude"] == 15.5


def test_websocket_forwards_client_broker_frames(api_client: TestClient) -> None:
    with api_client.websocket_connect("/ws") as websocket:
        websocket.receive_json()
        websocket.send_text("not json")
        websocket.send_json({"type": "ping"})
        websocket.send_json(
            {"type": "mqtt_data", "topic": "ladybug/trap7/status", "payload": "25,31.5,3"}
        )
        event = websocket.receive_json()

    assert event["type"] == "reading"
    assert event["data"]["alert_level"] == "Red"
    assert api_client.get("/traps").json()["traps"]["trap7"]["moth_count"] == 25
