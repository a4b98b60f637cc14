"""HTTP and WebSocket route definitions for the service."""

from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    HTTPException,
    Query,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from app.schemas import (
    AlertState,
    BrokerMessage,
    FarmLocation,
    HealthResponse,
    IngestResult,
    IngestStatus,
    InjectResponse,
    StoredReading,
)
from services.bridge import BrokerBridge, build_default_bridge
from services.live import QueueSubscriber
from services.pipeline import IngestionPipeline, PipelineClosed, build_default_pipeline

logger = logging.getLogger(__name__)

router = APIRouter()

_INGEST_TIMEOUT_S = 30.0

_RESULT_STATUS_CODES = {
    IngestStatus.stored: status.HTTP_200_OK,
    IngestStatus.location_updated: status.HTTP_200_OK,
    IngestStatus.unregistered: status.HTTP_202_ACCEPTED,
    IngestStatus.failed: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_pipeline() -> IngestionPipeline:
    return build_default_pipeline()


def get_bridge() -> Optional[BrokerBridge]:
    return build_default_bridge()


@router.post(
    "/ingest",
    response_model=IngestResult,
    summary="Ingest a broker webhook message or a legacy structured reading.",
)
def ingest(
    response: Response,
    body: Dict[str, Any] = Body(...),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> IngestResult:
    topic = body.get("topic")
    try:
        if topic:
            payload = body.get("payload", body.get("message"))
            if payload is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Missing topic or payload",
                )
            if not isinstance(payload, str):
                payload = json.dumps(payload)
            result = pipeline.ingest(str(topic), payload, timeout=_INGEST_TIMEOUT_S)
        elif "device_id" in body:
            result = pipeline.ingest_record(body, timeout=_INGEST_TIMEOUT_S)
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing topic or payload",
            )
    except PipelineClosed as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except FutureTimeoutError as exc:
        # The message stays queued on its lane and is still applied.
        logger.warning("Ingestion did not finish in time", extra={"topic": topic})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ingestion timed out; the message is still queued.",
        ) from exc

    if result.status is IngestStatus.malformed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=result.reason,
        )
    response.status_code = _RESULT_STATUS_CODES[result.status]
    return result


@router.post(
    "/messages",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=InjectResponse,
    summary="Inject a synthetic broker message without a live broker connection.",
)
async def inject_message(
    message: BrokerMessage,
    pipeline: IngestionPipeline = Depends(get_pipeline),
    bridge: Optional[BrokerBridge] = Depends(get_bridge),
) -> InjectResponse:
    if bridge is not None:
        future = bridge.inject(message.topic, message.payload)
    else:
        future = pipeline.submit(message.topic, message.payload)
    return InjectResponse(accepted=future is not None, topic=message.topic)


@router.get(
    "/alerts",
    response_model=List[AlertState],
    summary="Current alert state for every farm that has reported.",
)
async def list_alerts(
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> List[AlertState]:
    return sorted(pipeline.alerts.scan(), key=lambda state: state.farm_id)


@router.get(
    "/alerts/{farm_id}",
    response_model=AlertState,
    summary="Current alert state for one farm.",
)
async def get_alert(
    farm_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> AlertState:
    state = pipeline.alerts.get_item(farm_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No alert state for farm {farm_id!r}.",
        )
    return state


@router.get(
    "/farms/{farm_id}/location",
    response_model=FarmLocation,
    summary="Last coordinates reported by the farm's trap.",
)
async def get_farm_location(
    farm_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> FarmLocation:
    location = pipeline.locations.get_item(farm_id)
    if location is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No location reported for farm {farm_id!r}.",
        )
    return location


@router.get(
    "/devices/{device_id}/readings",
    response_model=List[StoredReading],
    summary="Reading history for a device, oldest first.",
)
async def list_device_readings(
    device_id: str,
    limit: int = Query(50, ge=1, le=1000),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> List[StoredReading]:
    return pipeline.readings.list_readings(device_id, limit=limit)


@router.get(
    "/traps",
    summary="Snapshot of every trap's latest known state.",
)
async def trap_snapshot(
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    return pipeline.hub.snapshot()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(
    pipeline: IngestionPipeline = Depends(get_pipeline),
    bridge: Optional[BrokerBridge] = Depends(get_bridge),
) -> HealthResponse:
    return HealthResponse(
        status="ok",
        bridge_state=bridge.state.value if bridge is not None else "disabled",
        live_subscribers=pipeline.hub.subscriber_count,
    )


@router.websocket("/ws")
async def live_updates(
    websocket: WebSocket,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> None:
    await websocket.accept()
    subscriber = QueueSubscriber(asyncio.get_running_loop())
    snapshot = pipeline.hub.subscribe(subscriber)
    tasks: set[asyncio.Task[None]] = set()
    try:
        await websocket.send_json(snapshot)
        tasks = {
            asyncio.create_task(_forward_events(websocket, subscriber)),
            asyncio.create_task(_read_client_frames(websocket, pipeline)),
        }
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Live session ended with error: %s", exc)
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        pipeline.hub.unsubscribe(subscriber)


async def _forward_events(websocket: WebSocket, subscriber: QueueSubscriber) -> None:
    while True:
        event = await subscriber.get()
        await websocket.send_json(event)


async def _read_client_frames(websocket: WebSocket, pipeline: IngestionPipeline) -> None:
    """Browsers may forward raw broker messages as ``{"type": "mqtt_data", ...}`` frames."""
    while True:
        text = await websocket.receive_text()
        try:
            frame = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring non-JSON live client frame")
            continue
        if not isinstance(frame, dict) or frame.get("type") != "mqtt_data":
            continue
        topic = frame.get("topic")
        payload = frame.get("payload")
        if isinstance(topic, str) and isinstance(payload, str):
            pipeline.submit(topic, payload)
