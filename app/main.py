from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.bridge import build_default_bridge
from services.pipeline import build_default_pipeline


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    pipeline = build_default_pipeline()
    bridge = build_default_bridge()
    if bridge is not None:
        bridge.start()
    try:
        yield
    finally:
        # Bridge first so no new messages arrive while the lanes drain.
        if bridge is not None:
            bridge.stop()
        pipeline.shutdown()
        build_default_bridge.cache_clear()
        build_default_pipeline.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Ladybug Trap Ingest",
        description="Ingests pest trap telemetry from MQTT, classifies risk and streams live alerts.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
