from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

import httpx
import pytest

from app.schemas import AlertState
from logging_config import ContextualFormatter
from models.records import AlertLevel
from services.notifier import LoggingNotifier, WebhookNotifier


def _red_state() -> AlertState:
    return AlertState(
        farm_id="farm-7",
        alert_level=AlertLevel.red,
        last_moth_count=25,
        last_temperature=31.5,
        last_updated=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
    )


def test_webhook_notifier_posts_alert() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    notifier = WebhookNotifier(
        "http://alerts.local/hook", client=httpx.Client(transport=httpx.MockTransport(handler))
    )
    notifier.notify(_red_state())
    notifier.close()

    (request,) = requests
    assert request.url == "http://alerts.local/hook"
    body = json.loads(request.content)
    assert body["farm_id"] == "farm-7"
    assert body["alert_level"] == "Red"
    assert body["moth_count"] == 25


def test_webhook_notifier_raises_on_error_status() -> None:
    notifier = WebhookNotifier(
        "http://alerts.local/hook",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(502))),
    )

    with pytest.raises(httpx.HTTPStatusError):
        notifier.notify(_red_state())


def test_logging_notifier_warns(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="services.notifier"):
        LoggingNotifier().notify(_red_state())

    assert caplog.records[0].farm_id == "farm-7"


def test_contextual_formatter_appends_extras_before_traceback() -> None:
    formatter = ContextualFormatter(fmt="%(levelname)s %(message)s")
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "test", logging.ERROR, __file__, 1, "Best-effort step failed", None, sys.exc_info()
        )
    record.operation = "notify"
    record.farm_id = "farm-7"
    record.topic = None

    lines = formatter.format(record).splitlines()

    assert lines[0] == "ERROR Best-effort step failed | farm_id=farm-7 operation=notify"
    assert lines[-1] == "ValueError: boom"
