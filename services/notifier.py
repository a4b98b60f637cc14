"""Alert notification collaborators."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from app.schemas import AlertState
from settings import get_settings

logger = logging.getLogger(__name__)


class AlertNotifier(Protocol):
    def notify(self, state: AlertState) -> None:
        ...

    def close(self) -> None:
        ...


class LoggingNotifier:
    """Used when no webhook is configured; the alert only reaches the logs."""

    def notify(self, state: AlertState) -> None:
        logger.warning(
            "Red alert raised",
            extra={"farm_id": state.farm_id, "alert_level": state.alert_level.value},
        )

    def close(self) -> None:
        return None


class WebhookNotifier:
    """POSTs red alerts to an email/alerting service."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, state: AlertState) -> None:
        response = self._client.post(
            self.url,
            json={
                "farm_id": state.farm_id,
                "alert_level": state.alert_level.value,
                "moth_count": state.last_moth_count,
                "temperature": state.last_temperature,
                "last_updated": state.last_updated.isoformat(),
            },
        )
        response.raise_for_status()
        logger.info(
            "Alert notification delivered",
            extra={"farm_id": state.farm_id, "alert_level": state.alert_level.value},
        )

    def close(self) -> None:
        self._client.close()


def build_default_notifier() -> AlertNotifier:
    url = get_settings().alert_webhook_url
    if url:
        return WebhookNotifier(url)
    return LoggingNotifier()
