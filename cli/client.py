from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Thin HTTP wrapper over the ingestion service routes."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def inject(self, topic: str, payload: str) -> Dict[str, Any]:
        return self._request("POST", "/messages", json={"topic": topic, "payload": payload})

    def list_alerts(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/alerts")

    def get_alert(self, farm_id: str) -> Dict[str, Any]:
        return self._request(
            "GET", f"/alerts/{farm_id}", not_found=f"Farm {farm_id} has no alert state."
        )

    def list_readings(self, device_id: str, limit: int) -> List[Dict[str, Any]]:
        return self._request("GET", f"/devices/{device_id}/readings", params={"limit": limit})

    def trap_snapshot(self) -> Dict[str, Any]:
        return self._request("GET", "/traps")

    def _request(
        self,
        method: str,
        path: str,
        not_found: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            typer.secho(
                f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True
            )
            raise typer.Exit(code=1) from exc
        if response.status_code == 404 and not_found:
            raise typer.BadParameter(not_found)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        try:
            detail = exc.response.json().get("detail")
        except ValueError:
            detail = exc.response.text.strip()
        typer.secho(
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)
