from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer

_LEVEL_COLORS = {
    "Green": typer.colors.GREEN,
    "Yellow": typer.colors.YELLOW,
    "Red": typer.colors.RED,
}


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def echo_level(level: str | None) -> None:
    typer.secho(f"alert_level: {level}", fg=_LEVEL_COLORS.get(level or ""))


def render_alert(payload: Dict[str, Any]) -> None:
    echo_heading(f"Farm {payload.get('farm_id')}")
    echo_level(payload.get("alert_level"))
    echo_key_values(
        [
            ("last_moth_count", payload.get("last_moth_count")),
            ("last_temperature", payload.get("last_temperature")),
            ("last_larva_density", payload.get("last_larva_density")),
            ("last_device_id", payload.get("last_device_id")),
            ("last_updated", payload.get("last_updated")),
        ]
    )


def render_alerts(items: List[Dict[str, Any]]) -> None:
    if not items:
        typer.echo("No alert states recorded.")
        return
    for index, item in enumerate(items):
        if index:
            typer.echo()
        render_alert(item)


def render_readings(device_id: str, items: List[Dict[str, Any]]) -> None:
    echo_heading(f"Readings for {device_id}")
    if not items:
        typer.echo("No readings recorded.")
        return
    for item in items:
        typer.echo(
            f"  - {item.get('captured_at')}: moths={item.get('moth_count')} "
            f"temp={item.get('temperature')} level={item.get('alert_level')}"
        )


def render_traps(snapshot: Dict[str, Any]) -> None:
    echo_heading("Traps")
    traps = snapshot.get("traps") or {}
    if not traps:
        typer.echo("No traps have reported yet.")
        return
    for device_id, state in sorted(traps.items()):
        typer.echo(
            f"  - {device_id}: farm={state.get('farm_id')} level={state.get('alert_level')} "
            f"moths={state.get('moth_count')} lat={state.get('latitude')} lng={state.get('longitude')}"
        )
