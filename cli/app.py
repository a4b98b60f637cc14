from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_alert, render_alerts, render_readings, render_traps


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for operating the trap ingestion service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Ingestion API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="HTTP timeout in seconds.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("inject")
def inject_command(
    ctx: typer.Context,
    topic: str = typer.Argument(..., help="Broker topic, e.g. ladybug/trap7/status."),
    payload: str = typer.Argument(..., help="Raw payload, e.g. 25,31.5,3."),
) -> None:
    """Simulate a trap message without a broker."""
    state = _get_state(ctx)
    result = state.client.inject(topic, payload)
    if result.get("accepted"):
        typer.secho(f"Accepted message on {topic}", fg=typer.colors.GREEN)
        return
    typer.secho(f"Message on {topic} was rejected; check the service log.", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command("alerts")
def alerts_command(
    ctx: typer.Context,
    farm_id: Optional[str] = typer.Argument(None, help="Show a single farm."),
) -> None:
    """Show current alert levels."""
    state = _get_state(ctx)
    if farm_id:
        render_alert(state.client.get_alert(farm_id))
        return
    render_alerts(state.client.list_alerts())


@app.command("readings")
def readings_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Trap device identifier."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Most recent readings to show."),
) -> None:
    """Show a device's recent readings."""
    state = _get_state(ctx)
    render_readings(device_id, state.client.list_readings(device_id, limit))


@app.command("traps")
def traps_command(ctx: typer.Context) -> None:
    """Show the live trap map snapshot."""
    state = _get_state(ctx)
    render_traps(state.client.trap_snapshot())
