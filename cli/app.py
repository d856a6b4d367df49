from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_devices, render_history, render_latest


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for querying and feeding the field instrument monitor.",
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
        help="Monitor API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
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


@app.command("devices")
def devices_command(
    ctx: typer.Context,
    source: Optional[str] = typer.Option(None, "--source", "-s", help="wise, tdr or both."),
) -> None:
    """List known devices."""
    state = _get_state(ctx)
    render_devices(state.client.list_devices(source))


@app.command("latest")
def latest_command(
    ctx: typer.Context,
    source: Optional[str] = typer.Option(None, "--source", "-s", help="wise, tdr or both."),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Restrict to one device id."),
) -> None:
    """Show the most recent record per device."""
    state = _get_state(ctx)
    render_latest(state.client.get_latest(source, device))


@app.command("history")
def history_command(
    ctx: typer.Context,
    start: str = typer.Option(..., "--start", help="First day, YYYY-MM-DD."),
    end: str = typer.Option(..., "--end", help="Last day, YYYY-MM-DD (inclusive)."),
    device: Optional[str] = typer.Option(None, "--device", "-d"),
    source: Optional[str] = typer.Option(None, "--source", "-s"),
    rain_interval: Optional[str] = typer.Option(
        None, "--rain-interval", help="Rainfall window per record, e.g. 10m or 1h."
    ),
) -> None:
    """Show records between two dates, newest first."""
    state = _get_state(ctx)
    records = state.client.get_history(start, end, device_id=device, source=source, rain_interval=rain_interval)
    render_history(records)


@app.command("upload-tdr")
def upload_tdr_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="TDR JSON document."),
    device: str = typer.Option(..., "--device", "-d", help="TDR device id."),
) -> None:
    """Push a TDR scan as the unit would."""
    state = _get_state(ctx)
    typer.echo(f"Uploading {file} to {state.config.base_url} ...")
    payload = state.client.upload_tdr(file, device)
    typer.secho(f"Stored at {payload.get('path')}", fg=typer.colors.GREEN)


@app.command("upload-wise")
def upload_wise_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="WISE CSV log."),
    device: str = typer.Option(..., "--device", "-d", help="WISE logger id."),
    date: str = typer.Option(..., "--date", help="Date folder, YYYYMMDD."),
    log_type: str = typer.Option("signal_log", "--log-type", help="signal_log or system_log."),
) -> None:
    """Push a WISE log file as the logger would."""
    state = _get_state(ctx)
    typer.echo(f"Uploading {file} to {state.config.base_url} ...")
    payload = state.client.upload_wise(file, device, date, log_type)
    typer.secho(f"Stored at {payload.get('path')}", fg=typer.colors.GREEN)
