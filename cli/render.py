from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer

_RAINFALL_PREFIX = "rainfall_"


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_devices(devices: List[Dict[str, Any]]) -> None:
    echo_heading("Devices")
    if not devices:
        typer.echo("No devices found.")
        return
    for device in devices:
        flag = "" if device.get("hasData") else " (no data)"
        area = f" [{device['area']}]" if device.get("area") else ""
        typer.echo(
            f"  - {device.get('id')} {device.get('name')} {device.get('model')}"
            f" {device.get('source')}{area}{flag}"
        )


def render_record(record: Dict[str, Any]) -> None:
    echo_key_values(
        [
            ("device", record.get("deviceId")),
            ("source", record.get("source")),
            ("timestamp", record.get("timestamp")),
        ]
    )
    status = record.get("status") or {}
    for channel, metrics in sorted((record.get("channels") or {}).items()):
        values = ", ".join(f"{metric}={value}" for metric, value in sorted(metrics.items()))
        suffix = f" [{status[channel]}]" if channel in status else ""
        typer.echo(f"  {channel}: {values}{suffix}")
    samples = record.get("data") or []
    if samples:
        typer.echo(f"  samples: {len(samples)}")
    rainfall = [(key, value) for key, value in record.items() if key.startswith(_RAINFALL_PREFIX)]
    for key, value in rainfall:
        typer.echo(f"  {key}: {'n/a' if value is None else f'{value:g} mm'}")


def render_latest(payload: Dict[str, Dict[str, Any]]) -> None:
    echo_heading("Latest")
    if not payload:
        typer.echo("No data available.")
        return
    for index, device_id in enumerate(sorted(payload)):
        if index:
            typer.echo()
        render_record(payload[device_id])


def render_history(records: List[Dict[str, Any]]) -> None:
    echo_heading(f"History ({len(records)} records)")
    if not records:
        typer.echo("No data available.")
        return
    for index, record in enumerate(records):
        if index:
            typer.echo()
        render_record(record)
