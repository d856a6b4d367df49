from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import typer

from cli.config import CLIConfig


def _params(**values: Optional[str]) -> Dict[str, str]:
    return {key: value for key, value in values.items() if value}


class ApiClient:
    """Minimal HTTP client for the monitor service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def list_devices(self, source: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._get("/api/devices", _params(source=source))

    def get_latest(
        self, source: Optional[str] = None, device_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]:
        return self._get("/api/latest", _params(source=source, deviceId=device_id))

    def get_history(
        self,
        start_date: str,
        end_date: str,
        device_id: Optional[str] = None,
        source: Optional[str] = None,
        rain_interval: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = _params(
            startDate=start_date,
            endDate=end_date,
            deviceId=device_id,
            source=source,
            rainInterval=rain_interval,
        )
        return self._get("/api/history", params)

    def upload_tdr(self, path: Path, device_id: str) -> Dict[str, Any]:
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise typer.BadParameter(f"Cannot read TDR document {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise typer.BadParameter("TDR document must be a JSON object.")
        body = {"device": device_id, "timestamp": document.get("timestamp"), "data": document.get("data")}
        return self._post("/api/tdr/upload", json=body)

    def upload_wise(
        self, path: Path, device_id: str, date_dir: str, log_type: str = "signal_log"
    ) -> Dict[str, Any]:
        url = "/upload_log/" + "/".join(
            quote(part, safe="") for part in (device_id, log_type, date_dir, path.name)
        )
        return self._post(url, content=path.read_bytes())

    def _get(self, url: str, params: Dict[str, str]) -> Any:
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def _post(self, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.post(url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
