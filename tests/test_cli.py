from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest
import typer
from typer.testing import CliRunner

from cli.app import app
from cli.client import ApiClient
from cli.config import CLIConfig, load_config


class StubClient:
    def __init__(self, config) -> None:
        self.config = config
        self.calls: List[tuple] = []
        self.latest_payload: Dict[str, Any] = {
            "WISE-4060LAN_RAIN": {
                "deviceId": "WISE-4060LAN_RAIN",
                "source": "wise",
                "timestamp": "2024-03-10T04:00:00+00:00",
                "channels": {"DI_0": {"Cnt": 42.0}},
                "rainfall_10m": 1.5,
                "rainfall_1h": None,
            },
            "D1": {
                "deviceId": "D1",
                "source": "wise",
                "timestamp": "2024-03-10T04:00:00+00:00",
                "channels": {"AI_0": {"EgF": 13.0, "display": 6750.0}},
                "status": {"AI_0": "abnormal"},
            },
        }
        self.closed = False

    def list_devices(self, source=None) -> List[Dict[str, Any]]:
        self.calls.append(("devices", source))
        return [
            {"id": "D1", "name": "tilt", "model": "D1", "source": "wise", "area": "north", "hasData": True},
            {"id": "TDR_T1", "name": "T1", "model": "TDR", "source": "tdr", "area": None, "hasData": False},
        ]

    def get_latest(self, source=None, device_id=None) -> Dict[str, Any]:
        self.calls.append(("latest", source, device_id))
        return self.latest_payload

    def get_history(self, start_date, end_date, device_id=None, source=None, rain_interval=None):
        self.calls.append(("history", start_date, end_date, device_id, source, rain_interval))
        return []

    def upload_tdr(self, path: Path, device_id: str) -> Dict[str, Any]:
        self.calls.append(("upload-tdr", path, device_id))
        return {"message": "TDR data stored.", "path": f"/data/{device_id}/scan.json"}

    def upload_wise(self, path: Path, device_id: str, date_dir: str, log_type: str) -> Dict[str, Any]:
        self.calls.append(("upload-wise", path, device_id, date_dir, log_type))
        return {"message": "File uploaded.", "path": f"/data/{device_id}/{path.name}"}

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def stub(monkeypatch) -> StubClient:
    client = StubClient(config=None)

    def factory(config):
        client.config = config
        return client

    monkeypatch.setattr("cli.app.ApiClient", factory)
    return client


def test_devices_command(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["devices", "--source", "both"])

    assert result.exit_code == 0
    assert "D1 tilt D1 wise [north]" in result.stdout
    assert "TDR_T1 T1 TDR tdr (no data)" in result.stdout
    assert stub.calls == [("devices", "both")]
    assert stub.closed is True


def test_latest_command_renders_status_and_rainfall(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(app, ["latest", "-d", "D1"])

    assert result.exit_code == 0
    assert "AI_0: EgF=13.0, display=6750.0 [abnormal]" in result.stdout
    assert "rainfall_10m: 1.5 mm" in result.stdout
    assert "rainfall_1h: n/a" in result.stdout
    assert stub.calls == [("latest", None, "D1")]


def test_history_command_passes_options(runner: CliRunner, stub: StubClient) -> None:
    result = runner.invoke(
        app,
        ["history", "--start", "2024-03-09", "--end", "2024-03-10", "--device", "D1", "--rain-interval", "1h"],
    )

    assert result.exit_code == 0
    assert "History (0 records)" in result.stdout
    assert stub.calls == [("history", "2024-03-09", "2024-03-10", "D1", None, "1h")]


def test_upload_commands(runner: CliRunner, stub: StubClient, tmp_path: Path) -> None:
    scan = tmp_path / "scan.json"
    scan.write_text(json.dumps({"timestamp": "2024-03-10T04:00:00Z", "data": []}))
    log = tmp_path / "20240310120000.csv"
    log.write_text("TIM,AI_0 EgF\n")

    tdr = runner.invoke(app, ["upload-tdr", str(scan), "--device", "TDR_T1"])
    wise = runner.invoke(app, ["upload-wise", str(log), "--device", "D1", "--date", "20240310"])

    assert tdr.exit_code == 0
    assert "Stored at /data/TDR_T1/scan.json" in tdr.stdout
    assert wise.exit_code == 0
    assert stub.calls[-1] == ("upload-wise", log, "D1", "20240310", "signal_log")


def test_base_url_option_overrides_environment(runner: CliRunner, stub: StubClient, monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://env-host:9000/")

    runner.invoke(app, ["--base-url", "http://cli-host:8000/", "devices"])

    assert stub.config.base_url == "http://cli-host:8000"


def test_load_config_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("API_BASE_URL", "http://env-host:9000/")
    monkeypatch.setenv("CLI_HTTP_TIMEOUT", "not-a-number")

    config = load_config()

    assert config == CLIConfig(base_url="http://env-host:9000", timeout=30.0)


def test_api_client_reports_http_errors(capsys) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["startDate"] == "2024-03-10"
        return httpx.Response(400, json={"detail": "Query parameter 'endDate' is required."})

    client = ApiClient(CLIConfig(base_url="http://testserver"))
    client._client = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(handler))

    with pytest.raises(typer.Exit):
        client.get_history("2024-03-10", "")

    assert "Query parameter 'endDate' is required." in capsys.readouterr().err
    client.close()


def test_api_client_builds_upload_urls(tmp_path: Path) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"message": "ok", "path": "stored"})

    log = tmp_path / "20240310120000.csv"
    log.write_bytes(b"TIM\n")
    client = ApiClient(CLIConfig(base_url="http://testserver"))
    client._client = httpx.Client(base_url="http://testserver", transport=httpx.MockTransport(handler))

    client.upload_wise(log, "WISE-1", "20240310")

    assert seen[0].url.path == "/upload_log/WISE-1/signal_log/20240310/20240310120000.csv"
    assert seen[0].content == b"TIM\n"
    client.close()
