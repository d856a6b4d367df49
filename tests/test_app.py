from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from datastore.influx import build_default_influx_store
from datastore.memory import build_default_memory_store
from models.devices import build_default_registry
from services.cache import build_default_cache
from services.fallback import build_default_query_service
from services.scanner import build_default_scanner
from services.scheduler import build_default_scheduler
from settings import get_settings
from storage.archive import build_default_archive

DEVICE_ID = "WISE-4010LAN_TEST01"
TAIPEI = ZoneInfo("Asia/Taipei")

_CACHES = (
    get_settings,
    build_default_registry,
    build_default_archive,
    build_default_cache,
    build_default_memory_store,
    build_default_influx_store,
    build_default_scanner,
    build_default_query_service,
    build_default_scheduler,
)


def _clear_caches() -> None:
    for cache in _CACHES:
        cache.cache_clear()


@pytest.fixture
def api_env(tmp_path: Path, monkeypatch) -> Iterator[Path]:
    devices = [
        {
            "id": DEVICE_ID,
            "source": "wise",
            "name": "test tilt",
            "area": "north",
            "sensors": [{"type": "tilt", "channels": ["AI_0"], "initialValues": {"AI_0": 12.0}}],
        },
        {"id": "TDR_T1", "name": "T1 TDR", "area": "north"},
    ]
    config_path = tmp_path / "devices.json"
    config_path.write_text(json.dumps(devices))

    monkeypatch.setenv("WISE_DATA_DIR", str(tmp_path / "wise_data"))
    monkeypatch.setenv("TDR_DATA_DIR", str(tmp_path / "tdr_data"))
    monkeypatch.setenv("WISE_BACKUP_DIR", str(tmp_path / "wise_backup"))
    monkeypatch.setenv("TDR_BACKUP_DIR", str(tmp_path / "tdr_backup"))
    monkeypatch.setenv("STORE_PERSISTENCE_PATH", str(tmp_path / "store.json"))
    monkeypatch.setenv("DEVICE_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("SCAN_MIN_FILE_AGE_SECONDS", "0")
    monkeypatch.setenv("SCANNER_ENABLED", "false")
    monkeypatch.delenv("INFLUX_URL", raising=False)
    _clear_caches()
    yield tmp_path
    _clear_caches()


@pytest.fixture
def api_client(api_env: Path) -> Iterator[TestClient]:
    with TestClient(create_app()) as client:
        yield client


def _today_csv() -> tuple[str, str, str]:
    now = datetime.now(TAIPEI).replace(microsecond=0)
    rows = [
        (now - timedelta(minutes=10), 12.0),
        (now - timedelta(minutes=5), 12.5),
        (now, 13.0),
    ]
    body = "TIM,AI_0 EgF\n" + "".join(
        f"{moment.strftime('%Y-%m-%d %H:%M:%S')},{value}\n" for moment, value in rows
    )
    return now.strftime("%Y%m%d"), (now - timedelta(days=1)).strftime("%Y-%m-%d"), body


def test_health_and_root(api_client: TestClient) -> None:
    assert api_client.get("/health").json() == {"status": "ok"}
    assert api_client.get("/").json()["status"] == "ok"


def test_wise_upload_stores_without_overwriting(api_client: TestClient, api_env: Path) -> None:
    url = f"/upload_log/{DEVICE_ID}/signal_log/20240310/20240310120000.csv"

    first = api_client.post(url, content=b"TIM,AI_0 EgF\n")
    second = api_client.post(url, content=b"TIM,AI_0 EgF\n")

    assert first.status_code == 201
    stored = api_env / "wise_data" / DEVICE_ID / "signal_log" / "20240310" / "20240310120000.csv"
    assert Path(first.json()["path"]) == stored
    assert Path(second.json()["path"]).name == "20240310120000 (1).csv"


@pytest.mark.parametrize(
    ("url", "body"),
    [
        (f"/upload_log/{DEVICE_ID}/debug_log/20240310/a.csv", b"x"),
        (f"/upload_log/{DEVICE_ID}/signal_log/2024-03-10/a.csv", b"x"),
        (f"/upload_log/{DEVICE_ID}/signal_log/20240310/a.csv", b""),
    ],
)
def test_wise_upload_validation(api_client: TestClient, url: str, body: bytes) -> None:
    assert api_client.post(url, content=body).status_code == 400


def test_tdr_upload_names_file_after_timestamp(api_client: TestClient, api_env: Path) -> None:
    payload = {
        "device": "TDR_T1",
        "timestamp": "2024-03-10T04:00:00.000Z",
        "data": [{"distance_m": 0.5, "rho": 0.12}],
    }

    response = api_client.post("/api/tdr/upload", json=payload)

    assert response.status_code == 201
    stored = api_env / "tdr_data" / "TDR_T1" / "20240310" / "20240310040000000.json"
    assert Path(response.json()["path"]) == stored
    document = json.loads(stored.read_text())
    assert document == {"timestamp": payload["timestamp"], "data": payload["data"]}


@pytest.mark.parametrize(
    "payload",
    [
        {"device": "TDR_T1", "timestamp": "whenever", "data": []},
        {"device": "TDR_T1", "timestamp": "2024-03-10T04:00:00Z"},
        {"device": "", "timestamp": "2024-03-10T04:00:00Z", "data": []},
    ],
)
def test_tdr_upload_validation(api_client: TestClient, payload) -> None:
    assert api_client.post("/api/tdr/upload", json=payload).status_code == 400


def test_ingested_upload_is_queryable(api_client: TestClient) -> None:
    date_dir, start_date, body = _today_csv()
    upload = api_client.post(
        f"/upload_log/{DEVICE_ID}/signal_log/{date_dir}/{date_dir}000000.csv",
        content=body.encode(),
    )
    assert upload.status_code == 201

    report = build_default_scanner().scan_all()
    assert report.points_written == 3

    latest = api_client.get("/api/latest", params={"deviceId": DEVICE_ID})
    assert latest.status_code == 200
    record = latest.json()[DEVICE_ID]
    assert record["channels"]["AI_0"]["display"] == pytest.approx(6750.0)
    assert record["status"] == {"AI_0": "abnormal"}

    history = api_client.get(
        "/api/history",
        params={"deviceId": DEVICE_ID, "startDate": start_date, "endDate": date_dir},
    )
    assert history.status_code == 200
    values = [item["raw"]["AI_0 EgF"] for item in history.json()]
    assert values == [13.0, 12.5, 12.0]

    devices = api_client.get("/api/devices", params={"source": "wise"}).json()
    assert devices == [
        {
            "id": DEVICE_ID,
            "name": "test tilt",
            "model": "WISE-4010LAN",
            "source": "wise",
            "area": "north",
            "lastUpdated": None,
            "hasData": True,
        }
    ]


def test_latest_area_filter(api_client: TestClient) -> None:
    response = api_client.get("/api/latest", params={"source": "both", "area": "nowhere"})

    assert response.status_code == 200
    assert response.json() == {}


@pytest.mark.parametrize(
    "params",
    [
        {"endDate": "2024-03-10"},
        {"startDate": "2024-03-10"},
        {"startDate": "10/03/2024", "endDate": "2024-03-10"},
        {"startDate": "2024-03-10", "endDate": "2024-03-10", "rainInterval": "often"},
        {"startDate": "2024-03-10", "endDate": "2024-03-10", "source": "gps"},
    ],
)
def test_history_rejects_malformed_requests(api_client: TestClient, params) -> None:
    assert api_client.get("/api/history", params=params).status_code == 400


@pytest.mark.parametrize("path", ["/api/latest", "/api/history"])
def test_device_id_outside_data_folders_is_rejected(api_client: TestClient, path: str) -> None:
    params = {"deviceId": "..", "startDate": "2024-03-10", "endDate": "2024-03-10"}

    response = api_client.get(path, params=params)

    assert response.status_code == 400
    assert "device id" in response.json()["detail"]


def test_lifespan_starts_and_stops_scheduler(api_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("SCANNER_ENABLED", "true")
    monkeypatch.setenv("SCAN_INTERVAL", "3600")
    get_settings.cache_clear()

    with TestClient(create_app()):
        scheduler = build_default_scheduler()
        assert scheduler.running

    assert not scheduler.running
    assert scheduler.executor._shutdown is True
