from __future__ import annotations

import json
import logging
import threading
from datetime import date, datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

import pytest

from conftest import NOW, RAIN_GAUGE_ID, TDR_ID
from models.errors import FileSystemError, TransientStoreError
from models.records import Source, WiseRecord
from services.converter import PointConverter
from services.fallback import FallbackQueryService
from storage.archive import SIGNAL_LOG

TAIPEI = ZoneInfo("Asia/Taipei")

D1_CSV = (
    "TIM,AI_0 EgF\n"
    "2024-03-10 11:50:00,12.0\n"
    "2024-03-10 11:55:00,12.5\n"
    "2024-03-10 12:00:00,13.0\n"
)


class RaisingStore:
    def query_last(self, source, device_id):
        raise TransientStoreError("timeout")

    def query_device_tags(self, source):
        raise TransientStoreError("timeout")

    def query_range(self, source, device_id, start, stop):
        raise TransientStoreError("timeout")

    def query_counter_increase(self, *args, **kwargs):
        raise TransientStoreError("timeout")


class TaggedStore:
    """Knows device tags but holds no points."""

    def __init__(self, tags) -> None:
        self.tags = tags

    def query_last(self, source, device_id):
        return None

    def query_device_tags(self, source):
        return list(self.tags[source])

    def query_range(self, source, device_id, start, stop):
        if device_id == "BROKEN":
            raise FileSystemError("disk gone")
        return []

    def query_counter_increase(self, *args, **kwargs):
        return None


@pytest.fixture
def make_service(archive, registry, cache) -> Callable[..., FallbackQueryService]:
    def factory(store) -> FallbackQueryService:
        return FallbackQueryService(store, archive, registry, cache, local_tz=TAIPEI)

    return factory


@pytest.fixture
def landed(archive) -> None:
    archive.save_file(Source.wise, "D1", "20240310", "20240310120000.csv", D1_CSV.encode(), SIGNAL_LOG)
    previous_day = D1_CSV.replace("03-10", "03-09").encode()
    backup = archive.save_file(Source.wise, "D1", "20240309", "20240309120000.csv", previous_day, SIGNAL_LOG)
    archive.move_to_backup(Source.wise, backup, "D1", "20240309", SIGNAL_LOG)
    archive.save_file(
        Source.tdr,
        TDR_ID,
        "20240310",
        "20240310040000000.json",
        json.dumps({"timestamp": "2024-03-10T04:00:00Z", "data": [{"distance_m": 1.0, "rho": 0.4}]}).encode(),
    )


def test_empty_store_falls_back_to_newest_file(make_service, store, landed, caplog) -> None:
    service = make_service(store)

    with caplog.at_level(logging.WARNING, logger="services.fallback"):
        result = service.latest("wise", "D1")

    assert result["D1"]["timestamp"] == NOW.isoformat()
    assert result["D1"]["channels"]["AI_0"]["EgF"] == 13.0
    assert "No latest data in store" in caplog.text


def test_raising_store_falls_back_to_folders(make_service, landed, caplog) -> None:
    service = make_service(RaisingStore())

    with caplog.at_level(logging.WARNING, logger="services.fallback"):
        result = service.latest("tdr")

    assert list(result) == [TDR_ID]
    assert result[TDR_ID]["data"] == [{"distance_m": 1.0, "rho": 0.4}]
    assert "Store unavailable for latest query" in caplog.text


def test_store_answer_wins_over_folder(make_service, store, landed) -> None:
    service = make_service(store)
    record = WiseRecord(
        device_id="D1",
        timestamp=datetime(2024, 3, 10, 3, 59, tzinfo=timezone.utc),
        raw={"AI_0 EgF": 12.25},
    )
    store.write_points(Source.wise, PointConverter(service.registry).to_points("D1", [record]))

    result = service.latest("wise", "D1")

    assert result["D1"]["raw"]["AI_0 EgF"] == 12.25


def test_both_merges_sources_and_filters_area(make_service, store, landed) -> None:
    service = make_service(store)

    merged = service.latest("both")
    assert set(merged) == {"D1", TDR_ID}

    assert set(service.latest("both", area="north")) == {"D1", TDR_ID}
    assert service.latest("both", area="south") == {}


def test_cache_answers_when_store_and_folders_are_empty(make_service, store, cache) -> None:
    record = WiseRecord(device_id="D1", timestamp=NOW, raw={"AI_0 EgF": 12.0}, channels={"AI_0": {"EgF": 12.0}})
    cache.update("D1", record)
    service = make_service(store)

    result = service.latest("wise", "D1")

    assert result["D1"]["channels"]["AI_0"]["display"] == pytest.approx(0.0)
    assert result["D1"]["status"] == {"AI_0": "normal"}


def test_rain_gauge_latest_carries_all_windows(make_service, store) -> None:
    service = make_service(store)
    record = WiseRecord(device_id=RAIN_GAUGE_ID, timestamp=NOW, raw={"DI_0 Cnt": 4.0})
    store.write_points(Source.wise, service.converter.to_points(RAIN_GAUGE_ID, [record]))

    result = service.latest("wise", RAIN_GAUGE_ID)

    payload = result[RAIN_GAUGE_ID]
    for key in ("rainfall_10m", "rainfall_1h", "rainfall_3h", "rainfall_24h"):
        assert key in payload
        assert payload[key] is None


def test_history_swaps_reversed_dates_and_reads_both_trees(make_service, store, landed) -> None:
    service = make_service(store)

    records = service.history_for_device("wise", "D1", date(2024, 3, 10), date(2024, 3, 9))

    assert len(records) == 6
    timestamps = [record["timestamp"] for record in records]
    assert timestamps == sorted(timestamps)
    assert timestamps[-1] == NOW.isoformat()


def test_history_excludes_days_outside_range(make_service, store, landed) -> None:
    service = make_service(store)

    records = service.history_for_device("wise", "D1", date(2024, 3, 10), date(2024, 3, 10))

    assert len(records) == 3


def test_all_history_isolates_failing_device(make_service, landed, caplog) -> None:
    service = make_service(TaggedStore({Source.wise: ["D1", "BROKEN"], Source.tdr: []}))

    with caplog.at_level(logging.ERROR, logger="services.fallback"):
        records = service.all_history("wise", date(2024, 3, 10), date(2024, 3, 10))

    assert {record["deviceId"] for record in records} == {"D1"}
    assert "History query failed for device" in caplog.text


def test_devices_both_deduplicates(make_service) -> None:
    service = make_service(
        TaggedStore({Source.wise: ["D1", "SHARED_X"], Source.tdr: [TDR_ID, "SHARED_X"]})
    )

    devices = service.devices("both")

    assert [device["id"] for device in devices] == ["D1", "SHARED_X", TDR_ID]
    d1 = devices[0]
    assert d1["name"] == "test tilt"
    assert d1["area"] == "north"
    assert d1["hasData"] is True
    assert devices[1]["name"] == "X"
    assert devices[2]["model"] == "TDR"


def test_devices_fall_back_to_folder_listing(make_service, store, landed) -> None:
    service = make_service(store)

    devices = service.devices("wise")

    assert devices == [
        {
            "id": "D1",
            "name": "test tilt",
            "model": "D1",
            "source": "wise",
            "area": "north",
            "lastUpdated": "20240310T20240310120000",
            "hasData": True,
        }
    ]


def test_unknown_source_is_rejected(make_service, store) -> None:
    service = make_service(store)

    with pytest.raises(ValueError):
        service.latest("gps")


class BarrierStore(TaggedStore):
    """Every tag lookup waits until all expected lookups are in flight."""

    def __init__(self, parties: int) -> None:
        super().__init__({Source.wise: [], Source.tdr: []})
        self.barrier = threading.Barrier(parties, timeout=5)
        self.broken = False

    def query_device_tags(self, source):
        try:
            self.barrier.wait()
        except threading.BrokenBarrierError:
            self.broken = True
        return []


def test_overlapping_both_requests_run_all_lookups_at_once(make_service) -> None:
    store = BarrierStore(parties=4)
    service = make_service(store)
    results = []

    def call() -> None:
        results.append(service.latest("both"))

    callers = [threading.Thread(target=call) for _ in range(2)]
    for caller in callers:
        caller.start()
    for caller in callers:
        caller.join(timeout=10)

    assert not store.broken
    assert results == [{}, {}]
