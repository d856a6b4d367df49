from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from datastore.memory import InMemoryStore
from models.devices import Device, DeviceRegistry, Sensor, SensorType
from models.records import Source
from services.cache import LatestCache
from storage.archive import Archive

RAIN_GAUGE_ID = "WISE-4060LAN_RAIN01"
TDR_ID = "TDR_T1"

# 2024-03-10 12:00 in Taipei
NOW = datetime(2024, 3, 10, 4, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry(
        [
            Device(
                device_id="D1",
                source=Source.wise,
                name="test tilt",
                area="north",
                sensors=(
                    Sensor(
                        name="A axis",
                        sensor_type=SensorType.tilt,
                        channels=("AI_0",),
                        initial_values={"AI_0": 12.0},
                    ),
                ),
            ),
            Device(
                device_id=RAIN_GAUGE_ID,
                source=Source.wise,
                name="rain",
                area="south",
                sensors=(Sensor(name="rain", sensor_type=SensorType.rain_gauge, channels=("DI_0",)),),
            ),
            Device(device_id=TDR_ID, source=Source.tdr, name="T1 TDR", area="north"),
        ]
    )


@pytest.fixture
def archive(tmp_path: Path) -> Archive:
    return Archive(
        raw_roots={Source.wise: tmp_path / "wise_data", Source.tdr: tmp_path / "tdr_data"},
        backup_roots={Source.wise: tmp_path / "wise_backup", Source.tdr: tmp_path / "tdr_backup"},
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(clock=fixed_clock)


@pytest.fixture
def cache() -> LatestCache:
    return LatestCache()
