"""Static device and sensor configuration."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from models.errors import ConfigLookupMiss
from models.records import Source
from settings import get_settings


class SensorType(str, Enum):
    tilt = "tilt"
    water_level = "water_level"
    extensometer = "extensometer"
    rain_gauge = "rain_gauge"
    tdr = "tdr"
    flow = "flow"


@dataclass(frozen=True)
class Sensor:
    name: str
    sensor_type: SensorType
    channels: Tuple[str, ...]
    well_depth: Optional[float] = None
    full_scale_degrees: Optional[float] = None
    ge_range: Optional[float] = None
    initial_values: Mapping[str, float] = field(default_factory=dict)

    @property
    def raw_metric(self) -> str:
        """Column metric holding the undecoded value for this sensor."""
        return "Cnt" if self.sensor_type is SensorType.rain_gauge else "EgF"


@dataclass(frozen=True)
class Device:
    device_id: str
    source: Source
    name: str = ""
    area: Optional[str] = None
    sensors: Tuple[Sensor, ...] = ()

    @property
    def is_rain_gauge(self) -> bool:
        return any(sensor.sensor_type is SensorType.rain_gauge for sensor in self.sensors)

    @property
    def rain_sensor(self) -> Optional[Sensor]:
        for sensor in self.sensors:
            if sensor.sensor_type is SensorType.rain_gauge:
                return sensor
        return None

    @property
    def counter_field(self) -> Optional[str]:
        """Raw column of the rain gauge pulse counter, if this device has one."""
        sensor = self.rain_sensor
        if sensor is None or not sensor.channels:
            return None
        return f"{sensor.channels[0]} {sensor.raw_metric}"


def source_for_device_id(device_id: str) -> Source:
    """Infer the instrument family from the device id naming convention."""

    upper = device_id.upper()
    if upper.startswith("WISE-"):
        return Source.wise
    if upper.startswith("TDR_") or upper.startswith("TDR-"):
        return Source.tdr
    raise ValueError(f"Cannot infer source for device {device_id!r}.")


class DeviceRegistry:
    """Read-only lookup of configured devices keyed by device id."""

    def __init__(self, devices: Iterable[Device]) -> None:
        merged: Dict[str, Device] = {}
        for device in devices:
            existing = merged.get(device.device_id)
            if existing is None:
                merged[device.device_id] = device
                continue
            # one logger can serve several stations, each owning some channels
            merged[device.device_id] = Device(
                device_id=existing.device_id,
                source=existing.source,
                name=existing.name,
                area=existing.area,
                sensors=existing.sensors + device.sensors,
            )
        self._devices = merged

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def require(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise ConfigLookupMiss(device_id)
        return device

    def devices(self, source: Optional[Source] = None) -> List[Device]:
        return [
            device
            for device in self._devices.values()
            if source is None or device.source is source
        ]

    def source_of(self, device_id: str) -> Source:
        device = self._devices.get(device_id)
        if device is not None:
            return device.source
        return source_for_device_id(device_id)

    def is_rain_gauge(self, device_id: Optional[str]) -> bool:
        if not device_id:
            return False
        device = self._devices.get(device_id)
        return device is not None and device.is_rain_gauge

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)


def _tilt(name: str, channel: str, initial: float) -> Sensor:
    return Sensor(
        name=name,
        sensor_type=SensorType.tilt,
        channels=(channel,),
        initial_values={channel: initial},
    )


def _tdr(device_id: str, name: str, area: Optional[str] = None) -> Device:
    return Device(device_id=device_id, source=Source.tdr, name=name, area=area)


DEFAULT_DEVICES: Tuple[Device, ...] = (
    _tdr("TDR_T1", "T1 TDR", "80k"),
    _tdr("TDR_T2", "T2 TDR", "80k"),
    Device(
        device_id="WISE-4010LAN_74FE48941ABE",
        source=Source.wise,
        name="84.6k",
        area="Chunyang",
        sensors=(_tilt("A axis", "AI_0", 12.259), _tilt("B axis", "AI_1", 12.865)),
    ),
    Device(
        device_id="WISE-4010LAN_00D0C9FAD2E3",
        source=Source.wise,
        name="84.65k",
        area="Chunyang",
        sensors=(
            _tilt("84.65k A axis", "AI_0", 11.388),
            _tilt("84.65k B axis", "AI_1", 10.317),
            _tilt("84.7k A axis", "AI_2", 11.56),
            _tilt("84.7k B axis", "AI_3", 10.911),
        ),
    ),
    Device(
        device_id="WISE-4010LAN_74FE489299CB",
        source=Source.wise,
        name="90k groundwater W2",
        area="90k",
        sensors=(
            Sensor(
                name="groundwater W2",
                sensor_type=SensorType.water_level,
                channels=("AI_0",),
                well_depth=-50,
            ),
        ),
    ),
    Device(
        device_id="WISE-4060LAN_00D0C9FD4D44",
        source=Source.wise,
        name="91.5k rain gauge",
        area="90k",
        sensors=(
            Sensor(name="91.5k rain gauge", sensor_type=SensorType.rain_gauge, channels=("DI_0",)),
        ),
    ),
    _tdr("TDR_T3", "T3 TDR", "90k"),
    _tdr("TDR_T4", "T4 TDR", "90k"),
    Device(
        device_id="WISE-4010LAN_00D0C9FAD2C9",
        source=Source.wise,
        name="14.25k",
        area="Meifeng",
        sensors=(
            _tilt("14.25k A axis", "AI_0", 12.052),
            _tilt("14.25k B axis", "AI_1", 11.798),
            _tilt("14.27k A axis", "AI_2", 12.294),
            _tilt("14.27k B axis", "AI_3", 12.463),
        ),
    ),
    Device(
        device_id="WISE-4010LAN_00D0C9FAC4F8",
        source=Source.wise,
        name="14A CH1 tiltmeter",
        area="Meifeng",
        sensors=(_tilt("A axis", "AI_0", 5.684), _tilt("B axis", "AI_1", 12.974)),
    ),
    *(
        Device(
            device_id=device_id,
            source=Source.wise,
            name=name,
            area="Meifeng",
            sensors=(
                Sensor(
                    name="extension",
                    sensor_type=SensorType.extensometer,
                    channels=("AI_0",),
                    ge_range=500,
                    initial_values={"AI_0": initial},
                ),
            ),
        )
        for device_id, name, initial in (
            ("WISE-4010LAN_74FE489299F4", "GE1", 9.97),
            ("WISE-4010LAN_74FE4890BAFC", "GE2", 18.155),
            ("WISE-4010LAN_74FE48941AD9", "GE3", 4.82),
        )
    ),
    _tdr("TDR_CH1", "CH1 TDR", "Meifeng"),
    _tdr("TDR_CH2", "CH2 TDR", "Meifeng"),
    _tdr("TDR_CH3", "CH3 TDR", "Meifeng"),
)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def sensor_from_dict(payload: Mapping[str, Any]) -> Sensor:
    channels = payload.get("channels") or []
    if isinstance(channels, str):
        channels = [channels]
    initial_values = payload.get("initialValues") or payload.get("initial_values") or {}
    return Sensor(
        name=str(payload.get("name", "")),
        sensor_type=SensorType(payload.get("type", payload.get("sensor_type"))),
        channels=tuple(str(channel) for channel in channels),
        well_depth=_optional_float(payload.get("wellDepth", payload.get("well_depth"))),
        full_scale_degrees=_optional_float(
            payload.get("fullScaleDegrees", payload.get("full_scale_degrees"))
        ),
        ge_range=_optional_float(payload.get("geRange", payload.get("ge_range"))),
        initial_values={str(k): float(v) for k, v in initial_values.items()},
    )


def device_from_dict(payload: Mapping[str, Any]) -> Device:
    device_id = str(payload["id"])
    raw_source = payload.get("source")
    source = Source(raw_source) if raw_source else source_for_device_id(device_id)
    return Device(
        device_id=device_id,
        source=source,
        name=str(payload.get("name", device_id)),
        area=payload.get("area"),
        sensors=tuple(sensor_from_dict(item) for item in payload.get("sensors") or []),
    )


def load_registry(path: Path) -> DeviceRegistry:
    """Load a registry from a JSON list of device objects."""

    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, Mapping):
        data = data.get("devices", [])
    return DeviceRegistry(device_from_dict(item) for item in data)


@lru_cache
def build_default_registry(path: Optional[str] = None) -> DeviceRegistry:
    settings = get_settings()
    config_path = settings.device_config_path if path is None else path
    if config_path:
        return load_registry(Path(config_path))
    return DeviceRegistry(DEFAULT_DEVICES)
