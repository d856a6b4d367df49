"""Conversion of parsed records into time-series points."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from models.devices import Device, DeviceRegistry
from models.records import ParsedRecord, Point, RecordError, TdrRecord, WiseRecord
from services import decoder

logger = logging.getLogger(__name__)

WISE_MEASUREMENT = "wise_raw"
TDR_MEASUREMENT = "tdr_raw"


def timestamp_ns(record: WiseRecord | TdrRecord) -> int:
    seconds = int(record.timestamp.timestamp())
    return seconds * 1_000_000_000 + record.timestamp.microsecond * 1_000


def _numeric(value: object) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def derive_fields(device: Device, record: WiseRecord) -> Dict[str, float]:
    """Compute ``"<ch> PEgF"`` engineering values and ``"<ch> display"`` deltas."""

    derived: Dict[str, float] = {}
    for sensor in device.sensors:
        for channel in sensor.channels:
            raw_value = _numeric(record.raw.get(f"{channel} {sensor.raw_metric}", ""))
            if raw_value is None:
                continue
            derived[f"{channel} PEgF"] = decoder.decode(sensor.sensor_type, raw_value, sensor)
            delta = decoder.display_delta(sensor.sensor_type, raw_value, sensor, channel)
            if delta is not None:
                derived[f"{channel} display"] = delta
    return derived


def enrich_record(device: Device, record: WiseRecord) -> WiseRecord:
    """Add derived fields to a record read back from a file."""

    for key, value in derive_fields(device, record).items():
        record.raw[key] = value
        channel, _, metric = key.partition(" ")
        record.channels.setdefault(channel, {})[metric] = value
    return record


def wise_point(device: Device, record: WiseRecord) -> Point:
    fields: Dict[str, float] = {}
    for key, value in record.raw.items():
        # derived columns are recomputed from the raw loop value below
        if key.endswith(" PEgF") or key.endswith(" display"):
            continue
        number = _numeric(value)
        if number is not None:
            fields[key] = number
    fields.update(derive_fields(device, record))
    return Point(
        measurement=WISE_MEASUREMENT,
        device_id=device.device_id,
        timestamp_ns=timestamp_ns(record),
        fields=fields,
    )


def tdr_points(device: Device, record: TdrRecord) -> List[Point]:
    ts = timestamp_ns(record)
    return [
        Point(
            measurement=TDR_MEASUREMENT,
            device_id=device.device_id,
            timestamp_ns=ts,
            fields={"rho": sample.rho},
            tags={"distance_m": repr(sample.distance_m)},
        )
        for sample in record.data
    ]


class PointConverter:
    """Turns normalized records into points tagged by device."""

    def __init__(self, registry: DeviceRegistry) -> None:
        self.registry = registry

    def to_points(self, device_id: str, records: Iterable[ParsedRecord]) -> List[Point]:
        """Convert valid records; raises ``ConfigLookupMiss`` for unknown devices."""

        device = self.registry.require(device_id)
        points: List[Point] = []
        for record in records:
            if isinstance(record, RecordError):
                continue
            if isinstance(record, WiseRecord):
                point = wise_point(device, record)
                if point.fields:
                    points.append(point)
            else:
                points.extend(tdr_points(device, record))
        return points

    def enrich(self, record: WiseRecord | TdrRecord) -> WiseRecord | TdrRecord:
        if not isinstance(record, WiseRecord):
            return record
        device = self.registry.get(record.device_id)
        if device is None:
            return record
        return enrich_record(device, record)
