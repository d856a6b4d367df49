"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union


class Source(str, Enum):
    """Instrument families, each with its own file format and bucket."""

    wise = "wise"
    tdr = "tdr"


class SourceSelector(str, Enum):
    """Query-side source selection, ``both`` fans out to every family."""

    wise = "wise"
    tdr = "tdr"
    both = "both"


@dataclass(slots=True)
class WiseRecord:
    """A single logger row parsed from a CSV signal log."""

    device_id: str
    timestamp: datetime
    raw: Dict[str, Any]
    channels: Dict[str, Dict[str, float]] = field(default_factory=dict)
    source: Source = Source.wise


@dataclass(slots=True)
class TdrSample:
    distance_m: float
    rho: float


@dataclass(slots=True)
class TdrRecord:
    """One reflectometry scan: a profile of rho values along the cable."""

    device_id: str
    timestamp: datetime
    data: List[TdrSample] = field(default_factory=list)
    source: Source = Source.tdr


@dataclass(slots=True)
class RecordError:
    """A row or document that could not be turned into a record."""

    reason: str
    row_number: Optional[int] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


RawRecord = Union[WiseRecord, TdrRecord]
ParsedRecord = Union[WiseRecord, TdrRecord, RecordError]


@dataclass(frozen=True, slots=True)
class Point:
    """A measurement destined for the time-series store."""

    measurement: str
    device_id: str
    timestamp_ns: int
    fields: Mapping[str, float]
    tags: Mapping[str, str] = field(default_factory=dict)


def group_channels(fields: Mapping[str, Any]) -> Dict[str, Dict[str, float]]:
    """Group ``"<channel> <metric>"`` keys into ``{channel: {metric: value}}``."""

    channels: Dict[str, Dict[str, float]] = {}
    for key, value in fields.items():
        channel, sep, metric = key.partition(" ")
        if not sep or not metric or not isinstance(value, (int, float)):
            continue
        channels.setdefault(channel, {})[metric.strip()] = float(value)
    return channels


def record_to_dict(record: RawRecord) -> Dict[str, Any]:
    """Serialize a record into the JSON shape consumed by the dashboard."""

    payload: Dict[str, Any] = {
        "deviceId": record.device_id,
        "source": record.source.value,
        "timestamp": record.timestamp.isoformat(),
    }
    if isinstance(record, WiseRecord):
        payload["raw"] = dict(record.raw)
        payload["channels"] = {name: dict(values) for name, values in record.channels.items()}
    else:
        payload["data"] = [
            {"distance_m": sample.distance_m, "rho": sample.rho} for sample in record.data
        ]
    return payload
