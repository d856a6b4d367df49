"""Accumulated-rainfall enrichment for rain-gauge results."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, MutableMapping, Optional, Sequence, Union

from models.devices import DeviceRegistry
from models.errors import TransientStoreError
from models.records import Source

if TYPE_CHECKING:
    from datastore.base import TimeSeriesStore

logger = logging.getLogger(__name__)

LATEST_DURATIONS = ("10m", "1h", "3h", "24h")
DEFAULT_HISTORY_DURATION = "10m"

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

Duration = Union[str, int]


def normalize_duration(duration: Duration) -> str:
    """Canonical ``<n><unit>`` label; bare integers are minutes."""
    if isinstance(duration, bool):
        raise ValueError(f"Invalid rainfall duration: {duration!r}")
    if isinstance(duration, int):
        label = f"{duration}m"
    else:
        label = re.sub(r"\s+", "", str(duration))
    match = _DURATION_PATTERN.match(label)
    if not match or int(match.group(1)) <= 0:
        raise ValueError(f"Invalid rainfall duration: {duration!r}")
    return label


def parse_duration(duration: Duration) -> timedelta:
    label = normalize_duration(duration)
    match = _DURATION_PATTERN.match(label)
    if match is None:
        raise ValueError(f"Invalid rainfall duration: {duration!r}")
    return timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])


def field_name(duration: Duration) -> str:
    return f"rainfall_{normalize_duration(duration)}"


def counter_deltas(values: Sequence[float]) -> List[float]:
    """Per-step increases of a monotonic pulse counter.

    A drop in the counter is a reset, so the new reading counts from zero.
    """
    deltas: List[float] = []
    for previous, current in zip(values, values[1:]):
        deltas.append(current - previous if current >= previous else current)
    return deltas


def counter_increase(values: Sequence[float]) -> Optional[float]:
    """Sum of ``counter_deltas``; ``None`` when there is no step to measure."""
    if len(values) < 2:
        return None
    return float(sum(counter_deltas(values)))


def coerce_rainfall(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class RainfallEnricher:
    """Adds ``rainfall_<duration>`` fields to rain-gauge records in place."""

    store: "TimeSeriesStore"
    registry: DeviceRegistry
    counts_per_mm: float = 2.0

    def rainfall_mm(
        self, device_id: str, duration: Duration, stop: Optional[datetime] = None
    ) -> Optional[float]:
        """Rainfall over the window ending at ``stop`` (now when omitted)."""
        device = self.registry.get(device_id)
        counter_field = device.counter_field if device is not None else None
        if counter_field is None:
            return None
        counts = self.store.query_counter_increase(
            Source.wise, device_id, counter_field, parse_duration(duration), stop
        )
        if counts is None:
            return None
        return counts / self.counts_per_mm

    def enrich(
        self,
        records: Union[MutableMapping[str, Dict[str, Any]], Iterable[Dict[str, Any]]],
        durations: Iterable[Duration],
        window_end_from_record: bool = False,
    ) -> None:
        labels = [normalize_duration(duration) for duration in durations]
        if isinstance(records, MutableMapping):
            entries = [(device_id, record) for device_id, record in records.items()]
        else:
            entries = [(record.get("deviceId"), record) for record in records]

        for device_id, record in entries:
            if not isinstance(record, dict) or not self.registry.is_rain_gauge(device_id):
                continue
            stop = _record_time(record) if window_end_from_record else None
            for label in labels:
                key = f"rainfall_{label}"
                if record.get(key) is not None:
                    record[key] = coerce_rainfall(record[key])
                    continue
                try:
                    record[key] = self.rainfall_mm(device_id, label, stop)
                except TransientStoreError as exc:
                    logger.warning(
                        "Rainfall computation failed",
                        extra={"device_id": device_id, "duration": label, "reason": str(exc)},
                    )
                    record[key] = None


def _record_time(record: Dict[str, Any]) -> Optional[datetime]:
    value = record.get("timestamp")
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None
