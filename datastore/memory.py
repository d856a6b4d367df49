from __future__ import annotations
import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence

from models.errors import TransientStoreError
from models.records import (
    Point,
    RawRecord,
    Source,
    TdrRecord,
    TdrSample,
    WiseRecord,
    group_channels,
)
from services.rainfall import counter_increase
from settings import get_settings


def _to_ns(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp()) * 1_000_000_000 + moment.microsecond * 1_000


def _from_ns(value: int) -> datetime:
    seconds, remainder = divmod(value, 1_000_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(
        microseconds=remainder // 1_000
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local time-series store with optional JSON persistence.

    Used when no InfluxDB endpoint is configured and throughout the tests.
    """

    def __init__(
        self,
        persistence_path: Optional[Path] = None,
        lookback: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._points: Dict[Source, List[Point]] = {source: [] for source in Source}
        self.persistence_path = persistence_path
        self.lookback = lookback
        self._clock = clock
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def write_points(self, source: Source, points: Sequence[Point]) -> None:
        if not points:
            return
        with self._lock:
            stored = self._points[source]
            before = len(stored)
            stored.extend(points)
            try:
                self._persist()
            except OSError as exc:
                # memory must not hold points the file lacks
                del stored[before:]
                raise TransientStoreError(f"Cannot persist points to {self.persistence_path}: {exc}") from exc

    def query_last(self, source: Source, device_id: str) -> Optional[RawRecord]:
        since = _to_ns(self._clock() - self.lookback)
        records = self._records(source, device_id, since, None)
        return records[-1] if records else None

    def query_device_tags(self, source: Source) -> List[str]:
        since = _to_ns(self._clock() - self.lookback)
        with self._lock:
            tags = {point.device_id for point in self._points[source] if point.timestamp_ns >= since}
        return sorted(tags)

    def query_range(
        self, source: Source, device_id: str, start: datetime, stop: datetime
    ) -> List[RawRecord]:
        return self._records(source, device_id, _to_ns(start), _to_ns(stop))

    def query_counter_increase(
        self,
        source: Source,
        device_id: str,
        field: str,
        window: timedelta,
        stop: Optional[datetime] = None,
    ) -> Optional[float]:
        end = stop or self._clock()
        start_ns = _to_ns(end - window)
        stop_ns = _to_ns(end)
        with self._lock:
            samples = sorted(
                (point.timestamp_ns, point.fields[field])
                for point in self._points[source]
                if point.device_id == device_id
                and field in point.fields
                and start_ns <= point.timestamp_ns <= stop_ns
            )
        return counter_increase([value for _, value in samples])

    def close(self) -> None:
        return None

    def _records(
        self, source: Source, device_id: str, start_ns: int, stop_ns: Optional[int]
    ) -> List[RawRecord]:
        with self._lock:
            selected = [
                point
                for point in self._points[source]
                if point.device_id == device_id
                and point.timestamp_ns >= start_ns
                and (stop_ns is None or point.timestamp_ns < stop_ns)
            ]

        grouped: Dict[int, List[Point]] = defaultdict(list)
        for point in selected:
            grouped[point.timestamp_ns].append(point)

        records: List[RawRecord] = []
        for ts in sorted(grouped):
            timestamp = _from_ns(ts)
            if source is Source.wise:
                fields: Dict[str, float] = {}
                for point in grouped[ts]:
                    fields.update(point.fields)
                records.append(
                    WiseRecord(
                        device_id=device_id,
                        timestamp=timestamp,
                        raw=dict(fields),
                        channels=group_channels(fields),
                    )
                )
            else:
                samples = sorted(
                    (
                        TdrSample(distance_m=float(point.tags["distance_m"]), rho=point.fields["rho"])
                        for point in grouped[ts]
                        if "distance_m" in point.tags and "rho" in point.fields
                    ),
                    key=lambda sample: sample.distance_m,
                )
                records.append(TdrRecord(device_id=device_id, timestamp=timestamp, data=samples))
        return records

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            source.value: [
                {
                    "measurement": point.measurement,
                    "device": point.device_id,
                    "time": point.timestamp_ns,
                    "fields": dict(point.fields),
                    "tags": dict(point.tags),
                }
                for point in points
            ]
            for source, points in self._points.items()
        }
        self.persistence_path.write_text(json.dumps(payload, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for source_name, items in data.items():
            try:
                source = Source(source_name)
            except ValueError:
                continue
            self._points[source].extend(
                Point(
                    measurement=item["measurement"],
                    device_id=item["device"],
                    timestamp_ns=int(item["time"]),
                    fields={key: float(value) for key, value in item["fields"].items()},
                    tags=dict(item.get("tags") or {}),
                )
                for item in items
            )


@lru_cache
def build_default_memory_store(path: Optional[str] = None) -> InMemoryStore:
    settings = get_settings()
    store_path = settings.store_persistence_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return InMemoryStore(
        persistence_path=persistence,
        lookback=timedelta(days=settings.store_lookback_days),
    )
