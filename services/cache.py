"""Per-device cache of the most recently ingested record."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Dict, Optional

from models.records import RawRecord, WiseRecord
from services.rainfall import counter_deltas


@dataclass(frozen=True)
class CacheEntry:
    record: RawRecord
    # pulse-count increase since the previous cached record, rain gauges only
    step_counts: Optional[float] = None


class LatestCache:
    """Written by the scanner, read by query handlers."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

    def get(self, device_id: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(device_id)

    def update(
        self, device_id: str, record: RawRecord, counter_field: Optional[str] = None
    ) -> CacheEntry:
        """Store ``record`` unless the cache already holds it or a newer one."""
        with self._lock:
            previous = self._entries.get(device_id)
            if previous is not None and previous.record.timestamp >= record.timestamp:
                return previous
            step = None
            if counter_field and previous is not None:
                step = _counter_step(previous.record, record, counter_field)
            entry = CacheEntry(record=record, step_counts=step)
            self._entries[device_id] = entry
            return entry

    def clear(self, device_id: Optional[str] = None) -> None:
        with self._lock:
            if device_id is None:
                self._entries.clear()
            else:
                self._entries.pop(device_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _counter_value(record: RawRecord, counter_field: str) -> Optional[float]:
    if not isinstance(record, WiseRecord):
        return None
    try:
        return float(record.raw[counter_field])
    except (KeyError, TypeError, ValueError):
        return None


def _counter_step(previous: RawRecord, current: RawRecord, counter_field: str) -> Optional[float]:
    before = _counter_value(previous, counter_field)
    after = _counter_value(current, counter_field)
    if before is None or after is None:
        return None
    return counter_deltas([before, after])[0]


@lru_cache
def build_default_cache() -> LatestCache:
    return LatestCache()
