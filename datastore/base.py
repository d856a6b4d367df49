"""Capability contract required of the time-series backend."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence

from models.records import Point, RawRecord, Source


class TimeSeriesStore(Protocol):
    """Operations the ingestion and query layers rely on.

    Implementations raise ``TransientStoreError`` when the backend cannot be
    reached; an empty answer is signalled by ``None`` or an empty list.
    """

    def write_points(self, source: Source, points: Sequence[Point]) -> None:
        ...

    def query_last(self, source: Source, device_id: str) -> Optional[RawRecord]:
        """Latest record for a device within the lookback window."""
        ...

    def query_device_tags(self, source: Source) -> List[str]:
        """Distinct device tags seen within the lookback window."""
        ...

    def query_range(
        self, source: Source, device_id: str, start: datetime, stop: datetime
    ) -> List[RawRecord]:
        """Records in ``[start, stop)`` ordered by ascending time."""
        ...

    def query_counter_increase(
        self,
        source: Source,
        device_id: str,
        field: str,
        window: timedelta,
        stop: Optional[datetime] = None,
    ) -> Optional[float]:
        """Summed non-negative increase of a counter field over a window.

        Returns ``None`` when the window holds fewer than two samples.
        """
        ...

    def close(self) -> None:
        ...
