"""InfluxDB 2.x implementation of the time-series store capability."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from influxdb_client import InfluxDBClient
from influxdb_client import Point as InfluxPoint
from influxdb_client.client.flux_table import FluxRecord
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.domain.write_precision import WritePrecision

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
from services.converter import TDR_MEASUREMENT, WISE_MEASUREMENT
from services.rainfall import counter_increase
from settings import get_settings

logger = logging.getLogger(__name__)

_MEASUREMENTS = {Source.wise: WISE_MEASUREMENT, Source.tdr: TDR_MEASUREMENT}


def _flux_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    iso = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return f"time(v: {json.dumps(iso)})"


def to_influx_point(point: Point) -> InfluxPoint:
    influx_point = InfluxPoint(point.measurement).tag("device", point.device_id)
    for key, value in point.tags.items():
        influx_point = influx_point.tag(key, value)
    for key, value in point.fields.items():
        influx_point = influx_point.field(key, float(value))
    return influx_point.time(point.timestamp_ns, WritePrecision.NS)


class InfluxStore:
    """Store backed by one bucket and token per instrument family."""

    def __init__(
        self,
        url: str,
        org: str,
        tokens: Mapping[Source, Optional[str]],
        buckets: Mapping[Source, str],
        lookback: timedelta = timedelta(days=30),
        timeout_ms: int = 10_000,
    ) -> None:
        self.url = url
        self.org = org
        self.buckets = dict(buckets)
        self.lookback = lookback
        self._clients: Dict[Source, InfluxDBClient] = {
            source: InfluxDBClient(url=url, token=tokens.get(source), org=org, timeout=timeout_ms)
            for source in Source
        }

    def write_points(self, source: Source, points: Sequence[Point]) -> None:
        if not points:
            return
        records = [to_influx_point(point) for point in points]
        try:
            write_api = self._clients[source].write_api(write_options=SYNCHRONOUS)
            write_api.write(
                bucket=self.buckets[source],
                org=self.org,
                record=records,
                write_precision=WritePrecision.NS,
            )
        except Exception as exc:  # noqa: BLE001 - client raises urllib3 and API errors alike
            raise TransientStoreError(f"Write to {source.value} bucket failed: {exc}") from exc

    def query_last(self, source: Source, device_id: str) -> Optional[RawRecord]:
        flux = (
            f"{self._from(source)}\n"
            f"  |> range(start: -{self._lookback_flux()})\n"
            f"{self._device_filter(source, device_id)}\n"
            f"  |> last()"
        )
        rows = list(self._stream(source, flux))
        if not rows:
            return None
        if source is Source.wise:
            latest = max(row.get_time() for row in rows)
            fields = {row.get_field(): row.get_value() for row in rows}
            return WiseRecord(
                device_id=device_id,
                timestamp=latest,
                raw=fields,
                channels=group_channels(fields),
            )
        latest = max(row.get_time() for row in rows)
        return self._tdr_record(device_id, latest, [row for row in rows if row.get_time() == latest])

    def query_device_tags(self, source: Source) -> List[str]:
        flux = (
            'import "influxdata/influxdb/schema"\n'
            "schema.tagValues(\n"
            f"  bucket: {json.dumps(self.buckets[source])},\n"
            '  tag: "device",\n'
            "  predicate: (r) => true,\n"
            f"  start: -{self._lookback_flux()}\n"
            ")"
        )
        return [str(row.get_value()) for row in self._stream(source, flux)]

    def query_range(
        self, source: Source, device_id: str, start: datetime, stop: datetime
    ) -> List[RawRecord]:
        flux = (
            f"{self._from(source)}\n"
            f"  |> range(start: {_flux_time(start)}, stop: {_flux_time(stop)})\n"
            f"{self._device_filter(source, device_id)}\n"
            '  |> sort(columns: ["_time"])'
        )
        grouped: Dict[datetime, List[FluxRecord]] = defaultdict(list)
        for row in self._stream(source, flux):
            grouped[row.get_time()].append(row)

        records: List[RawRecord] = []
        for ts in sorted(grouped):
            rows = grouped[ts]
            if source is Source.wise:
                fields = {row.get_field(): row.get_value() for row in rows}
                records.append(
                    WiseRecord(
                        device_id=device_id,
                        timestamp=ts,
                        raw=fields,
                        channels=group_channels(fields),
                    )
                )
            else:
                records.append(self._tdr_record(device_id, ts, rows))
        return records

    def query_counter_increase(
        self,
        source: Source,
        device_id: str,
        field: str,
        window: timedelta,
        stop: Optional[datetime] = None,
    ) -> Optional[float]:
        end = stop or datetime.now(timezone.utc)
        flux = (
            f"{self._from(source)}\n"
            f"  |> range(start: {_flux_time(end - window)}, stop: {_flux_time(end + timedelta(microseconds=1))})\n"
            f"{self._device_filter(source, device_id)}\n"
            f"  |> filter(fn: (r) => r._field == {json.dumps(field)})\n"
            '  |> sort(columns: ["_time"])\n'
            '  |> keep(columns: ["_time", "_value"])'
        )
        values = [float(row.get_value()) for row in self._stream(source, flux)]
        return counter_increase(values)

    def close(self) -> None:
        for client in self._clients.values():
            client.close()

    def _from(self, source: Source) -> str:
        return f"from(bucket: {json.dumps(self.buckets[source])})"

    def _device_filter(self, source: Source, device_id: str) -> str:
        measurement = json.dumps(_MEASUREMENTS[source])
        return (
            f"  |> filter(fn: (r) => r._measurement == {measurement}"
            f" and r.device == {json.dumps(device_id)})"
        )

    def _lookback_flux(self) -> str:
        return f"{int(self.lookback.total_seconds())}s"

    def _stream(self, source: Source, flux: str) -> Iterator[FluxRecord]:
        try:
            query_api = self._clients[source].query_api()
            rows = list(query_api.query_stream(query=flux, org=self.org))
        except Exception as exc:  # noqa: BLE001 - client raises urllib3 and API errors alike
            raise TransientStoreError(f"Query on {source.value} bucket failed: {exc}") from exc
        return iter(rows)

    @staticmethod
    def _tdr_record(device_id: str, ts: datetime, rows: List[FluxRecord]) -> TdrRecord:
        samples: List[TdrSample] = []
        for row in rows:
            values: Dict[str, Any] = row.values
            try:
                samples.append(
                    TdrSample(distance_m=float(values["distance_m"]), rho=float(row.get_value()))
                )
            except (KeyError, TypeError, ValueError):
                logger.warning(
                    "Skipping TDR sample with invalid values",
                    extra={"device_id": device_id, "reason": str(values.get("distance_m"))},
                )
        samples.sort(key=lambda sample: sample.distance_m)
        return TdrRecord(device_id=device_id, timestamp=ts, data=samples)


@lru_cache
def build_default_influx_store() -> InfluxStore:
    settings = get_settings()
    if not settings.influx_url:
        raise ValueError("INFLUX_URL is not configured.")
    return InfluxStore(
        url=settings.influx_url,
        org=settings.influx_org,
        tokens={Source.wise: settings.influx_token_wise, Source.tdr: settings.influx_token_tdr},
        buckets={Source.wise: settings.influx_bucket_wise, Source.tdr: settings.influx_bucket_tdr},
        lookback=timedelta(days=settings.store_lookback_days),
        timeout_ms=settings.influx_timeout_ms,
    )
