"""Store-first query layer that falls back to the raw and backup trees.

Every public method accepts a ``SourceSelector``; ``both`` runs the wise and
tdr sub-queries on a two-worker pool and joins them once both have finished.
Results are plain dictionaries ready for JSON responses.
"""

from __future__ import annotations

import logging
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from datastore.base import TimeSeriesStore
from datastore.factory import build_default_store
from models.devices import DeviceRegistry, SensorType, build_default_registry
from models.errors import MalformedRecordError, MonitorError, TransientStoreError
from models.records import RawRecord, RecordError, Source, SourceSelector, record_to_dict
from services import decoder
from services.cache import LatestCache, build_default_cache
from services.converter import PointConverter
from services.parsers import local_zone, parse_tdr_json, parse_wise_csv
from services.rainfall import DEFAULT_HISTORY_DURATION, LATEST_DURATIONS, RainfallEnricher
from settings import get_settings
from storage.archive import Archive, FileEntry, build_default_archive

logger = logging.getLogger(__name__)

T = TypeVar("T")
Selector = Union[Source, SourceSelector, str]

_CLASSIFIED_TYPES = (SensorType.tilt, SensorType.extensometer)


def as_selector(source: Selector) -> SourceSelector:
    if isinstance(source, SourceSelector):
        return source
    if isinstance(source, Source):
        return SourceSelector(source.value)
    try:
        return SourceSelector(str(source).lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported source {source!r}; expected wise, tdr or both.") from exc


def device_model(device_id: str, source: Source) -> str:
    if source is Source.tdr:
        return "TDR"
    return device_id.split("_")[0] or "WISE"


class FallbackQueryService:
    """Answers latest, history and device queries."""

    def __init__(
        self,
        store: TimeSeriesStore,
        archive: Archive,
        registry: DeviceRegistry,
        cache: LatestCache,
        local_tz: tzinfo = timezone.utc,
        counts_per_mm: float = 2.0,
        abnormal_threshold: float = 1.0,
    ) -> None:
        self.store = store
        self.archive = archive
        self.registry = registry
        self.cache = cache
        self.local_tz = local_tz
        self.abnormal_threshold = abnormal_threshold
        self.converter = PointConverter(registry)
        self.rainfall = RainfallEnricher(store, registry, counts_per_mm)

    # latest

    def latest(
        self,
        source: Selector,
        device_id: Optional[str] = None,
        area: Optional[str] = None,
    ) -> Dict[str, Dict[str, Any]]:
        selector = as_selector(source)
        if selector is SourceSelector.both:
            wise, tdr = self._fan_out(lambda src: self._latest_source(src, device_id))
            merged = {**wise, **tdr}
        else:
            merged = self._latest_source(Source(selector.value), device_id)

        if area:
            merged = {
                key: value for key, value in merged.items() if self._area_of(key) == area
            }
        return merged

    def _latest_source(self, source: Source, device_id: Optional[str]) -> Dict[str, Dict[str, Any]]:
        records: Dict[str, RawRecord] = {}
        try:
            records = self._latest_from_store(source, device_id)
        except TransientStoreError as exc:
            logger.warning(
                "Store unavailable for latest query; reading folders",
                extra={"source": source.value, "device_id": device_id, "reason": str(exc)},
            )
        if not records:
            logger.warning(
                "No latest data in store; reading folders",
                extra={"source": source.value, "device_id": device_id},
            )
            records = self._latest_from_folder(source, device_id)

        if not records and device_id:
            entry = self.cache.get(device_id)
            if entry is not None and entry.record.source is source:
                records = {device_id: entry.record}

        payload: Dict[str, Dict[str, Any]] = {}
        for key, record in records.items():
            record = self.converter.enrich(record)
            device = self.registry.get(key)
            self.cache.update(key, record, device.counter_field if device is not None else None)
            payload[key] = self.serialize(record)
        self.rainfall.enrich(payload, LATEST_DURATIONS)
        return payload

    def _latest_from_store(self, source: Source, device_id: Optional[str]) -> Dict[str, RawRecord]:
        device_ids = [device_id] if device_id else self.store.query_device_tags(source)
        records: Dict[str, RawRecord] = {}
        for key in device_ids:
            record = self.store.query_last(source, key)
            if record is not None:
                records[key] = record
        return records

    def _latest_from_folder(self, source: Source, device_id: Optional[str]) -> Dict[str, RawRecord]:
        device_ids = [device_id] if device_id else self.archive.known_device_ids(source)
        records: Dict[str, RawRecord] = {}
        for key in device_ids:
            entry = self.archive.latest_file(source, key)
            if entry is None:
                continue
            valid = self._read_file(source, entry)
            if valid:
                records[key] = max(valid, key=lambda record: record.timestamp)
        return records

    # history

    def history_for_device(
        self,
        source: Selector,
        device_id: str,
        start_date: date,
        end_date: date,
        rain_interval: str = DEFAULT_HISTORY_DURATION,
    ) -> List[Dict[str, Any]]:
        if end_date < start_date:
            start_date, end_date = end_date, start_date
        selector = as_selector(source)
        if selector is SourceSelector.both:
            wise, tdr = self._fan_out(
                lambda src: self._history_source(src, device_id, start_date, end_date, rain_interval)
            )
            return wise + tdr
        return self._history_source(Source(selector.value), device_id, start_date, end_date, rain_interval)

    def all_history(
        self,
        source: Selector,
        start_date: date,
        end_date: date,
        rain_interval: str = DEFAULT_HISTORY_DURATION,
    ) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for info in self.devices(source):
            device_id = info["id"]
            try:
                results.extend(
                    self.history_for_device(info["source"], device_id, start_date, end_date, rain_interval)
                )
            except (MonitorError, OSError) as exc:
                logger.error(
                    "History query failed for device",
                    extra={"device_id": device_id, "source": info["source"], "reason": str(exc)},
                )
        return results

    def _history_source(
        self,
        source: Source,
        device_id: str,
        start_date: date,
        end_date: date,
        rain_interval: str,
    ) -> List[Dict[str, Any]]:
        start = datetime.combine(start_date, time.min, tzinfo=self.local_tz)
        stop = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=self.local_tz)

        records: List[RawRecord] = []
        try:
            records = self.store.query_range(source, device_id, start, stop)
        except TransientStoreError as exc:
            logger.warning(
                "Store unavailable for history query; reading folders",
                extra={"source": source.value, "device_id": device_id, "reason": str(exc)},
            )
        if not records:
            records = self._history_from_folder(source, device_id, start_date, end_date, start, stop)

        payload = [self.serialize(self.converter.enrich(record)) for record in records]
        if self.registry.is_rain_gauge(device_id):
            self.rainfall.enrich(payload, [rain_interval], window_end_from_record=True)
        return payload

    def _history_from_folder(
        self,
        source: Source,
        device_id: str,
        start_date: date,
        end_date: date,
        start: datetime,
        stop: datetime,
    ) -> List[RawRecord]:
        # local calendar days can straddle two UTC-named folders
        days = {
            (start_date + timedelta(days=offset)).strftime("%Y%m%d")
            for offset in range(-1, (end_date - start_date).days + 2)
        }
        records: List[RawRecord] = []
        for entry in self.archive.files_for_dates(source, device_id, days):
            records.extend(
                record for record in self._read_file(source, entry) if start <= record.timestamp < stop
            )
        records.sort(key=lambda record: record.timestamp)
        return records

    # devices

    def devices(self, source: Selector) -> List[Dict[str, Any]]:
        selector = as_selector(source)
        if selector is not SourceSelector.both:
            return self._devices_source(Source(selector.value))

        wise, tdr = self._fan_out(self._devices_source)
        seen: set[str] = set()
        merged: List[Dict[str, Any]] = []
        for info in wise + tdr:
            if info["id"] in seen:
                continue
            seen.add(info["id"])
            merged.append(info)
        return merged

    def _devices_source(self, source: Source) -> List[Dict[str, Any]]:
        device_ids: List[str] = []
        try:
            device_ids = self.store.query_device_tags(source)
        except TransientStoreError as exc:
            logger.warning(
                "Store unavailable for device list; reading folders",
                extra={"source": source.value, "reason": str(exc)},
            )
        if device_ids:
            return [self.device_info(source, device_id, has_data=True) for device_id in device_ids]

        infos = []
        for device_id in self.archive.known_device_ids(source):
            entry = self.archive.latest_file(source, device_id)
            last_updated = f"{entry.date_dir}T{entry.path.stem}" if entry is not None else None
            infos.append(
                self.device_info(source, device_id, has_data=entry is not None, last_updated=last_updated)
            )
        return infos

    def device_info(
        self,
        source: Source,
        device_id: str,
        has_data: bool,
        last_updated: Optional[str] = None,
    ) -> Dict[str, Any]:
        device = self.registry.get(device_id)
        if device is not None and device.name:
            name = device.name
        else:
            parts = device_id.split("_")
            name = parts[1] if len(parts) > 1 and parts[1] else device_id
        return {
            "id": device_id,
            "name": name,
            "model": device_model(device_id, source),
            "source": source.value,
            "area": device.area if device is not None else None,
            "lastUpdated": last_updated,
            "hasData": has_data,
        }

    # helpers

    def _area_of(self, device_id: str) -> Optional[str]:
        device = self.registry.get(device_id)
        return device.area if device is not None else None

    def serialize(self, record: RawRecord) -> Dict[str, Any]:
        payload = record_to_dict(record)
        device = self.registry.get(record.device_id)
        if device is None or record.source is not Source.wise:
            return payload

        status: Dict[str, Optional[str]] = {}
        for sensor in device.sensors:
            if sensor.sensor_type not in _CLASSIFIED_TYPES:
                continue
            for channel in sensor.channels:
                metrics = payload["channels"].get(channel, {})
                value = metrics.get("display", metrics.get("PEgF"))
                label = decoder.classify(value, self.abnormal_threshold)
                if label is not None:
                    status[channel] = label
        if status:
            payload["status"] = status
        return payload

    def _read_file(self, source: Source, entry: FileEntry) -> List[RawRecord]:
        try:
            if source is Source.wise:
                parsed = parse_wise_csv(entry.path, entry.device_id, self.local_tz)
            else:
                parsed = parse_tdr_json(entry.path, entry.device_id, self.local_tz)
        except MalformedRecordError as exc:
            logger.warning(
                "Unreadable data file",
                extra={"device_id": entry.device_id, "file_path": str(entry.path), "reason": str(exc)},
            )
            return []
        return [record for record in parsed if not isinstance(record, RecordError)]

    def _fan_out(self, query: Callable[[Source], T]) -> tuple[T, T]:
        # pool per call; concurrent requests do not share workers
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="query") as pool:
            futures = [pool.submit(query, source) for source in (Source.wise, Source.tdr)]
            wait(futures, return_when=ALL_COMPLETED)
        return futures[0].result(), futures[1].result()


@lru_cache
def build_default_query_service() -> FallbackQueryService:
    settings = get_settings()
    return FallbackQueryService(
        store=build_default_store(),
        archive=build_default_archive(),
        registry=build_default_registry(),
        cache=build_default_cache(),
        local_tz=local_zone(settings.local_timezone),
        counts_per_mm=settings.rain_counts_per_mm,
        abnormal_threshold=settings.abnormal_threshold,
    )
