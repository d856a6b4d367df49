"""Ingestion cycle: raw trees -> time-series store -> backup trees."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from typing import Callable, List, Optional, Set

from datastore.base import TimeSeriesStore
from datastore.factory import build_default_store
from models.devices import DeviceRegistry, build_default_registry
from models.errors import (
    ConfigLookupMiss,
    FileSystemError,
    MalformedRecordError,
    MonitorError,
    TransientStoreError,
)
from models.records import ParsedRecord, RawRecord, RecordError, Source
from services.cache import LatestCache, build_default_cache
from services.converter import PointConverter
from services.parsers import local_zone, parse_tdr_json, parse_wise_csv
from settings import get_settings
from storage.archive import SIGNAL_LOG, Archive, build_default_archive

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScanReport:
    """Outcome of one scan cycle."""

    files_archived: int = 0
    points_written: int = 0
    batches_written: int = 0
    errors: List[str] = field(default_factory=list)


class Scanner:
    """Moves landed files through parse, convert, write and archive."""

    def __init__(
        self,
        store: TimeSeriesStore,
        archive: Archive,
        registry: DeviceRegistry,
        cache: LatestCache,
        local_tz: tzinfo = timezone.utc,
        min_file_age_seconds: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.archive = archive
        self.registry = registry
        self.converter = PointConverter(registry)
        self.cache = cache
        self.local_tz = local_tz
        self.min_file_age_seconds = min_file_age_seconds
        self._clock = clock

    def scan_all(self) -> ScanReport:
        report = ScanReport()
        start = time.perf_counter()
        for source in Source:
            self.scan_source(source, report)
        logger.info(
            "Scan cycle finished",
            extra={
                "file_count": report.files_archived,
                "point_count": report.points_written,
                "processing_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return report

    def scan_source(self, source: Source, report: Optional[ScanReport] = None) -> ScanReport:
        report = report if report is not None else ScanReport()
        root = self.archive.raw_root(source)
        if not root.is_dir():
            logger.warning(
                "Raw data root is missing",
                extra={"source": source.value, "file_path": str(root)},
            )
            return report

        retained = self.retained_dates()
        for device_id in self.archive.device_ids(root):
            try:
                self._scan_device(source, root, device_id, retained, report)
            except (MonitorError, OSError) as exc:
                logger.error(
                    "Device scan failed",
                    extra={"source": source.value, "device_id": device_id, "reason": str(exc)},
                )
                report.errors.append(f"{device_id}: {exc}")
        return report

    def retained_dates(self) -> Set[str]:
        """Today and yesterday as ``YYYYMMDD`` in the local timezone."""
        today = self._clock().astimezone(self.local_tz)
        return {
            today.strftime("%Y%m%d"),
            (today - timedelta(days=1)).strftime("%Y%m%d"),
        }

    def _scan_device(
        self,
        source: Source,
        root: Path,
        device_id: str,
        retained: Set[str],
        report: ScanReport,
    ) -> None:
        data_path = self.archive.device_data_path(root, source, device_id)
        if not data_path.exists():
            return
        if not data_path.is_dir():
            raise FileSystemError(f"{data_path} is not a directory.")

        for date_dir in self.archive.date_dirs(data_path):
            date_path = data_path / date_dir
            self._scan_date_dir(source, device_id, date_dir, date_path, report)
            if date_dir not in retained:
                _remove_if_empty(date_path)

    def _scan_date_dir(
        self,
        source: Source,
        device_id: str,
        date_dir: str,
        date_path: Path,
        report: ScanReport,
    ) -> None:
        files = [path for path in self.archive.data_files(date_path, source) if self._is_settled(path)]
        if not files:
            return

        context = {"source": source.value, "device_id": device_id, "date_dir": date_dir}
        records: List[ParsedRecord] = []
        for path in files:
            try:
                records.extend(self._parse(source, path, device_id))
            except MalformedRecordError as exc:
                logger.warning("Unreadable data file", extra={**context, "file_path": str(path), "reason": str(exc)})
                report.errors.append(f"{path}: {exc}")
            except Exception as exc:  # noqa: BLE001 - a broken file is archived, never retried
                logger.exception(
                    "Parser failed on data file", extra={**context, "file_path": str(path), "reason": str(exc)}
                )
                report.errors.append(f"{path}: {exc}")

        try:
            points = self.converter.to_points(device_id, records)
        except ConfigLookupMiss as exc:
            logger.warning("Dropping records of unconfigured device", extra={**context, "reason": str(exc)})
            report.errors.append(str(exc))
            points = []

        written = False
        if points:
            try:
                self.store.write_points(source, points)
            except TransientStoreError as exc:
                logger.error(
                    "Store write failed; archiving files anyway",
                    extra={**context, "point_count": len(points), "reason": str(exc)},
                )
                report.errors.append(f"{device_id}/{date_dir}: {exc}")
            else:
                written = True
                report.points_written += len(points)
                report.batches_written += 1

        log_type = SIGNAL_LOG if source is Source.wise else None
        for path in files:
            try:
                self.archive.move_to_backup(source, path, device_id, date_dir, log_type=log_type)
            except OSError as exc:
                logger.error("Archiving failed", extra={**context, "file_path": str(path), "reason": str(exc)})
                report.errors.append(f"{path}: {exc}")
            else:
                report.files_archived += 1

        logger.info(
            "Processed date folder",
            extra={**context, "file_count": len(files), "point_count": len(points) if written else 0},
        )

        if written:
            self._update_cache(device_id, records)

    def _parse(self, source: Source, path: Path, device_id: str) -> List[ParsedRecord]:
        if source is Source.wise:
            return parse_wise_csv(path, device_id, self.local_tz)
        return parse_tdr_json(path, device_id, self.local_tz)

    def _is_settled(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except OSError:
            return False
        return age >= self.min_file_age_seconds

    def _update_cache(self, device_id: str, records: List[ParsedRecord]) -> None:
        valid: List[RawRecord] = [record for record in records if not isinstance(record, RecordError)]
        if not valid:
            return
        newest = max(valid, key=lambda record: record.timestamp)
        device = self.registry.get(device_id)
        counter_field = device.counter_field if device is not None else None
        self.cache.update(device_id, self.converter.enrich(newest), counter_field)


def _remove_if_empty(path: Path) -> None:
    try:
        if not any(path.iterdir()):
            path.rmdir()
    except OSError as exc:
        # a file may have landed since listing; the next cycle retries
        logger.debug("Date folder not removed", extra={"file_path": str(path), "reason": str(exc)})


@lru_cache
def build_default_scanner() -> Scanner:
    settings = get_settings()
    return Scanner(
        store=build_default_store(),
        archive=build_default_archive(),
        registry=build_default_registry(),
        cache=build_default_cache(),
        local_tz=local_zone(settings.local_timezone),
        min_file_age_seconds=settings.min_file_age_seconds,
    )
