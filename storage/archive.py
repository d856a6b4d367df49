from __future__ import annotations
import errno
import os
import re
import shutil
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Iterable, List, Optional, Tuple

from models.records import Source
from settings import get_settings

DATE_DIR_PATTERN = re.compile(r"^\d{8}$")
WISE_LOG_TYPES = ("signal_log", "system_log")
SIGNAL_LOG = "signal_log"

FILE_SUFFIXES = {Source.wise: ".csv", Source.tdr: ".json"}


def unique_path(path: Path) -> Path:
    """Return ``path`` or the first free ``"<stem> (n)<suffix>"`` sibling."""
    candidate = path
    count = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.stem} ({count}){path.suffix}")
        count += 1
    return candidate


def _safe_component(value: str, label: str) -> str:
    candidate = value.strip()
    if not candidate or candidate in {".", ".."} or "/" in candidate or "\\" in candidate:
        raise ValueError(f"Invalid {label}: {value!r}")
    return candidate


def validate_device_id(device_id: str) -> str:
    """Reject ids that would leave the device's folder."""
    _safe_component(device_id, "device id")
    return device_id


def is_date_dir(name: str) -> bool:
    return bool(DATE_DIR_PATTERN.match(name))


@dataclass(frozen=True)
class FileEntry:
    """A data file located in a raw or backup tree."""

    device_id: str
    date_dir: str
    path: Path

    @property
    def sort_key(self) -> Tuple[str, str]:
        return self.date_dir, self.path.name


class Archive:
    """Filesystem layout of the raw ingress and backup trees.

    Both trees share ``<root>/<deviceId>/[signal_log/]<YYYYMMDD>/<file>``;
    the ``signal_log`` level exists for WISE loggers only.
    """

    def __init__(
        self,
        raw_roots: dict[Source, Path],
        backup_roots: dict[Source, Path],
    ) -> None:
        self.raw_roots = dict(raw_roots)
        self.backup_roots = dict(backup_roots)
        self._lock = Lock()

    def raw_root(self, source: Source) -> Path:
        return self.raw_roots[source]

    def backup_root(self, source: Source) -> Path:
        return self.backup_roots[source]

    @staticmethod
    def device_data_path(root: Path, source: Source, device_id: str) -> Path:
        path = root / validate_device_id(device_id)
        if source is Source.wise:
            path = path / SIGNAL_LOG
        return path

    def save_file(
        self,
        source: Source,
        device_id: str,
        date_dir: str,
        filename: str,
        data: bytes,
        log_type: Optional[str] = None,
    ) -> Path:
        """Store an uploaded file in the raw tree without overwriting."""
        if not data:
            raise ValueError("Uploaded file is empty.")
        if not is_date_dir(date_dir):
            raise ValueError(f"Invalid date folder: {date_dir!r}")
        if log_type is not None and log_type not in WISE_LOG_TYPES:
            raise ValueError(f"Unsupported logType {log_type!r}.")

        target_dir = self.raw_root(source) / validate_device_id(device_id)
        if log_type:
            target_dir = target_dir / log_type
        target_dir = target_dir / date_dir
        name = _safe_component(filename, "filename")

        with self._lock:
            target_dir.mkdir(parents=True, exist_ok=True)
            target = unique_path(target_dir / name)
            target.write_bytes(data)
        return target

    def move_to_backup(
        self,
        source: Source,
        file_path: Path,
        device_id: str,
        date_dir: str,
        log_type: Optional[str] = None,
    ) -> Path:
        """Move an ingested file into the backup tree, never overwriting."""
        target_dir = self.backup_root(source) / validate_device_id(device_id)
        if log_type:
            target_dir = target_dir / log_type
        target_dir = target_dir / date_dir

        with self._lock:
            target_dir.mkdir(parents=True, exist_ok=True)
            target = unique_path(target_dir / file_path.name)
            try:
                os.rename(file_path, target)
            except OSError as exc:
                if exc.errno != errno.EXDEV:
                    raise
                # across filesystems: the source is removed only once the copy exists
                shutil.copy2(file_path, target)
                file_path.unlink()
        return target

    @staticmethod
    def device_ids(root: Path) -> List[str]:
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir())

    @staticmethod
    def date_dirs(data_path: Path) -> List[str]:
        if not data_path.is_dir():
            return []
        return sorted(
            entry.name for entry in data_path.iterdir() if entry.is_dir() and is_date_dir(entry.name)
        )

    @staticmethod
    def data_files(date_path: Path, source: Source) -> List[Path]:
        """Files carrying the source's extension, ascending by filename."""
        if not date_path.is_dir():
            return []
        suffix = FILE_SUFFIXES[source]
        return sorted(
            (entry for entry in date_path.iterdir() if entry.is_file() and entry.suffix.lower() == suffix),
            key=lambda entry: entry.name,
        )

    def _roots(self, source: Source) -> Iterable[Path]:
        return (self.backup_root(source), self.raw_root(source))

    def known_device_ids(self, source: Source) -> List[str]:
        ids: set[str] = set()
        for root in self._roots(source):
            ids.update(self.device_ids(root))
        return sorted(ids)

    def latest_file(self, source: Source, device_id: str) -> Optional[FileEntry]:
        """Newest file of the newest non-empty date folder across both trees."""
        best: Optional[FileEntry] = None
        for root in self._roots(source):
            data_path = self.device_data_path(root, source, device_id)
            for date_dir in reversed(self.date_dirs(data_path)):
                files = self.data_files(data_path / date_dir, source)
                if not files:
                    continue
                entry = FileEntry(device_id=device_id, date_dir=date_dir, path=files[-1])
                if best is None or entry.sort_key > best.sort_key:
                    best = entry
                break
        return best

    def files_for_dates(
        self, source: Source, device_id: str, date_dirs: Iterable[str]
    ) -> List[FileEntry]:
        """Files for the given days across both trees, ascending by name."""
        wanted = set(date_dirs)
        entries: List[FileEntry] = []
        for root in self._roots(source):
            data_path = self.device_data_path(root, source, device_id)
            for date_dir in self.date_dirs(data_path):
                if date_dir not in wanted:
                    continue
                entries.extend(
                    FileEntry(device_id=device_id, date_dir=date_dir, path=path)
                    for path in self.data_files(data_path / date_dir, source)
                )
        entries.sort(key=lambda entry: entry.sort_key)
        return entries


@lru_cache
def build_default_archive() -> Archive:
    settings = get_settings()
    return Archive(
        raw_roots={
            Source.wise: Path(settings.wise_data_dir),
            Source.tdr: Path(settings.tdr_data_dir),
        },
        backup_roots={
            Source.wise: Path(settings.wise_backup_dir),
            Source.tdr: Path(settings.tdr_backup_dir),
        },
    )
