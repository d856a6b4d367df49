"""Error taxonomy for ingestion and query failures."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for domain errors raised by the monitor services."""


class TransientStoreError(MonitorError):
    """The time-series store could not be reached or timed out."""


class MalformedRecordError(MonitorError):
    """A source file could not be read or decoded into records."""


class ConfigLookupMiss(MonitorError):
    """A device is missing from the static configuration."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id!r} is not present in the device configuration.")
        self.device_id = device_id


class FileSystemError(MonitorError):
    """A scan directory is missing or unreadable."""
