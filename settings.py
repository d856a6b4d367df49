from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_WISE_DATA_DIR_ENV = "WISE_DATA_DIR"
_TDR_DATA_DIR_ENV = "TDR_DATA_DIR"
_WISE_BACKUP_DIR_ENV = "WISE_BACKUP_DIR"
_TDR_BACKUP_DIR_ENV = "TDR_BACKUP_DIR"
_SCAN_INTERVAL_ENV = "SCAN_INTERVAL"
_MIN_FILE_AGE_ENV = "SCAN_MIN_FILE_AGE_SECONDS"
_SCANNER_ENABLED_ENV = "SCANNER_ENABLED"
_INFLUX_URL_ENV = "INFLUX_URL"
_INFLUX_ORG_ENV = "INFLUX_ORG"
_INFLUX_TOKEN_WISE_ENV = "INFLUX_TOKEN_WISE"
_INFLUX_TOKEN_TDR_ENV = "INFLUX_TOKEN_TDR"
_INFLUX_BUCKET_WISE_ENV = "INFLUX_BUCKET_WISE"
_INFLUX_BUCKET_TDR_ENV = "INFLUX_BUCKET_TDR"
_INFLUX_TIMEOUT_ENV = "INFLUX_TIMEOUT_MS"
_STORE_PATH_ENV = "STORE_PERSISTENCE_PATH"
_LOOKBACK_ENV = "STORE_LOOKBACK_DAYS"
_DEVICE_CONFIG_ENV = "DEVICE_CONFIG_PATH"
_TIMEZONE_ENV = "LOCAL_TIMEZONE"
_COUNTS_PER_MM_ENV = "RAIN_COUNTS_PER_MM"
_THRESHOLD_ENV = "ABNORMAL_THRESHOLD"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    wise_data_dir: str
    tdr_data_dir: str
    wise_backup_dir: str
    tdr_backup_dir: str
    scan_interval_seconds: int
    min_file_age_seconds: float
    scanner_enabled: bool
    influx_url: Optional[str]
    influx_org: str
    influx_token_wise: Optional[str]
    influx_token_tdr: Optional[str]
    influx_bucket_wise: str
    influx_bucket_tdr: str
    influx_timeout_ms: int
    store_persistence_path: Optional[str]
    store_lookback_days: int
    device_config_path: Optional[str]
    local_timezone: str
    rain_counts_per_mm: float
    abnormal_threshold: float
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float(name: str, default: float, minimum: float = 0.0) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "on"}:
        return True
    if candidate in {"0", "false", "no", "off"}:
        return False
    return default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        wise_data_dir=_read_str_env(_WISE_DATA_DIR_ENV, "./data/wise_data"),
        tdr_data_dir=_read_str_env(_TDR_DATA_DIR_ENV, "./data/tdr_data"),
        wise_backup_dir=_read_str_env(_WISE_BACKUP_DIR_ENV, "./data/backup/wise_backup"),
        tdr_backup_dir=_read_str_env(_TDR_BACKUP_DIR_ENV, "./data/backup/tdr_backup"),
        scan_interval_seconds=_read_positive_int(_SCAN_INTERVAL_ENV, 600),
        min_file_age_seconds=_read_float(_MIN_FILE_AGE_ENV, 5.0),
        scanner_enabled=_read_bool(_SCANNER_ENABLED_ENV, True),
        influx_url=_read_optional_env(_INFLUX_URL_ENV, None),
        influx_org=_read_str_env(_INFLUX_ORG_ENV, "monitor"),
        influx_token_wise=_read_optional_env(_INFLUX_TOKEN_WISE_ENV, None),
        influx_token_tdr=_read_optional_env(_INFLUX_TOKEN_TDR_ENV, None),
        influx_bucket_wise=_read_str_env(_INFLUX_BUCKET_WISE_ENV, "wise"),
        influx_bucket_tdr=_read_str_env(_INFLUX_BUCKET_TDR_ENV, "tdr"),
        influx_timeout_ms=_read_positive_int(_INFLUX_TIMEOUT_ENV, 10_000),
        store_persistence_path=_read_optional_env(_STORE_PATH_ENV, "./data/store.json"),
        store_lookback_days=_read_positive_int(_LOOKBACK_ENV, 30),
        device_config_path=_read_optional_env(_DEVICE_CONFIG_ENV, None),
        local_timezone=_read_str_env(_TIMEZONE_ENV, "Asia/Taipei"),
        rain_counts_per_mm=_read_float(_COUNTS_PER_MM_ENV, 2.0, minimum=1e-9),
        abnormal_threshold=_read_float(_THRESHOLD_ENV, 1.0),
        log_level=_read_log_level("INFO"),
    )
