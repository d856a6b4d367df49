"""Parsers turning on-disk record batches into normalized records."""

from __future__ import annotations

import csv
import io
import json
import logging
import math
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Union
from zoneinfo import ZoneInfo

from models.errors import MalformedRecordError
from models.records import ParsedRecord, RecordError, TdrRecord, TdrSample, WiseRecord

logger = logging.getLogger(__name__)

TIMESTAMP_COLUMN = "TIM"

TextSource = Union[Path, str, TextIO]


def parse_timestamp(value: Any, local_tz: Optional[tzinfo] = None) -> datetime:
    """Parse an ISO-8601 or epoch-seconds timestamp into an aware UTC datetime.

    Naive values are interpreted in ``local_tz`` (UTC when omitted).
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            raise ValueError("Timestamp is not finite.")
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError("Timestamp is out of range.") from exc
    else:
        candidate = str(value or "").strip()
        if not candidate:
            raise ValueError("Timestamp is empty.")

        try:
            return datetime.fromtimestamp(float(candidate), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            pass

        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        candidate = candidate.replace("/", "-")

        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=local_tz or timezone.utc)

    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValueError("Timestamp is out of range.") from exc


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _read_text(source: TextSource) -> str:
    if isinstance(source, Path):
        try:
            return source.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError) as exc:
            raise MalformedRecordError(f"Cannot read {source}: {exc}") from exc
    if isinstance(source, str):
        return source
    return source.read()


def parse_wise_row(
    row: Dict[str, Optional[str]],
    device_id: str,
    row_number: int,
    local_tz: Optional[tzinfo] = None,
) -> ParsedRecord:
    """Normalize one logger row; failures come back as a ``RecordError``."""

    raw = {key.strip(): (value or "").strip() for key, value in row.items() if key}
    timestamp_key = next((key for key in raw if key.upper() == TIMESTAMP_COLUMN), None)
    if timestamp_key is None or not raw[timestamp_key]:
        return RecordError(reason="missing timestamp", row_number=row_number, raw=raw)

    try:
        timestamp = parse_timestamp(raw[timestamp_key], local_tz)
    except ValueError:
        return RecordError(reason="invalid timestamp", row_number=row_number, raw=raw)

    channels: Dict[str, Dict[str, float]] = {}
    for key, value in raw.items():
        channel, sep, metric = key.partition(" ")
        if not sep or not metric or not value:
            continue
        try:
            number = float(value)
        except ValueError:
            return RecordError(
                reason=f"invalid numeric value in column {key!r}",
                row_number=row_number,
                raw=raw,
            )
        channels.setdefault(channel, {})[metric.strip()] = number

    return WiseRecord(device_id=device_id, timestamp=timestamp, raw=raw, channels=channels)


def parse_wise_csv(
    source: TextSource,
    device_id: str,
    local_tz: Optional[tzinfo] = None,
) -> List[ParsedRecord]:
    """Parse a WISE signal log into one record per row.

    Rows that cannot be parsed are returned as ``RecordError`` entries so the
    caller decides what to do with them. An unreadable file raises
    ``MalformedRecordError``.
    """

    text = _read_text(source)
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    records: List[ParsedRecord] = []
    try:
        if not reader.fieldnames:
            raise MalformedRecordError("CSV file is missing a header row.")
        for row_number, row in enumerate(reader, start=2):
            record = parse_wise_row(row, device_id, row_number, local_tz)
            if isinstance(record, RecordError):
                logger.warning(
                    "Skipping row %s: %s",
                    row_number,
                    record.reason,
                    extra={"device_id": device_id, "row_number": row_number, "reason": record.reason},
                )
            records.append(record)
    except csv.Error as exc:
        raise MalformedRecordError(f"CSV unreadable near line {reader.line_num}: {exc}") from exc
    return records


def parse_tdr_payload(
    payload: Any,
    device_id: str,
    local_tz: Optional[tzinfo] = None,
) -> Optional[TdrRecord]:
    """Validate a ``{timestamp, data: [{distance_m, rho}]}`` document."""

    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if not isinstance(data, list):
        return None
    try:
        timestamp = parse_timestamp(payload.get("timestamp"), local_tz)
    except ValueError:
        return None

    samples: List[TdrSample] = []
    for entry in data:
        if not isinstance(entry, dict):
            return None
        distance = entry.get("distance_m")
        rho = entry.get("rho")
        if not (_is_number(distance) and _is_number(rho)):
            return None
        samples.append(TdrSample(distance_m=float(distance), rho=float(rho)))

    samples.sort(key=lambda sample: sample.distance_m)
    return TdrRecord(device_id=device_id, timestamp=timestamp, data=samples)


def parse_tdr_json(
    source: TextSource,
    device_id: str,
    local_tz: Optional[tzinfo] = None,
) -> List[ParsedRecord]:
    """Parse a TDR JSON file into zero or one record.

    Invalid documents yield an empty list; the file still counts as scanned.
    """

    try:
        text = _read_text(source)
        payload = json.loads(text)
    except (MalformedRecordError, json.JSONDecodeError) as exc:
        logger.warning(
            "Unreadable TDR document",
            extra={"device_id": device_id, "reason": str(exc)},
        )
        return []

    record = parse_tdr_payload(payload, device_id, local_tz)
    if record is None:
        logger.warning(
            "TDR document does not match the expected payload shape",
            extra={"device_id": device_id, "reason": text[:200]},
        )
        return []
    return [record]


def local_zone(name: str) -> tzinfo:
    return ZoneInfo(name)
