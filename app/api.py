"""HTTP route definitions for the service."""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from app.schemas import DeviceInfo, LogType, TdrUploadRequest, UploadResponse
from models.devices import DeviceRegistry, build_default_registry
from models.records import Source, SourceSelector
from services.fallback import FallbackQueryService, as_selector, build_default_query_service
from services.parsers import local_zone, parse_timestamp
from services.rainfall import DEFAULT_HISTORY_DURATION, normalize_duration
from settings import get_settings
from storage.archive import Archive, build_default_archive, validate_device_id

logger = logging.getLogger(__name__)

router = APIRouter()


def get_query_service() -> FallbackQueryService:
    return build_default_query_service()


def get_archive() -> Archive:
    return build_default_archive()


def get_registry() -> DeviceRegistry:
    return build_default_registry()


def resolve_source(
    source: Optional[str], device_id: Optional[str], registry: DeviceRegistry
) -> SourceSelector:
    """Explicit source, else the device's configured or id-implied family, else both."""
    if source:
        try:
            return as_selector(source)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if device_id:
        try:
            return SourceSelector(registry.source_of(device_id).value)
        except ValueError:
            return SourceSelector.both
    return SourceSelector.both


def _device_param(device_id: Optional[str]) -> Optional[str]:
    if device_id is None:
        return None
    try:
        return validate_device_id(device_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _parse_date(value: Optional[str], name: str) -> date:
    if not value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Query parameter {name!r} is required.",
        )
    candidate = value.strip()
    try:
        if re.fullmatch(r"\d{8}", candidate):
            return datetime.strptime(candidate, "%Y%m%d").date()
        return date.fromisoformat(candidate[:10])
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Query parameter {name!r} is not a valid date: {value!r}",
        ) from exc


def _sort_key(record: Dict[str, Any]) -> datetime:
    return datetime.fromisoformat(record["timestamp"])


@router.get(
    "/api/devices",
    response_model=List[DeviceInfo],
    summary="List devices known to the store or the data folders.",
)
async def list_devices(
    source: Optional[str] = Query(default=None, description="wise, tdr or both."),
    service: FallbackQueryService = Depends(get_query_service),
) -> List[DeviceInfo]:
    selector = resolve_source(source, None, service.registry)
    devices = await run_in_threadpool(service.devices, selector)
    return [DeviceInfo.model_validate(item) for item in devices]


@router.get(
    "/api/latest",
    summary="Most recent record per device.",
)
async def get_latest(
    source: Optional[str] = Query(default=None),
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    area: Optional[str] = Query(default=None),
    service: FallbackQueryService = Depends(get_query_service),
) -> Dict[str, Dict[str, Any]]:
    device_id = _device_param(device_id)
    selector = resolve_source(source, device_id, service.registry)
    return await run_in_threadpool(service.latest, selector, device_id, area)


@router.get(
    "/api/history",
    summary="Records within an inclusive date range, newest first.",
)
async def get_history(
    source: Optional[str] = Query(default=None),
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    rain_interval: str = Query(default=DEFAULT_HISTORY_DURATION, alias="rainInterval"),
    service: FallbackQueryService = Depends(get_query_service),
) -> List[Dict[str, Any]]:
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    device_id = _device_param(device_id)
    try:
        interval = normalize_duration(rain_interval)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    selector = resolve_source(source, device_id, service.registry)
    if device_id:
        records = await run_in_threadpool(
            service.history_for_device, selector, device_id, start, end, interval
        )
    else:
        records = await run_in_threadpool(service.all_history, selector, start, end, interval)
    records.sort(key=_sort_key, reverse=True)
    return records


@router.post(
    "/upload_log/{device_id}/{log_type}/{date_dir}/{filename}",
    status_code=status.HTTP_201_CREATED,
    response_model=UploadResponse,
    summary="Store a WISE log file pushed by the logger.",
)
async def upload_wise_log(
    device_id: str,
    log_type: LogType,
    date_dir: str,
    filename: str,
    request: Request,
    archive: Archive = Depends(get_archive),
) -> UploadResponse:
    body = await request.body()
    try:
        path = await run_in_threadpool(
            archive.save_file, Source.wise, device_id, date_dir, filename, body, log_type.value
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.info(
        "Stored WISE upload",
        extra={"device_id": device_id, "date_dir": date_dir, "file_path": str(path)},
    )
    return UploadResponse(message="File uploaded.", path=str(path))


@router.post(
    "/api/tdr/upload",
    status_code=status.HTTP_201_CREATED,
    response_model=UploadResponse,
    summary="Store a TDR scan pushed by the unit.",
)
async def upload_tdr(
    payload: TdrUploadRequest,
    archive: Archive = Depends(get_archive),
) -> UploadResponse:
    try:
        scanned_at = parse_timestamp(payload.timestamp, local_zone(get_settings().local_timezone))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid timestamp: {payload.timestamp!r}",
        ) from exc

    date_dir = scanned_at.astimezone(timezone.utc).strftime("%Y%m%d")
    filename = f"{re.sub(r'[-:T.Z]', '', payload.timestamp)}.json"
    document = {
        "timestamp": payload.timestamp,
        "data": [sample.model_dump() for sample in payload.data],
    }
    body = json.dumps(document, indent=2).encode("utf-8")
    try:
        path = await run_in_threadpool(
            archive.save_file, Source.tdr, payload.device, date_dir, filename, body
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.info(
        "Stored TDR upload",
        extra={"device_id": payload.device, "date_dir": date_dir, "file_path": str(path)},
    )
    return UploadResponse(message="TDR data stored.", path=str(path))


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
