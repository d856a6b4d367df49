from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api import router
from datastore.influx import build_default_influx_store
from datastore.memory import build_default_memory_store
from logging_config import configure_logging
from models.devices import build_default_registry
from models.errors import MonitorError
from services.cache import build_default_cache
from services.fallback import build_default_query_service
from services.scanner import build_default_scanner
from services.scheduler import build_default_scheduler
from settings import get_settings
from storage.archive import build_default_archive

logger = logging.getLogger(__name__)

_FACTORIES = (
    build_default_scheduler,
    build_default_scanner,
    build_default_query_service,
    build_default_cache,
    build_default_archive,
    build_default_registry,
    build_default_memory_store,
    build_default_influx_store,
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    service = build_default_query_service()
    scheduler = build_default_scheduler() if settings.scanner_enabled else None
    if scheduler is not None:
        scheduler.start()
    else:
        logger.info("Scanner disabled; serving queries only")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        service.store.close()
        for factory in _FACTORIES:
            factory.cache_clear()


async def handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


async def handle_monitor_error(_request: Request, exc: MonitorError) -> JSONResponse:
    logger.error("Query failed", extra={"reason": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Field Instrument Monitor",
        description="Ingests logger and TDR files into a time-series store and serves dashboard queries.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(MonitorError, handle_monitor_error)
    app.include_router(router)
    return app

app = create_app()
