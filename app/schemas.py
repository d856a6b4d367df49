"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LogType(str, Enum):
    """Log folders a WISE logger may upload into."""

    signal_log = "signal_log"
    system_log = "system_log"


class DeviceInfo(BaseModel):
    """Summary of a device known to the store or the data folders."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    model: str
    source: str
    area: Optional[str] = None
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    has_data: bool = Field(default=False, alias="hasData")


class TdrSamplePayload(BaseModel):
    distance_m: float
    rho: float


class TdrUploadRequest(BaseModel):
    """A single reflectometry scan pushed by a TDR unit."""

    device: str = Field(..., min_length=1, description="TDR device identifier.")
    timestamp: str = Field(..., min_length=1, description="Scan time, ISO-8601.")
    data: List[TdrSamplePayload]


class UploadResponse(BaseModel):
    """Where an uploaded file was stored."""

    message: str
    path: str = Field(..., description="Location of the stored file in the raw tree.")
