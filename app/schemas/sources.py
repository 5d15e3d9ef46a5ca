from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.services.records import SourceStrategy, SourceType


class SourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: SourceType
    strategy: SourceStrategy
    base_url: str | None = None
    priority: int
    is_active: bool
    retry_max: int
    retry_backoff_seconds: int
    request_timeout_ms: int
    min_interval_seconds: int
    extraction_config: dict[str, Any] | None = None
    notes: str | None = None
    last_run_at: datetime | None = None


class SourceCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    type: SourceType = "official"
    strategy: SourceStrategy = "HTML"
    base_url: str | None = None
    priority: int = Field(default=0, ge=0, le=9999)
    is_active: bool = True
    retry_max: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: int = Field(default=30, ge=0)
    request_timeout_ms: int = Field(default=15000, gt=0)
    min_interval_seconds: int = Field(default=0, ge=0)
    extraction_config: dict[str, Any] | None = None
    notes: str | None = None


class SourcePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    type: SourceType | None = None
    strategy: SourceStrategy | None = None
    base_url: str | None = None
    priority: int | None = Field(default=None, ge=0, le=9999)
    is_active: bool | None = None
    retry_max: int | None = Field(default=None, ge=1, le=10)
    retry_backoff_seconds: int | None = Field(default=None, ge=0)
    request_timeout_ms: int | None = Field(default=None, gt=0)
    min_interval_seconds: int | None = Field(default=None, ge=0)
    extraction_config: dict[str, Any] | None = None
    notes: str | None = None
