from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.services.records import EditionRecord


class SeriesCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    canonical_name: str = Field(min_length=1)
    website_url: str | None = None


class SeriesOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    canonical_name: str
    website_url: str | None = None


class LinkCreateRequest(BaseModel):
    series_id: str = Field(min_length=1)
    source_id: str = Field(min_length=1)
    url: str = ""
    is_primary: bool = False


class LinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    series_id: str
    source_id: str
    url: str
    is_primary: bool
    last_hash: str | None = None
    last_http_status: int | None = None
    last_error: str | None = None
    last_checked_at: datetime | None = None
    next_check_at: datetime | None = None


class EditionOut(BaseModel):
    id: str
    series_id: str
    year: int
    race_date: str | None = None
    registration_status: str | None = None
    registration_url: str | None = None
    field_sources: dict[str, Any] | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_record(cls, record: EditionRecord) -> "EditionOut":
        return cls(
            id=record.id,
            series_id=record.series_id,
            year=record.year,
            field_sources=record.field_sources.to_json(),
            last_synced_at=record.last_synced_at,
            **record.fields.to_json(),
        )
