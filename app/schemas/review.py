from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

SnapshotStatus = Literal["pending", "needs_review", "processed", "ignored", "failed"]


class SnapshotSummaryOut(BaseModel):
    id: str
    series_id: str
    source_id: str
    link_id: str | None = None
    source_url: str
    content_type: str | None = None
    http_status: int | None = None
    content_hash: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: SnapshotStatus
    fetched_at: datetime
    processed_at: datetime | None = None


class SnapshotOut(SnapshotSummaryOut):
    raw_content: str | None = None


class SnapshotStatusPatchRequest(BaseModel):
    status: SnapshotStatus
    note: str | None = None


class CorrectionRequest(BaseModel):
    """Operator-supplied field values; written with the manual source type so they always win."""

    year: int | None = Field(default=None, ge=2000, le=2100)
    race_date: str | None = None
    registration_status: str | None = None
    registration_url: str | None = None
    note: str | None = None

    @model_validator(mode="after")
    def _require_value(self) -> "CorrectionRequest":
        if not (self.race_date or self.registration_status or self.registration_url):
            raise ValueError("at least one corrected field is required")
        return self


class CorrectionOut(BaseModel):
    snapshot: SnapshotSummaryOut
    merge: dict[str, Any]
