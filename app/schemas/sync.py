from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SyncRunStatus = Literal["running", "retrying", "success", "failed"]


class SyncTriggerRequest(BaseModel):
    link_id: str | None = Field(default=None, min_length=1)


class SyncTriggerOut(BaseModel):
    run_id: str
    status: Literal["started", "skipped", "success", "failed"]


class SyncRunOut(BaseModel):
    id: str
    series_id: str
    source_id: str
    link_id: str | None = None
    status: SyncRunStatus
    strategy_used: str | None = None
    attempt: int
    message: str | None = None
    error_message: str | None = None
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    started_at: datetime
    finished_at: datetime | None = None
