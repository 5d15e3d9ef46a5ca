from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

SourceType = Literal["official", "platform", "search", "social", "manual", "unknown"]
SourceStrategy = Literal["HTML", "RSS", "API"]
TrackedField = Literal["race_date", "registration_status", "registration_url"]

SOURCE_TYPES = ("official", "platform", "search", "social", "manual", "unknown")
SOURCE_STRATEGIES = ("HTML", "RSS", "API")
TRACKED_FIELDS: tuple[TrackedField, ...] = ("race_date", "registration_status", "registration_url")
FIELD_ALIASES = {
    "raceDate": "race_date",
    "registrationStatus": "registration_status",
    "registrationUrl": "registration_url",
}


def canonical_field_name(name: str) -> str | None:
    canonical = FIELD_ALIASES.get(name, name)
    return canonical if canonical in TRACKED_FIELDS else None


@dataclass(slots=True)
class SourceRecord:
    id: str
    name: str
    type: str = "official"
    strategy: str = "HTML"
    base_url: str | None = None
    priority: int = 0
    is_active: bool = True
    retry_max: int = 3
    retry_backoff_seconds: int = 30
    request_timeout_ms: int = 15000
    min_interval_seconds: int = 0
    extraction_config: dict[str, Any] | None = None
    notes: str | None = None
    last_run_at: datetime | None = None


@dataclass(slots=True)
class EventSeriesRecord:
    id: str
    name: str
    canonical_name: str
    website_url: str | None = None


@dataclass(slots=True)
class LinkRecord:
    id: str
    series_id: str
    source_id: str
    url: str
    is_primary: bool = False
    last_hash: str | None = None
    last_http_status: int | None = None
    last_error: str | None = None
    last_checked_at: datetime | None = None
    next_check_at: datetime | None = None
    created_at: datetime | None = None
    series_website_url: str | None = None

    @property
    def fetch_url(self) -> str | None:
        return self.url or self.series_website_url

    def is_due(self, now: datetime) -> bool:
        return self.next_check_at is None or self.next_check_at <= now


@dataclass(slots=True)
class FieldSourceInfo:
    """Provenance stamped onto a single edition field at write time."""

    source_id: str
    source_type: str
    priority: int
    rank: int
    at: datetime
    value: str | None

    def to_json(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "priority": self.priority,
            "rank": self.rank,
            "at": self.at.isoformat(),
            "value": self.value,
        }

    @classmethod
    def from_json(cls, raw: Any) -> FieldSourceInfo | None:
        if not isinstance(raw, dict):
            return None
        at_raw = raw.get("at")
        try:
            at = at_raw if isinstance(at_raw, datetime) else datetime.fromisoformat(str(at_raw).replace("Z", "+00:00"))
        except ValueError:
            return None
        rank = raw.get("rank")
        priority = raw.get("priority")
        value = raw.get("value")
        return cls(
            source_id=str(raw.get("source_id") or raw.get("sourceId") or ""),
            source_type=str(raw.get("source_type") or raw.get("sourceType") or "unknown"),
            priority=int(priority) if isinstance(priority, (int, float)) else 0,
            rank=int(rank) if isinstance(rank, (int, float)) else 0,
            at=at,
            value=value if isinstance(value, str) else None,
        )


@dataclass(slots=True)
class FieldSources:
    race_date: FieldSourceInfo | None = None
    registration_status: FieldSourceInfo | None = None
    registration_url: FieldSourceInfo | None = None

    def get(self, name: TrackedField) -> FieldSourceInfo | None:
        return getattr(self, name)

    def with_field(self, name: TrackedField, info: FieldSourceInfo) -> FieldSources:
        return replace(self, **{name: info})

    def is_empty(self) -> bool:
        return all(self.get(name) is None for name in TRACKED_FIELDS)

    def to_json(self) -> dict[str, Any] | None:
        payload = {name: info.to_json() for name in TRACKED_FIELDS if (info := self.get(name)) is not None}
        return payload or None

    @classmethod
    def from_json(cls, raw: Any) -> FieldSources:
        if not isinstance(raw, dict):
            return cls()
        parsed: dict[str, FieldSourceInfo] = {}
        for key, value in raw.items():
            name = canonical_field_name(key) if isinstance(key, str) else None
            info = FieldSourceInfo.from_json(value)
            if name and info is not None:
                parsed[name] = info
        return cls(**parsed)


@dataclass(slots=True)
class EditionFields:
    race_date: str | None = None
    registration_status: str | None = None
    registration_url: str | None = None

    def get(self, name: TrackedField) -> str | None:
        return getattr(self, name)

    def to_json(self) -> dict[str, str | None]:
        return {name: self.get(name) for name in TRACKED_FIELDS}


@dataclass(slots=True)
class EditionRecord:
    id: str
    series_id: str
    year: int
    fields: EditionFields = field(default_factory=EditionFields)
    field_sources: FieldSources = field(default_factory=FieldSources)
    last_synced_at: datetime | None = None
