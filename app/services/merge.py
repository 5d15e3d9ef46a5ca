from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from app.services.records import (
    TRACKED_FIELDS,
    EditionFields,
    EditionRecord,
    FieldSourceInfo,
    FieldSources,
    TrackedField,
)

MergeAction = Literal["inserted", "updated", "unchanged"]
FieldDecisionReason = Literal["empty", "same", "higher_priority", "lower_priority"]

RANK_SCALE = 10_000
SOURCE_TYPE_WEIGHTS: dict[str, int] = {
    "manual": 1000,
    "official": 300,
    "platform": 200,
    "search": 100,
    "social": 50,
    "unknown": 0,
}


def source_type_weight(source_type: str | None) -> int:
    return SOURCE_TYPE_WEIGHTS.get(source_type or "unknown", 0)


def compute_source_rank(source_type: str | None, priority: int | None) -> int:
    # Priority stays below RANK_SCALE in practice, so the type weight always dominates.
    return source_type_weight(source_type) * RANK_SCALE + (priority if isinstance(priority, int) else 0)


@dataclass(slots=True)
class MergeSource:
    source_id: str
    source_type: str = "unknown"
    priority: int = 0

    @property
    def rank(self) -> int:
        return compute_source_rank(self.source_type, self.priority)

    def stamp(self, value: str, at: datetime) -> FieldSourceInfo:
        return FieldSourceInfo(
            source_id=self.source_id,
            source_type=self.source_type,
            priority=self.priority,
            rank=self.rank,
            at=at,
            value=value,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "priority": self.priority,
            "rank": self.rank,
        }


@dataclass(slots=True)
class MergeConflict:
    field: TrackedField
    existing_value: str
    existing_source: FieldSourceInfo | None
    incoming_value: str
    incoming_source: MergeSource

    def to_json(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "existing": {
                "value": self.existing_value,
                "source": self.existing_source.to_json() if self.existing_source else None,
            },
            "incoming": {
                "value": self.incoming_value,
                "source": self.incoming_source.to_json(),
            },
        }


@dataclass(slots=True)
class MergePlan:
    action: MergeAction
    year: int
    fields: EditionFields
    field_sources: FieldSources
    changed_fields: list[TrackedField] = field(default_factory=list)
    conflicts: list[MergeConflict] = field(default_factory=list)
    reasons: dict[str, FieldDecisionReason] = field(default_factory=dict)


@dataclass(slots=True)
class MergeResult:
    edition_id: str
    action: MergeAction
    year: int
    changed_fields: list[TrackedField]
    conflicts: list[MergeConflict]
    reasons: dict[str, FieldDecisionReason]

    def to_json(self) -> dict[str, Any]:
        return {
            "edition_id": self.edition_id,
            "action": self.action,
            "year": self.year,
            "changed_fields": list(self.changed_fields),
            "conflicts": [conflict.to_json() for conflict in self.conflicts],
            "reasons": dict(self.reasons),
        }


def decide_field(
    *,
    existing_value: str | None,
    existing_source: FieldSourceInfo | None,
    incoming_value: str,
    incoming_rank: int,
) -> tuple[bool, FieldDecisionReason]:
    if not existing_value:
        return True, "empty"
    if existing_value == incoming_value:
        return False, "same"
    # Compare against the rank recorded when the stored value was written.
    existing_rank = existing_source.rank if existing_source is not None else 0
    if incoming_rank > existing_rank:
        return True, "higher_priority"
    return False, "lower_priority"


def plan_edition_merge(
    *,
    existing: EditionRecord | None,
    year: int,
    incoming: EditionFields,
    source: MergeSource,
    now: datetime,
) -> MergePlan:
    if existing is None:
        sources = FieldSources()
        changed: list[TrackedField] = []
        for name in TRACKED_FIELDS:
            value = incoming.get(name)
            if value:
                sources = sources.with_field(name, source.stamp(value, now))
                changed.append(name)
        values = EditionFields(**{name: incoming.get(name) or None for name in TRACKED_FIELDS})
        return MergePlan(
            action="inserted",
            year=year,
            fields=values,
            field_sources=sources,
            changed_fields=changed,
            reasons={name: "empty" for name in changed},
        )

    incoming_rank = source.rank
    values = EditionFields(**existing.fields.to_json())
    sources = existing.field_sources
    changed = []
    conflicts: list[MergeConflict] = []
    reasons: dict[str, FieldDecisionReason] = {}

    for name in TRACKED_FIELDS:
        incoming_value = incoming.get(name)
        if not incoming_value:
            continue
        existing_value = existing.fields.get(name)
        existing_source = existing.field_sources.get(name)
        apply, reason = decide_field(
            existing_value=existing_value,
            existing_source=existing_source,
            incoming_value=incoming_value,
            incoming_rank=incoming_rank,
        )
        reasons[name] = reason
        if apply:
            setattr(values, name, incoming_value)
            sources = sources.with_field(name, source.stamp(incoming_value, now))
            changed.append(name)
        elif reason == "lower_priority" and existing_value:
            conflicts.append(
                MergeConflict(
                    field=name,
                    existing_value=existing_value,
                    existing_source=existing_source,
                    incoming_value=incoming_value,
                    incoming_source=source,
                )
            )

    return MergePlan(
        action="updated" if changed else "unchanged",
        year=year,
        fields=values,
        field_sources=sources,
        changed_fields=changed,
        conflicts=conflicts,
        reasons=reasons,
    )
