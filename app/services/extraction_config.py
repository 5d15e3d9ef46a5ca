from __future__ import annotations

import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from app.services.records import FIELD_ALIASES

logger = logging.getLogger(__name__)


class FieldRule(BaseModel):
    """Select the first matching element, read text/html/an attribute, then apply an optional regex."""

    model_config = ConfigDict(extra="forbid")

    selector: str = Field(min_length=1)
    attr: str | None = Field(default=None, min_length=1)
    regex: str | None = Field(default=None, min_length=1)
    group: int | None = Field(default=None, ge=0, le=20)

    @field_validator("regex")
    @classmethod
    def _regex_compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid regex: {exc}") from exc
        return value


class FieldRules(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    race_date: FieldRule | None = Field(default=None, alias="raceDate")
    registration_status: FieldRule | None = Field(default=None, alias="registrationStatus")
    registration_url: FieldRule | None = Field(default=None, alias="registrationUrl")

    def has_rules(self) -> bool:
        return any(rule is not None for rule in (self.race_date, self.registration_status, self.registration_url))


class PatternRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    regex: str = Field(min_length=1)
    group: int | None = Field(default=None, ge=0, le=20)

    @field_validator("regex")
    @classmethod
    def _regex_compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regex: {exc}") from exc
        return value


class PatternRules(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    race_date: PatternRule | None = Field(default=None, alias="raceDate")
    registration_status: PatternRule | None = Field(default=None, alias="registrationStatus")
    registration_url: PatternRule | None = Field(default=None, alias="registrationUrl")


class SelectorExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["selector"] = "selector"
    extract: FieldRules = Field(default_factory=FieldRules)
    notes: str | None = None


class StructuredDataExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["structured_data"] = "structured_data"
    event_types: list[str] = Field(default_factory=lambda: ["Event"], min_length=1)
    notes: str | None = None


class RegexExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["regex"] = "regex"
    patterns: PatternRules = Field(default_factory=PatternRules)
    notes: str | None = None


ExtractionConfig = Annotated[
    Union[SelectorExtractionConfig, StructuredDataExtractionConfig, RegexExtractionConfig],
    Field(discriminator="kind"),
]

_CONFIG_ADAPTER: TypeAdapter[ExtractionConfig] = TypeAdapter(ExtractionConfig)


class ExtractionConfigError(ValueError):
    """Raised when an extraction config blob does not match any rule kind."""


def parse_extraction_config(raw: Any) -> ExtractionConfig | None:
    """Validate a stored/submitted blob; ``None`` and ``{}`` mean "no per-source rules"."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ExtractionConfigError("extraction config must be a JSON object")
    if not raw:
        return None

    payload = dict(raw)
    if "kind" not in payload and "extract" in payload:
        payload["kind"] = "selector"
    try:
        return _CONFIG_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ExtractionConfigError(_format_validation_error(exc)) from exc


def load_extraction_config(raw: Any, *, source_id: str | None = None) -> ExtractionConfig | None:
    """Extraction-time read: an invalid stored blob is logged and treated as absent."""
    try:
        return parse_extraction_config(raw)
    except ExtractionConfigError as exc:
        logger.warning("ignoring invalid extraction config source_id=%s error=%s", source_id, exc)
        return None


def dump_extraction_config(config: ExtractionConfig | None) -> dict[str, Any] | None:
    if config is None:
        return None
    return config.model_dump(mode="json", exclude_none=True)


def merge_selector_rules(current: ExtractionConfig | None, incoming: FieldRules) -> SelectorExtractionConfig:
    """Overlay per-field rules onto a selector config; fields absent from ``incoming`` keep their rules."""
    base = current.extract if isinstance(current, SelectorExtractionConfig) else FieldRules()
    notes = current.notes if current is not None else None
    merged = base.model_copy(update={key: value for key, value in incoming if value is not None})
    return SelectorExtractionConfig(extract=merged, notes=notes)


def _format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        for camel, snake in FIELD_ALIASES.items():
            location = location.replace(camel, snake)
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "invalid extraction config"
