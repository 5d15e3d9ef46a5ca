from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

from bs4 import BeautifulSoup
from bs4.element import Tag
from soupsieve import SelectorSyntaxError

from app.core.dates import CN_DATE_RE, ISO_DATE_RE, format_ymd, normalize_date
from app.core.urls import resolve_url
from app.services.extraction_config import (
    ExtractionConfig,
    FieldRule,
    FieldRules,
    PatternRule,
    PatternRules,
    RegexExtractionConfig,
    SelectorExtractionConfig,
    StructuredDataExtractionConfig,
)
from app.services.records import EditionFields

logger = logging.getLogger(__name__)

ExtractionMethod = Literal["rule", "jsonld", "regex"]
DEFAULT_EVENT_TYPES = ("Event",)
_JSON_LD_TYPE_RE = re.compile(r"application/ld\+json", re.IGNORECASE)


@dataclass(slots=True)
class EditionExtract:
    race_date: str | None
    registration_status: str | None
    registration_url: str | None
    method: ExtractionMethod

    def as_fields(self) -> EditionFields:
        return EditionFields(
            race_date=self.race_date,
            registration_status=self.registration_status,
            registration_url=self.registration_url,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "race_date": self.race_date,
            "registration_status": self.registration_status,
            "registration_url": self.registration_url,
        }


def extract_edition(html: str, *, page_url: str | None, config: ExtractionConfig | None) -> EditionExtract | None:
    """Run per-source rules first, then embedded structured data, then the text regex fallback."""
    if isinstance(config, SelectorExtractionConfig) and config.extract.has_rules():
        extracted = extract_with_rules(html, page_url=page_url, rules=config.extract)
        if extracted is not None:
            return extracted
    elif isinstance(config, RegexExtractionConfig):
        extracted = extract_with_patterns(html, page_url=page_url, patterns=config.patterns)
        if extracted is not None:
            return extracted

    event_types = config.event_types if isinstance(config, StructuredDataExtractionConfig) else DEFAULT_EVENT_TYPES
    extracted = extract_from_structured_data(html, event_types=event_types)
    if extracted is not None:
        return extracted
    return extract_from_text(html)


def extract_json_ld_events(html: str, *, event_types: Iterable[str] = DEFAULT_EVENT_TYPES) -> list[dict[str, Any]]:
    wanted = tuple(event_types)
    events: list[dict[str, Any]] = []
    soup = BeautifulSoup(html, "html.parser")
    for script in soup.find_all("script", attrs={"type": _JSON_LD_TYPE_RE}):
        raw = script.string if script.string is not None else script.get_text()
        raw = (raw or "").strip()
        if not raw:
            continue
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            continue

        stack: list[Any] = list(parsed) if isinstance(parsed, list) else [parsed]
        while stack:
            item = stack.pop()
            if isinstance(item, list):
                stack.extend(item)
                continue
            if not isinstance(item, dict):
                continue
            if _matches_event_type(item.get("@type"), wanted):
                events.append(item)
            for value in item.values():
                if isinstance(value, (dict, list)):
                    stack.append(value)
    return events


def extract_from_structured_data(
    html: str,
    *,
    event_types: Iterable[str] = DEFAULT_EVENT_TYPES,
) -> EditionExtract | None:
    for event in extract_json_ld_events(html, event_types=event_types):
        race_date = normalize_date(event.get("startDate"))
        if race_date:
            url = event.get("url")
            return EditionExtract(
                race_date=race_date,
                registration_status=None,
                registration_url=(url.strip() or None) if isinstance(url, str) else None,
                method="jsonld",
            )
    return None


def extract_from_text(text: str) -> EditionExtract | None:
    match = ISO_DATE_RE.search(text) or CN_DATE_RE.search(text)
    if not match:
        return None
    race_date = format_ymd(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    if race_date is None:
        return None
    return EditionExtract(race_date=race_date, registration_status=None, registration_url=None, method="regex")


def extract_with_rules(html: str, *, page_url: str | None, rules: FieldRules) -> EditionExtract | None:
    soup = BeautifulSoup(html, "html.parser")
    raw_race_date = apply_field_rule(soup, rules.race_date) if rules.race_date else None
    registration_status = apply_field_rule(soup, rules.registration_status) if rules.registration_status else None
    raw_registration_url = apply_field_rule(soup, rules.registration_url) if rules.registration_url else None
    return _build_extract(
        raw_race_date=raw_race_date,
        registration_status=registration_status,
        raw_registration_url=raw_registration_url,
        page_url=page_url,
        method="rule",
    )


def extract_with_patterns(text: str, *, page_url: str | None, patterns: PatternRules) -> EditionExtract | None:
    return _build_extract(
        raw_race_date=apply_pattern_rule(text, patterns.race_date) if patterns.race_date else None,
        registration_status=(
            apply_pattern_rule(text, patterns.registration_status) if patterns.registration_status else None
        ),
        raw_registration_url=apply_pattern_rule(text, patterns.registration_url) if patterns.registration_url else None,
        page_url=page_url,
        method="regex",
    )


def apply_field_rule(soup: BeautifulSoup, rule: FieldRule) -> str | None:
    """Read one field from the first element matching ``rule.selector``; never raises."""
    try:
        element = soup.select_one(rule.selector)
    except (SelectorSyntaxError, ValueError, NotImplementedError):
        logger.debug("invalid selector in extraction rule: %s", rule.selector)
        return None
    if element is None:
        return None

    raw_value = _read_element(element, rule.attr)
    trimmed = raw_value.strip()
    if not trimmed:
        return None
    if not rule.regex:
        return trimmed
    return _apply_regex(trimmed, rule.regex, rule.group)


def apply_pattern_rule(text: str, rule: PatternRule) -> str | None:
    return _apply_regex(text, rule.regex, rule.group)


def _build_extract(
    *,
    raw_race_date: str | None,
    registration_status: str | None,
    raw_registration_url: str | None,
    page_url: str | None,
    method: ExtractionMethod,
) -> EditionExtract | None:
    race_date = normalize_date(raw_race_date) if raw_race_date else None
    registration_url = resolve_url(raw_registration_url, page_url) if raw_registration_url else None
    if not (race_date or registration_status or registration_url):
        return None
    return EditionExtract(
        race_date=race_date,
        registration_status=registration_status,
        registration_url=registration_url,
        method=method,
    )


def _read_element(element: Tag, attr: str | None) -> str:
    if not attr or attr == "text":
        return element.get_text()
    if attr == "html":
        return element.decode_contents()
    value = element.get(attr)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def _apply_regex(value: str, pattern: str, group: int | None) -> str | None:
    try:
        match = re.search(pattern, value, re.IGNORECASE)
    except re.error:
        return None
    if not match:
        return None
    try:
        captured = match.group(1 if group is None else group)
    except IndexError:
        return None
    if captured is None:
        return None
    return captured.strip() or None


def _matches_event_type(type_value: Any, wanted: tuple[str, ...]) -> bool:
    types = type_value if isinstance(type_value, list) else [type_value]
    for candidate in types:
        if not isinstance(candidate, str):
            continue
        name = candidate.rsplit("/", 1)[-1]
        if name in wanted:
            return True
        if "Event" in wanted and name.endswith("Event"):
            return True
    return False
