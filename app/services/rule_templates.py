from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.config import Settings
from app.core.dates import normalize_date
from app.core.urls import resolve_url
from app.services.extraction_config import (
    ExtractionConfig,
    FieldRule,
    FieldRules,
    SelectorExtractionConfig,
    merge_selector_rules,
)
from app.services.extractor import apply_field_rule

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You output JSON only."
PROMPT_LINES = (
    "You generate a CSS selector + attr + optional regex extraction template for a marathon event page.",
    "Return JSON ONLY with keys: extract, notes, evidence.",
    "extract keys may include: raceDate, registrationStatus, registrationUrl.",
    "Each rule is: { selector, attr?, regex?, group? }.",
    "attr is one of: text, html, href, content, value, or any HTML attribute name.",
    "Prefer stable selectors (meta tags, semantic attributes, rel, microdata, IDs) over long class chains.",
    "If the extracted value contains extra text, include regex/group to capture only the target portion.",
    "Do NOT invent values. The selectors must exist in the HTML snippet.",
    "evidence should include a short snippet you used (<=200 chars) for each field you attempted.",
)


class RuleTemplateError(Exception):
    """Base error for rule template generation."""


class RuleTemplateConfigurationError(RuleTemplateError):
    """Raised when AI rule generation is disabled or missing credentials."""


class RuleTemplateGenerationError(RuleTemplateError):
    """Raised when the model call fails or returns an unusable template."""


class RuleEvidence(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    race_date: str | None = Field(default=None, alias="raceDate")
    registration_status: str | None = Field(default=None, alias="registrationStatus")
    registration_url: str | None = Field(default=None, alias="registrationUrl")


class RuleTemplate(BaseModel):
    """A draft selector template; it only takes effect once an operator applies it."""

    extract: FieldRules
    notes: str | None = None
    evidence: RuleEvidence | None = None


class FieldPreview(BaseModel):
    raw: str | None = None
    normalized: str | None = None


class RuleTemplatePreview(BaseModel):
    race_date: FieldPreview
    registration_status: FieldPreview
    registration_url: FieldPreview


def is_rule_generation_enabled(settings: Settings) -> bool:
    return bool(settings.ai_api_key and settings.ai_model and settings.ai_enable_rule_gen)


def content_fingerprint(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]


def build_prompt(*, page_url: str, snippet: str) -> str:
    return "\n".join(
        [
            *PROMPT_LINES,
            f"pageUrl: {page_url}",
            f"htmlFingerprint: {content_fingerprint(snippet)}",
            "html:",
            snippet,
        ]
    )


async def generate_rule_template(
    *,
    settings: Settings,
    page_url: str,
    html: str,
    client: httpx.AsyncClient | None = None,
) -> RuleTemplate:
    if not settings.ai_api_key or not settings.ai_model:
        raise RuleTemplateConfigurationError("AI is not configured (RACESYNC_AI_API_KEY/RACESYNC_AI_MODEL)")
    if not settings.ai_enable_rule_gen:
        raise RuleTemplateConfigurationError("AI rule generation is disabled (RACESYNC_AI_ENABLE_RULE_GEN=false)")

    max_chars = settings.ai_snippet_max_chars
    snippet = html[:max_chars] if len(html) > max_chars else html
    payload = {
        "model": settings.ai_model,
        "temperature": 0,
        "response_format": {"type": "json_object"},
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(page_url=page_url, snippet=snippet)},
        ],
    }
    headers = {"Authorization": f"Bearer {settings.ai_api_key}"}
    url = f"{settings.ai_base_url.rstrip('/')}/chat/completions"

    try:
        if client is not None:
            response = await client.post(url, json=payload, headers=headers, timeout=settings.ai_timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=settings.ai_timeout_seconds) as owned_client:
                response = await owned_client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise RuleTemplateGenerationError(f"AI request failed: {exc}") from exc

    if response.status_code >= 400:
        raise RuleTemplateGenerationError(f"AI request failed: HTTP {response.status_code}")

    template = parse_rule_template_response(response)
    logger.info(
        "generated rule template page_url=%s fields=%s",
        page_url,
        ",".join(name for name, rule in template.extract if rule is not None) or "-",
    )
    return template


def parse_rule_template_response(response: httpx.Response) -> RuleTemplate:
    try:
        body: Any = response.json()
    except ValueError as exc:
        raise RuleTemplateGenerationError("AI response is not valid JSON") from exc

    content = None
    if isinstance(body, dict):
        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                content = message.get("content")
    if not isinstance(content, str) or not content:
        raise RuleTemplateGenerationError("AI response missing content")

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise RuleTemplateGenerationError("AI response is not valid JSON") from exc

    try:
        return RuleTemplate.model_validate(parsed)
    except ValidationError as exc:
        raise RuleTemplateGenerationError(f"AI template failed validation: {exc.error_count()} error(s)") from exc


def preview_rule_template(html: str, page_url: str, template: RuleTemplate) -> RuleTemplatePreview:
    """Apply each rule to the archived page without touching the source config."""
    soup = BeautifulSoup(html, "html.parser")

    def _run(rule: FieldRule | None) -> str | None:
        return apply_field_rule(soup, rule) if rule is not None else None

    race_date_raw = _run(template.extract.race_date)
    registration_status_raw = _run(template.extract.registration_status)
    registration_url_raw = _run(template.extract.registration_url)
    return RuleTemplatePreview(
        race_date=FieldPreview(raw=race_date_raw, normalized=normalize_date(race_date_raw) if race_date_raw else None),
        registration_status=FieldPreview(raw=registration_status_raw, normalized=registration_status_raw),
        registration_url=FieldPreview(raw=registration_url_raw, normalized=_resolve(registration_url_raw, page_url)),
    )


def apply_rule_template(current: ExtractionConfig | None, template: RuleTemplate) -> SelectorExtractionConfig:
    merged = merge_selector_rules(current, template.extract)
    if template.notes:
        merged = merged.model_copy(update={"notes": template.notes})
    return merged


def _resolve(value: str | None, page_url: str) -> str | None:
    return resolve_url(value, page_url) if value else None
