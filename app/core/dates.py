from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

ISO_DATE_RE = re.compile(r"\b(20\d{2})-(\d{1,2})-(\d{1,2})\b")
CN_DATE_RE = re.compile(r"(20\d{2})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日")
MIN_YEAR = 2000
MAX_YEAR = 2100


def normalize_date(value: Any) -> str | None:
    """Normalize a calendar value to ``YYYY-MM-DD`` using UTC calendar fields.

    Accepts ``date``/``datetime`` objects, ISO 8601 strings (with or without a
    time and offset), plain ``YYYY-M-D`` text and the localized ``YYYY年M月D日``
    form. Returns ``None`` for anything unparseable or for impossible dates
    such as February 30th.
    """
    if isinstance(value, datetime):
        return _format_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    direct = coerce_iso_datetime(trimmed)
    if direct:
        return direct

    for pattern in (ISO_DATE_RE, CN_DATE_RE):
        match = pattern.search(trimmed)
        if match:
            return format_ymd(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    return None


def coerce_iso_datetime(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate:
        return None
    try:
        parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        return None
    return _format_utc(parsed)


def format_ymd(year: int, month: int, day: int) -> str | None:
    if not is_valid_ymd(year, month, day):
        return None
    return f"{year:04d}-{month:02d}-{day:02d}"


def is_valid_ymd(year: int, month: int, day: int) -> bool:
    if year < MIN_YEAR or year > MAX_YEAR:
        return False
    try:
        built = date(year, month, day)
    except ValueError:
        return False
    return (built.year, built.month, built.day) == (year, month, day)


def _format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date().isoformat()
