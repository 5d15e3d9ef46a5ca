from __future__ import annotations

from urllib.parse import urljoin, urlparse


def is_http_url(raw_url: str | None) -> bool:
    if not raw_url:
        return False
    parsed = urlparse(raw_url.strip())
    return parsed.scheme.lower() in {"http", "https"} and bool(parsed.netloc)


def resolve_url(value: str, page_url: str | None) -> str:
    """Resolve a possibly relative URL against the page it was found on."""
    stripped = value.strip()
    if not page_url or is_http_url(stripped):
        return stripped
    try:
        return urljoin(page_url, stripped)
    except ValueError:
        return stripped
