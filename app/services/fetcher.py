from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass

import httpx

DEFAULT_MAX_BODY_BYTES = 2 * 1024 * 1024
DEFAULT_USER_AGENT = "racesync/1.0 (+edition-sync)"

# Only transport-level failures are retried; HTTP status codes never are.
RETRYABLE_FETCH_ERRORS: tuple[type[BaseException], ...] = (httpx.TransportError, asyncio.TimeoutError)


@dataclass(slots=True)
class FetchResult:
    status_code: int
    content_type: str | None
    text: str
    truncated: bool
    final_url: str


async def fetch_page(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    user_agent: str = DEFAULT_USER_AGENT,
) -> FetchResult:
    """Issue a single GET bounded by ``timeout_seconds`` and read at most ``max_body_bytes``."""
    return await asyncio.wait_for(
        _fetch(client, url, timeout_seconds=timeout_seconds, max_body_bytes=max_body_bytes, user_agent=user_agent),
        timeout=timeout_seconds,
    )


async def _fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    max_body_bytes: int,
    user_agent: str,
) -> FetchResult:
    headers = {"User-Agent": user_agent, "Accept": "*/*"}
    async with client.stream(
        "GET",
        url,
        headers=headers,
        timeout=timeout_seconds,
        follow_redirects=True,
    ) as response:
        body = bytearray()
        truncated = False
        async for chunk in response.aiter_bytes():
            remaining = max_body_bytes - len(body)
            if len(chunk) > remaining:
                body.extend(chunk[:remaining])
                truncated = True
                break
            body.extend(chunk)

        encoding = response.encoding or "utf-8"
        try:
            text = bytes(body).decode(encoding, errors="replace")
        except LookupError:
            text = bytes(body).decode("utf-8", errors="replace")

        return FetchResult(
            status_code=int(response.status_code),
            content_type=response.headers.get("content-type"),
            text=text,
            truncated=truncated,
            final_url=str(response.url),
        )


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_unchanged(last_hash: str | None, new_hash: str) -> bool:
    return bool(last_hash) and last_hash == new_hash
