#!/usr/bin/env python3
"""Emit deterministic SQL that registers (or refreshes) a crawl source."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from app.services.extraction_config import ExtractionConfigError, dump_extraction_config, parse_extraction_config
from app.services.records import SOURCE_STRATEGIES, SOURCE_TYPES


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _load_config(raw: str | None) -> dict | None:
    if raw is None:
        return None
    text = Path(raw[1:]).read_text(encoding="utf-8") if raw.startswith("@") else raw
    return json.loads(text)


def render_sql(
    *,
    name: str,
    source_type: str,
    strategy: str,
    priority: int,
    base_url: str | None,
    retry_max: int,
    retry_backoff_seconds: int,
    request_timeout_ms: int,
    min_interval_seconds: int,
    extraction_config: dict | None,
) -> str:
    config = dump_extraction_config(parse_extraction_config(extraction_config))
    config_value = f"{_quote_sql(json.dumps(config, sort_keys=True))}::jsonb" if config else "null"
    base_url_value = _quote_sql(base_url) if base_url else "null"

    return f"""-- racesync source seed
insert into sources (
  name, type, strategy, base_url, priority, retry_max,
  retry_backoff_seconds, request_timeout_ms, min_interval_seconds, extraction_config
)
values (
  {_quote_sql(name)}, {_quote_sql(source_type)}, {_quote_sql(strategy)}, {base_url_value}, {priority}, {retry_max},
  {retry_backoff_seconds}, {request_timeout_ms}, {min_interval_seconds}, {config_value}
)
on conflict (name) do update set
  type = excluded.type,
  strategy = excluded.strategy,
  base_url = excluded.base_url,
  priority = excluded.priority,
  retry_max = excluded.retry_max,
  retry_backoff_seconds = excluded.retry_backoff_seconds,
  request_timeout_ms = excluded.request_timeout_ms,
  min_interval_seconds = excluded.min_interval_seconds,
  extraction_config = excluded.extraction_config,
  updated_at = now();
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a crawl source.")
    parser.add_argument("--name", required=True, help="Unique source name")
    parser.add_argument("--type", dest="source_type", choices=SOURCE_TYPES, default="official")
    parser.add_argument("--strategy", choices=SOURCE_STRATEGIES, default="HTML")
    parser.add_argument("--priority", type=int, default=0)
    parser.add_argument("--base-url")
    parser.add_argument("--retry-max", type=int, default=3)
    parser.add_argument("--retry-backoff-seconds", type=int, default=30)
    parser.add_argument("--request-timeout-ms", type=int, default=15000)
    parser.add_argument("--min-interval-seconds", type=int, default=0)
    parser.add_argument(
        "--config",
        help="Extraction config as inline JSON, or @path to a JSON file",
    )
    args = parser.parse_args()

    try:
        sql = render_sql(
            name=args.name,
            source_type=args.source_type,
            strategy=args.strategy,
            priority=args.priority,
            base_url=args.base_url,
            retry_max=args.retry_max,
            retry_backoff_seconds=args.retry_backoff_seconds,
            request_timeout_ms=args.request_timeout_ms,
            min_interval_seconds=args.min_interval_seconds,
            extraction_config=_load_config(args.config),
        )
    except (ExtractionConfigError, json.JSONDecodeError) as exc:
        print(f"invalid extraction config: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    print(sql)


if __name__ == "__main__":
    main()
