from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = REPO_ROOT / "scripts" / "seed_source.py"


def _run_script(*args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = {**os.environ, "PYTHONPATH": str(REPO_ROOT)}
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=check,
        capture_output=True,
        text=True,
        env=env,
    )


def test_seed_script_emits_upsert_for_source() -> None:
    output = _run_script(
        "--name",
        "tokyo-official",
        "--type",
        "official",
        "--priority",
        "90",
        "--base-url",
        "https://www.marathon.tokyo/",
        "--min-interval-seconds",
        "3600",
    ).stdout

    assert "insert into sources" in output
    assert "'tokyo-official', 'official', 'HTML', 'https://www.marathon.tokyo/', 90, 3," in output
    assert "30, 15000, 3600, null" in output
    assert "on conflict (name) do update set" in output


def test_seed_script_normalizes_inline_extraction_config() -> None:
    config = {"extract": {"raceDate": {"selector": "time", "attr": "datetime"}}}
    output = _run_script("--name", "o'brien-runs", "--config", json.dumps(config)).stdout

    assert "'o''brien-runs'" in output
    normalized = json.dumps(
        {"extract": {"race_date": {"attr": "datetime", "selector": "time"}}, "kind": "selector"},
        sort_keys=True,
    )
    assert f"'{normalized}'::jsonb" in output


def test_seed_script_reads_config_from_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"kind": "structured_data", "event_types": ["SportsEvent"]}), encoding="utf-8")

    output = _run_script("--name", "platform", "--type", "platform", "--config", f"@{config_path}").stdout

    assert '"kind": "structured_data"' in output
    assert '"SportsEvent"' in output


def test_seed_script_rejects_invalid_config() -> None:
    completed = _run_script("--name", "broken", "--config", '{"kind": "xpath"}', check=False)

    assert completed.returncode == 2
    assert "invalid extraction config" in completed.stderr
    assert completed.stdout == ""
