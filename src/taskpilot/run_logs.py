from __future__ import annotations

import json
from pathlib import Path
from typing import Any


def append_run_log(logs_dir: Path, entry: dict[str, Any]) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)
    path = logs_dir / "runs.log"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, default=str) + "\n")


def _read_entries(logs_dir: Path) -> list[dict[str, Any]]:
    path = logs_dir / "runs.log"
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            entries.append(payload)
    return entries


def read_recent_logs(logs_dir: Path, limit: int = 50) -> list[dict[str, Any]]:
    entries = _read_entries(logs_dir)
    return entries[-limit:] if limit > 0 else []


def latest_events_for_plan(logs_dir: Path, plan_id: str, limit: int = 50) -> list[dict[str, Any]]:
    events = [entry for entry in _read_entries(logs_dir) if entry.get("plan_id") == plan_id]
    return events[-limit:] if limit > 0 else []
