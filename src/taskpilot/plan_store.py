from __future__ import annotations

import json
import uuid
from pathlib import Path

from taskpilot.models import Plan


class PlanStore:
    """JSON files under ``plans_dir``, one per plan id."""

    def __init__(self, plans_dir: Path) -> None:
        self.plans_dir = plans_dir

    @staticmethod
    def new_plan_id() -> str:
        return uuid.uuid4().hex[:12]

    def path_for(self, plan_id: str) -> Path:
        return self.plans_dir / f"{plan_id}.json"

    def save(self, plan_id: str, plan: Plan) -> Path:
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(plan_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(plan.to_dict(), indent=2), encoding="utf-8")
        tmp_path.replace(path)
        return path

    def load(self, plan_id: str) -> Plan | None:
        path = self.path_for(plan_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        return Plan.from_dict(payload)

    def list_ids(self) -> list[str]:
        if not self.plans_dir.exists():
            return []
        paths = sorted(self.plans_dir.glob("*.json"), key=lambda item: item.stat().st_mtime)
        return [path.stem for path in paths]

    def latest(self) -> tuple[str, Plan] | None:
        for plan_id in reversed(self.list_ids()):
            plan = self.load(plan_id)
            if plan is not None:
                return plan_id, plan
        return None
