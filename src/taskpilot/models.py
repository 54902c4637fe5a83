from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    SIMPLE_ACTION = "simple_action"
    AGENTIC_ACTION = "agentic_action"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class Task:
    id: int
    action: str
    description: str
    task_type: TaskType = TaskType.SIMPLE_ACTION
    parameters: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None
    retries: int = 0
    can_retry: bool | None = None
    save_as: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "task_type": self.task_type.value,
            "action": self.action,
            "description": self.description,
            "parameters": self.parameters,
            "status": self.status.value,
            "result": self.result,
            "retries": self.retries,
        }
        if self.can_retry is not None:
            payload["can_retry"] = self.can_retry
        if self.save_as:
            payload["save_as"] = self.save_as
        return payload

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "Task":
        try:
            task_type = TaskType(payload.get("task_type") or TaskType.SIMPLE_ACTION.value)
        except ValueError:
            task_type = TaskType.SIMPLE_ACTION
        try:
            status = TaskStatus(payload.get("status") or TaskStatus.PENDING.value)
        except ValueError:
            status = TaskStatus.PENDING
        parameters = payload.get("parameters")
        result = payload.get("result")
        save_as = payload.get("save_as")
        can_retry = payload.get("can_retry")
        return Task(
            id=int(payload.get("id", 0)),
            action=str(payload.get("action", "")),
            description=str(payload.get("description", "")),
            task_type=task_type,
            parameters=parameters if isinstance(parameters, dict) else {},
            status=status,
            result=result if isinstance(result, str) else None,
            retries=int(payload.get("retries", 0) or 0),
            can_retry=can_retry if isinstance(can_retry, bool) else None,
            save_as=save_as if isinstance(save_as, str) and save_as else None,
        )


@dataclass
class InvestigationStep:
    action: str
    parameters: dict[str, Any]
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "parameters": self.parameters,
            "status": self.status.value,
            "result": self.result,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "InvestigationStep":
        parameters = payload.get("parameters")
        result = payload.get("result")
        try:
            status = TaskStatus(payload.get("status") or TaskStatus.PENDING.value)
        except ValueError:
            status = TaskStatus.PENDING
        return InvestigationStep(
            action=str(payload.get("action", "")),
            parameters=parameters if isinstance(parameters, dict) else {},
            status=status,
            result=result if isinstance(result, str) else None,
        )


@dataclass
class Plan:
    objective: str
    scratchpad: str = ""
    tasks: list[Task] = field(default_factory=list)
    investigation: list[InvestigationStep] = field(default_factory=list)
    attempts: list["Plan"] = field(default_factory=list)
    status: PlanStatus = PlanStatus.ACTIVE
    next_id: int = 1

    def allocate_id(self) -> int:
        highest = max((task.id for task in self.tasks), default=0)
        task_id = max(self.next_id, highest + 1)
        self.next_id = task_id + 1
        return task_id

    def append_task(self, task: Task) -> Task:
        task.id = self.allocate_id()
        self.tasks.append(task)
        return task

    def find_task(self, task_id: int) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def index_of(self, task_id: int) -> int:
        for idx, task in enumerate(self.tasks):
            if task.id == task_id:
                return idx
        return -1

    def note(self, text: str) -> None:
        self.scratchpad = f"{self.scratchpad}\n\n{text}" if self.scratchpad else text

    def snapshot(self, reason: str) -> "Plan":
        archived = Plan(
            objective=self.objective,
            scratchpad=self.scratchpad,
            tasks=copy.deepcopy(self.tasks),
            investigation=copy.deepcopy(self.investigation),
            status=PlanStatus.STALE,
            next_id=self.next_id,
        )
        archived.note(f"Archived: {reason}")
        return archived

    def to_dict(self) -> dict[str, Any]:
        return {
            "objective": self.objective,
            "scratchpad": self.scratchpad,
            "status": self.status.value,
            "next_id": self.next_id,
            "tasks": [task.to_dict() for task in self.tasks],
            "investigation": [step.to_dict() for step in self.investigation],
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "Plan":
        tasks_raw = payload.get("tasks")
        investigation_raw = payload.get("investigation")
        attempts_raw = payload.get("attempts")
        try:
            status = PlanStatus(payload.get("status") or PlanStatus.ACTIVE.value)
        except ValueError:
            status = PlanStatus.ACTIVE
        tasks = [Task.from_dict(item) for item in tasks_raw or [] if isinstance(item, dict)]
        plan = Plan(
            objective=str(payload.get("objective", "")),
            scratchpad=str(payload.get("scratchpad", "") or ""),
            tasks=tasks,
            investigation=[
                InvestigationStep.from_dict(item)
                for item in investigation_raw or []
                if isinstance(item, dict)
            ],
            attempts=[Plan.from_dict(item) for item in attempts_raw or [] if isinstance(item, dict)],
            status=status,
        )
        next_id = payload.get("next_id")
        highest = max((task.id for task in tasks), default=0)
        plan.next_id = max(int(next_id) if isinstance(next_id, int) else 1, highest + 1)
        return plan
