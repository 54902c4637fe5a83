from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from taskpilot.models import Plan, Task, TaskStatus, TaskType


_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*(.+?)\s*```", re.DOTALL)
_TASK_REFERENCE = re.compile(r"(\{\{\s*tasks\[)(\d+)(\]\.result)")


@dataclass(frozen=True)
class ToolRequest:
    tool: str
    params: dict[str, Any]


@dataclass(frozen=True)
class SupervisorVerdict:
    decision: str
    reasoning: str
    new_instruction: str | None


def _balanced_objects(text: str) -> list[str]:
    candidates: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for idx, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                candidates.append(text[start : idx + 1])
                start = -1
    return candidates


def extract_json(text: str) -> dict[str, Any] | None:
    """Return the first JSON object found in an LLM reply.

    Fenced code blocks are tried first, then every balanced ``{...}`` span.
    """
    for match in _FENCED_BLOCK.finditer(text):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    for candidate in _balanced_objects(text):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _tasks_field(payload: dict[str, Any]) -> Any:
    for key in ("tasks", "steps", "plan"):
        if isinstance(payload.get(key), list):
            return payload[key]
    return None


def is_plan_payload(payload: dict[str, Any]) -> bool:
    return _tasks_field(payload) is not None


def parse_tool_request(payload: dict[str, Any]) -> tuple[ToolRequest | None, str | None]:
    tool = payload.get("tool")
    if not isinstance(tool, str) or not tool.strip():
        return None, "tool must be a non-empty string"
    params = payload.get("params", payload.get("parameters", {}))
    if params is None:
        params = {}
    if not isinstance(params, dict):
        return None, "params must be object"
    return ToolRequest(tool=tool.strip(), params=params), None


def parse_tasks(
    payload: dict[str, Any],
    enabled_tool_names: set[str],
) -> tuple[list[Task] | None, str | None]:
    tasks_raw = _tasks_field(payload)
    if tasks_raw is None:
        return None, "missing tasks array"
    if not tasks_raw:
        return None, "tasks must not be empty"
    tasks: list[Task] = []
    for idx, entry in enumerate(tasks_raw):
        if not isinstance(entry, dict):
            return None, f"task {idx} must be object"
        action = entry.get("action")
        if not isinstance(action, str) or not action.strip():
            return None, f"task {idx} missing action"
        action = action.strip()
        if action not in enabled_tool_names:
            return None, f"tool '{action}' unknown"
        parameters = entry.get("parameters", entry.get("params", {}))
        if parameters is None:
            parameters = {}
        if not isinstance(parameters, dict):
            return None, f"task {idx} parameters must be object"
        raw_id = entry.get("id")
        try:
            task_id = int(raw_id)
        except (TypeError, ValueError):
            task_id = 0
        try:
            task_type = TaskType(entry.get("task_type") or TaskType.SIMPLE_ACTION.value)
        except ValueError:
            task_type = TaskType.SIMPLE_ACTION
        save_as = entry.get("save_as")
        description = entry.get("description")
        tasks.append(
            Task(
                id=task_id,
                action=action,
                description=description.strip() if isinstance(description, str) else action,
                task_type=task_type,
                parameters=parameters,
                status=TaskStatus.PENDING,
                result=None,
                retries=0,
                save_as=save_as.strip() if isinstance(save_as, str) and save_as.strip() else None,
            )
        )
    return tasks, None


def _rewrite_references(value: Any, mapping: dict[int, int]) -> Any:
    if isinstance(value, str):
        return _TASK_REFERENCE.sub(
            lambda m: f"{m.group(1)}{mapping.get(int(m.group(2)), int(m.group(2)))}{m.group(3)}",
            value,
        )
    if isinstance(value, dict):
        return {key: _rewrite_references(item, mapping) for key, item in value.items()}
    if isinstance(value, list):
        return [_rewrite_references(item, mapping) for item in value]
    return value


def adopt_tasks(plan: Plan, tasks: list[Task]) -> list[Task]:
    """Give each task a fresh id from the plan allocator.

    References between tasks of the same batch are rewritten to the new ids.
    The tasks are not inserted into ``plan.tasks``.
    """
    mapping: dict[int, int] = {}
    for task in tasks:
        new_id = plan.allocate_id()
        if task.id > 0 and task.id not in mapping:
            mapping[task.id] = new_id
        task.id = new_id
    for task in tasks:
        changed = {old: new for old, new in mapping.items() if old != new}
        if changed:
            task.parameters = _rewrite_references(task.parameters, changed)
    return tasks


def submit_response_task() -> Task:
    return Task(
        id=0,
        action="submit_response",
        description="Report completion to the user.",
        task_type=TaskType.AGENTIC_ACTION,
        parameters={"response": "All tasks completed successfully."},
    )


def build_plan(objective: str, tasks: list[Task], scratchpad: str = "") -> Plan:
    plan = Plan(objective=objective, scratchpad=scratchpad)
    plan.tasks = adopt_tasks(plan, tasks)
    return plan


def parse_supervisor_decision(text: str) -> tuple[SupervisorVerdict | None, str | None]:
    payload = extract_json(text)
    if payload is None:
        return None, "no json object found"
    decision = payload.get("decision")
    if not isinstance(decision, str):
        return None, "decision required"
    decision = decision.strip().lower()
    if decision not in {"continue", "replan"}:
        return None, f"unknown decision: {decision}"
    reasoning = payload.get("reasoning")
    new_instruction = payload.get("new_instruction")
    if new_instruction is not None and not isinstance(new_instruction, str):
        return None, "new_instruction must be string"
    return (
        SupervisorVerdict(
            decision=decision,
            reasoning=reasoning if isinstance(reasoning, str) else "",
            new_instruction=new_instruction.strip() if new_instruction and new_instruction.strip() else None,
        ),
        None,
    )


def summarize_tasks(tasks: list[Task], max_result_chars: int = 300) -> str:
    lines: list[str] = []
    for task in tasks:
        line = f"- [{task.id}] {task.action} ({task.status.value}): {task.description}"
        if task.result:
            result = task.result if len(task.result) <= max_result_chars else task.result[:max_result_chars] + "..."
            line += f"\n  result: {result}"
        lines.append(line)
    return "\n".join(lines)
