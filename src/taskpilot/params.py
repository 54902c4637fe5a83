from __future__ import annotations

import json
import re
from typing import Any

from taskpilot.models import Plan, Task
from taskpilot.session import SessionState


TASK_RESULT_PATTERN = re.compile(
    r"\{\{\s*tasks\[(?P<task_id>\d+)\]\.result\s*"
    r"(?:\|\s*regex_search\(\s*(?P<quote>['\"])(?P<pattern>.*?)(?P=quote)\s*"
    r"(?:,\s*(?P<group>\d+)\s*)?\)\s*)?\}\}"
)
VARIABLE_PATTERN = re.compile(r"\{\{\s*(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def resolve_parameters(task: Task, plan: Plan | None, session: SessionState) -> dict[str, Any]:
    """Expand task-result and session-variable templates in string parameters.

    Placeholders that cannot be resolved are left in place so the tool that
    receives them can fail with a meaningful message.
    """
    if plan is None:
        raise RuntimeError("Cannot resolve parameters without an active plan.")
    resolved: dict[str, Any] = {}
    for key, value in task.parameters.items():
        if not isinstance(value, str):
            resolved[key] = value
            continue
        text = _substitute_task_results(value, plan)
        resolved[key] = _substitute_variables(text, session.repl_variables)
    return resolved


def _substitute_task_results(text: str, plan: Plan) -> str:
    def replace(match: re.Match[str]) -> str:
        source = plan.find_task(int(match.group("task_id")))
        if source is None or source.result is None:
            return match.group(0)
        pattern = match.group("pattern")
        if pattern is None:
            return source.result
        group = int(match.group("group") or 0)
        extracted = regex_search(source.result, pattern, group)
        return extracted if extracted is not None else match.group(0)

    return TASK_RESULT_PATTERN.sub(replace, text)


def regex_search(source: str, pattern: str, group: int = 0) -> str | None:
    try:
        compiled = re.compile(pattern, re.MULTILINE)
        found = compiled.search(source)
        if found is None:
            return None
        value = found.group(group)
    except (re.error, IndexError):
        return None
    return value


def _substitute_variables(text: str, variables: dict[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group("name")
        if name not in variables:
            return match.group(0)
        return format_variable(variables[name])

    return VARIABLE_PATTERN.sub(replace, text)


def format_variable(value: Any) -> str:
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return value
        if isinstance(parsed, (dict, list)):
            return json.dumps(parsed, indent=2)
        return value
    return json.dumps(value, indent=2, default=str)
