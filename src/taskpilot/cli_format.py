"""Rich formatting helpers for taskpilot CLI output.

Each function accepts plain model objects or log dicts and returns a Rich
renderable (Table, Panel, Group).
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from rich.console import Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from taskpilot.models import Plan
from taskpilot.tools.registry import ToolRegistry


_STATUS_COLORS: dict[str, str] = {
    "active": "bold green",
    "pending": "yellow",
    "in_progress": "bold cyan",
    "completed": "green",
    "failed": "bold red",
    "stale": "dim",
    "halted": "bold red",
    "stopped": "bold yellow",
    "planning_failed": "bold red",
    "cancelled": "dim",
}


def status_color(status: str | None) -> str:
    """Wrap *status* in Rich markup colour."""
    if not status:
        return "-"
    colour = _STATUS_COLORS.get(status.lower(), "")
    if colour:
        return f"[{colour}]{status}[/{colour}]"
    return status


def truncate(text: str | None, max_len: int = 80) -> str:
    """Safely truncate text with an ellipsis."""
    if not text:
        return ""
    text = str(text).replace("\n", " ").strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"


def format_tasks(plan: Plan, title: str | None = None) -> Table:
    table = Table(title=title or f"Plan: {truncate(plan.objective, 60)}", show_lines=False)
    table.add_column("ID", style="dim", justify="right")
    table.add_column("Status")
    table.add_column("Action", style="cyan")
    table.add_column("Description", max_width=50)
    table.add_column("Retries", justify="right")
    table.add_column("Result", max_width=50)
    if not plan.tasks:
        table.add_row("-", "", "", "No tasks", "", "")
        return table
    for task in plan.tasks:
        table.add_row(
            str(task.id),
            status_color(task.status.value),
            task.action,
            truncate(task.description, 50),
            str(task.retries),
            truncate(task.result, 50),
        )
    return table


def format_plan(plan: Plan, show_scratchpad: bool = False, show_attempts: bool = False) -> Group:
    parts: list[Any] = [
        Text.from_markup(f"Status: {status_color(plan.status.value)}  next id: {plan.next_id}"),
        format_tasks(plan),
    ]
    if plan.investigation:
        investigation = Table(title="Investigation", show_lines=False)
        investigation.add_column("#", style="dim", justify="right")
        investigation.add_column("Tool", style="cyan")
        investigation.add_column("Status")
        investigation.add_column("Result", max_width=60)
        for idx, step in enumerate(plan.investigation, start=1):
            investigation.add_row(str(idx), step.action, status_color(step.status.value), truncate(step.result, 60))
        parts.append(investigation)
    if show_attempts:
        for idx, attempt in enumerate(plan.attempts, start=1):
            parts.append(format_tasks(attempt, title=f"Attempt {idx} ({attempt.status.value})"))
    elif plan.attempts:
        parts.append(Text(f"{len(plan.attempts)} archived attempt(s); use --attempts to show them.", style="dim"))
    if show_scratchpad and plan.scratchpad:
        parts.append(Panel(plan.scratchpad, title="Scratchpad", border_style="dim"))
    return Group(*parts)


def format_tools(registry: ToolRegistry) -> Table:
    table = Table(title="Tools")
    table.add_column("Name", style="bold")
    table.add_column("Enabled")
    table.add_column("Type")
    table.add_column("Permission")
    table.add_column("Description", max_width=60)
    for tool in sorted(registry.list_tools(), key=lambda item: item.name):
        enabled = registry.is_enabled(tool.name)
        table.add_row(
            tool.name,
            "[green]yes[/green]" if enabled else "[dim]no[/dim]",
            "agentic" if tool.is_agentic else "simple",
            tool.permission_group or "-",
            truncate(tool.description, 60),
        )
    return table


def format_logs(entries: Sequence[dict[str, Any]]) -> Table:
    table = Table(title="Run log")
    table.add_column("Timestamp", style="dim")
    table.add_column("Plan", style="dim")
    table.add_column("Event", style="bold")
    table.add_column("Details", max_width=70)
    if not entries:
        table.add_row("-", "-", "No entries", "")
        return table
    for entry in entries:
        details = {key: value for key, value in entry.items() if key not in {"timestamp", "plan_id", "event"}}
        table.add_row(
            str(entry.get("timestamp", ""))[:19],
            str(entry.get("plan_id") or "-"),
            str(entry.get("event", "")),
            truncate(json.dumps(details, default=str), 70) if details else "",
        )
    return table


def format_result(status: str, message: str, final_messages: Sequence[str]) -> Group:
    parts: list[Any] = [Text.from_markup(f"Result: {status_color(status)}"), Text(message)]
    for text in final_messages:
        parts.append(Panel(text, title="Agent", border_style="green"))
    return Group(*parts)
