from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import questionary

from taskpilot.models import Task


FAILURE_CHOICES = [
    {"name": "Stop", "value": "stop"},
    {"name": "Continue Anyway", "value": "continue"},
    {"name": "View Log", "value": "view_log"},
]


def normalize_choice(raw: str | None) -> str | None:
    if raw is None:
        return None
    normalized = raw.strip().lower()
    if normalized in {"s", "stop", "q", "quit"}:
        return "stop"
    if normalized in {"c", "continue", "continue anyway"}:
        return "continue"
    if normalized in {"v", "view", "log", "view log", "view_log"}:
        return "view_log"
    return None


@dataclass
class DecisionPrompter:
    """User decision points for the execution loop.

    ``mode`` is ``prompt`` (ask), ``stop`` or ``continue`` (answer without asking).
    With ``interactive`` off, questions go through ``prompt_fn`` as plain text.
    """

    mode: str = "prompt"
    interactive: bool = True
    prompt_fn: Callable[[str], str] | None = None

    def decide_failure(self, message: str, task: Task) -> str | None:
        if self.mode in {"stop", "continue"}:
            return self.mode
        title = f"{message} (task {task.id}: {task.action})"
        if self.interactive:
            choice = questionary.select(title, choices=FAILURE_CHOICES).ask()
            return choice if choice in {"stop", "continue", "view_log"} else None
        if self.prompt_fn is None:
            return None
        return normalize_choice(self.prompt_fn(f"{title}\nOptions: [s]top, [c]ontinue anyway, [v]iew log\nChoice: "))

    def ask_text(self, question: str) -> str | None:
        if self.mode != "prompt":
            return None
        if self.interactive:
            return questionary.text(question).ask()
        if self.prompt_fn is None:
            return None
        return self.prompt_fn(f"{question}\n> ")
