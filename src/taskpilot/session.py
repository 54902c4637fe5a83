from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from taskpilot.failure_memory import FailureMemory


WORKING_MEMORY_SIZE = 10


def _bounded_queue(size: int = WORKING_MEMORY_SIZE) -> deque[str]:
    return deque(maxlen=size)


@dataclass
class SessionState:
    """Per-conversation mutable state owned by a single orchestrator."""

    repl_variables: dict[str, Any] = field(default_factory=dict)
    working_memory: deque[str] = field(default_factory=_bounded_queue)
    installed_packages: list[str] = field(default_factory=list)
    environment_history: list[str] = field(default_factory=list)
    active_env: str | None = None
    failure_memory: FailureMemory = field(default_factory=FailureMemory)
    task_failure_counts: dict[int, int] = field(default_factory=dict)

    @classmethod
    def create(cls, working_memory_size: int = WORKING_MEMORY_SIZE) -> "SessionState":
        return cls(working_memory=_bounded_queue(working_memory_size))

    def remember(self, entry: str) -> None:
        if entry:
            self.working_memory.append(entry)

    def store_variable(self, name: str, raw_output: str) -> Any:
        try:
            value: Any = json.loads(raw_output)
        except (TypeError, ValueError):
            value = raw_output
        self.repl_variables[name] = value
        return value

    def record_environment(self, env_name: str) -> None:
        self.active_env = env_name
        if env_name not in self.environment_history:
            self.environment_history.append(env_name)

    def record_packages(self, packages: list[str]) -> None:
        for package in packages:
            if package not in self.installed_packages:
                self.installed_packages.append(package)

    def bump_failure(self, index: int) -> int:
        count = self.task_failure_counts.get(index, 0) + 1
        self.task_failure_counts[index] = count
        return count

    def reset_failure(self, index: int) -> None:
        self.task_failure_counts.pop(index, None)

    def reset_for_new_objective(self) -> None:
        self.failure_memory.clear()
        self.task_failure_counts.clear()

    def working_memory_summary(self) -> str:
        if not self.working_memory:
            return "- None"
        return "\n".join(f"- {item}" for item in self.working_memory)

    def environment_summary(self) -> str:
        parts = [
            f"active_env: {self.active_env or '-'}",
            f"environment_history: {', '.join(self.environment_history) or '-'}",
            f"installed_packages: {', '.join(self.installed_packages) or '-'}",
        ]
        if self.repl_variables:
            parts.append(f"stored_variables: {', '.join(sorted(self.repl_variables))}")
        return "\n".join(parts)

    def remember_output(self, label: str, output: str, min_chars: int = 20, excerpt_chars: int = 500) -> bool:
        text = output.strip()
        if len(text) <= min_chars:
            return False
        if len(text) > excerpt_chars:
            text = text[:excerpt_chars] + "..."
        self.remember(f"{label}: {text}")
        return True
