from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any


ERROR_EXCERPT_CHARS = 300


@dataclass(frozen=True)
class FailedAttempt:
    tool_name: str
    parameters: dict[str, Any]
    error_output: str
    timestamp: float


def canonical_params(params: Any) -> str:
    return json.dumps(params if params is not None else {}, sort_keys=True, default=str)


@dataclass
class FailureMemory:
    failures: list[FailedAttempt] = field(default_factory=list)

    def record_failure(self, tool_name: str, parameters: dict[str, Any], error_output: str) -> None:
        self.failures.append(
            FailedAttempt(
                tool_name=tool_name,
                parameters=parameters,
                error_output=error_output or "",
                timestamp=time.time(),
            )
        )

    def has_failed_before(self, tool_name: str, parameters: dict[str, Any]) -> bool:
        key = canonical_params(parameters)
        return any(
            failure.tool_name == tool_name and canonical_params(failure.parameters) == key
            for failure in self.failures
        )

    def get_memory_context(self) -> str:
        if not self.failures:
            return ""
        lines = [
            "# CRITICAL: ACTIONS PREVIOUSLY FAILED",
            "You have already attempted the following actions and they FAILED.",
            "The execution engine will AUTO-BLOCK any identical attempts.",
            "YOU MUST CHOOSE A DIFFERENT STRATEGY OR TOOL.",
        ]
        for idx, failure in enumerate(self.failures, start=1):
            lines.extend(
                [
                    "",
                    f"[FAILURE #{idx}]",
                    f"- Tool: `{failure.tool_name}`",
                    f"- Used Parameters: `{canonical_params(failure.parameters)}`",
                    f'- Error Result: "{failure.error_output[:ERROR_EXCERPT_CHARS]}"',
                    "- Action Required: Do NOT use this tool with these exact parameters again.",
                ]
            )
        return "\n".join(lines)

    def clear(self) -> None:
        self.failures = []

    def __len__(self) -> int:
        return len(self.failures)
