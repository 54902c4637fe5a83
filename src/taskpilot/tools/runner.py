from __future__ import annotations

import re
from typing import Any, Callable

from taskpilot.cancellation import CancelToken, TaskCancelled
from taskpilot.tools.policy import PermissionGate
from taskpilot.tools.protocol import ToolExecutionEnv, ToolResult
from taskpilot.tools.registry import ToolRegistry


_OS_PERMISSION_PATTERN = re.compile(r"EACCES|permission denied", re.IGNORECASE)


class ToolRunner:
    def __init__(
        self,
        registry: ToolRegistry,
        gate: PermissionGate,
        env_factory: Callable[[], ToolExecutionEnv] | None = None,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.env_factory = env_factory

    def execute_task(
        self,
        action: str,
        params: dict[str, Any],
        cancel: CancelToken,
        env_override: ToolExecutionEnv | None = None,
        can_execute: bool | None = None,
        can_read: bool | None = None,
    ) -> ToolResult:
        definition = self.registry.get(action)
        if definition is None:
            return ToolResult(success=False, output=f"Unknown action: {action}")
        decision = self.gate.evaluate(definition, can_execute=can_execute, can_read=can_read)
        if not decision.allowed:
            return ToolResult(success=False, output=decision.reason or "Permission denied.")
        env = env_override
        if env is None:
            if self.env_factory is None:
                raise RuntimeError("No execution environment available for tool dispatch.")
            env = self.env_factory()
        cancel.raise_if_cancelled()
        try:
            return definition.execute(params, env, cancel)
        except TaskCancelled:
            raise
        except PermissionError as exc:
            return _permission_failure(action, str(exc))
        except Exception as exc:
            if _OS_PERMISSION_PATTERN.search(str(exc)):
                return _permission_failure(action, str(exc))
            raise


def _permission_failure(action: str, detail: str) -> ToolResult:
    return ToolResult(
        success=False,
        output=(
            f"Operating system denied permission while running '{action}': {detail}. "
            "Check file permissions or choose a different path or command."
        ),
    )

