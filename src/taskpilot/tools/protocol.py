from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Literal

from taskpilot.cancellation import CancelToken
from taskpilot.llm import LLMClient
from taskpilot.models import Plan
from taskpilot.session import SessionState

if TYPE_CHECKING:
    from taskpilot.orchestrator import Orchestrator


PermissionGroup = Literal["shell_execution", "filesystem_write", "filesystem_read", "internet_access"]


@dataclass(frozen=True)
class ToolResult:
    success: bool
    output: str


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str
    description: str
    required: bool = False


@dataclass
class ToolExecutionEnv:
    """Everything a tool may touch during one call. Tools must not keep it."""

    workspace_root: Path
    llm: LLMClient | None
    session: SessionState
    plan: Plan | None = None
    orchestrator: "Orchestrator | None" = None
    context: Callable[[], str] | None = None
    code_graph: Any | None = None
    skills: Any | None = None


ToolHandler = Callable[[dict[str, Any], ToolExecutionEnv, CancelToken], ToolResult]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    execute: ToolHandler
    parameters: tuple[ToolParameter, ...] = ()
    permission_group: PermissionGroup | None = None
    is_agentic: bool = False
    is_default: bool = True

    def describe(self) -> str:
        params = ", ".join(
            f'"{param.name}" ({param.type}{", required" if param.required else ""}): {param.description}'
            for param in self.parameters
        )
        return f"- {self.name}: {self.description} (params: {params or 'none'})"
