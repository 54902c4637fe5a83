from taskpilot.tools.protocol import ToolDefinition, ToolExecutionEnv, ToolParameter, ToolResult
from taskpilot.tools.registry import ToolRegistry, build_default_registry
from taskpilot.tools.runner import ToolRunner
from taskpilot.tools.policy import PermissionGate

__all__ = [
    "ToolDefinition",
    "ToolExecutionEnv",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "build_default_registry",
    "ToolRunner",
    "PermissionGate",
]
