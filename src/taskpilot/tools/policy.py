from __future__ import annotations

from dataclasses import dataclass

from taskpilot.config import PermissionSettings
from taskpilot.tools.protocol import ToolDefinition


_EXECUTE_GROUPS = {"shell_execution", "filesystem_write"}
_READ_GROUPS = {"filesystem_read", "internet_access"}


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str | None
    permission_group: str | None


class PermissionGate:
    def __init__(self, settings: PermissionSettings) -> None:
        self.settings = settings

    def evaluate(
        self,
        definition: ToolDefinition,
        can_execute: bool | None = None,
        can_read: bool | None = None,
    ) -> PolicyDecision:
        group = definition.permission_group
        if group is None:
            return PolicyDecision(allowed=True, reason=None, permission_group=None)
        execute_ok = self.settings.can_execute if can_execute is None else can_execute
        read_ok = self.settings.can_read if can_read is None else can_read
        if group in _EXECUTE_GROUPS and not execute_ok:
            return PolicyDecision(
                allowed=False,
                reason=(
                    f"Permission denied: tool '{definition.name}' needs '{group}' "
                    "but execution is not allowed for this session."
                ),
                permission_group=group,
            )
        if group in _READ_GROUPS and not read_ok:
            return PolicyDecision(
                allowed=False,
                reason=(
                    f"Permission denied: tool '{definition.name}' needs '{group}' "
                    "but reading is not allowed for this session."
                ),
                permission_group=group,
            )
        if not self.settings.group_enabled(group):
            return PolicyDecision(
                allowed=False,
                reason=(
                    f"Permission denied: the '{group}' capability is disabled in the "
                    f"configuration, so '{definition.name}' cannot run."
                ),
                permission_group=group,
            )
        return PolicyDecision(allowed=True, reason=None, permission_group=group)
