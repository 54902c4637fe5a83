import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


@dataclass(frozen=True)
class Paths:
    base_dir: Path

    @property
    def data_dir(self) -> Path:
        return self.base_dir

    @property
    def plans_dir(self) -> Path:
        return self.base_dir / "plans"

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"


LLMProvider = Literal["openai", "ollama"]

PERMISSION_GROUPS = ("shell_execution", "filesystem_write", "filesystem_read", "internet_access")

DEFAULT_SIGNIFICANT_ACTIONS = ("execute_command", "fetch_web_page", "request_user_input")
DEFAULT_MUTATING_ACTIONS = (
    "generate_code",
    "write_file",
    "execute_command",
    "create_python_environment",
    "install_python_dependencies",
)


@dataclass(frozen=True)
class LLMSettings:
    provider: LLMProvider
    model: str
    base_url: str
    api_key: str | None = None
    supervisor_model: str | None = None


@dataclass(frozen=True)
class AgentSettings:
    max_retries: int = 2
    max_consecutive_failures: int = 3
    max_architect_iterations: int = 10
    force_plan_after_iteration: int = 8
    working_memory_size: int = 10
    working_memory_min_chars: int = 20
    working_memory_excerpt_chars: int = 500
    significant_actions: tuple[str, ...] = DEFAULT_SIGNIFICANT_ACTIONS
    mutating_actions: tuple[str, ...] = DEFAULT_MUTATING_ACTIONS
    checkpoints_enabled: bool = True
    supervisor_enabled: bool = True
    append_submit_response: bool = False


@dataclass(frozen=True)
class ToolSettings:
    fs_max_bytes: int = 1_000_000
    list_max_entries: int = 500
    search_max_matches: int = 200
    web_max_bytes: int = 1_000_000
    web_timeout_s: float = 20.0
    web_max_redirects: int = 5
    command_timeout_s: float = 120.0
    disabled_tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class PermissionSettings:
    can_execute: bool = True
    can_read: bool = True
    groups: dict[str, bool] = field(default_factory=dict)

    def group_enabled(self, group: str) -> bool:
        return bool(self.groups.get(group, True))


@dataclass(frozen=True)
class AppConfig:
    llm: LLMSettings
    agent: AgentSettings = field(default_factory=AgentSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    permissions: PermissionSettings = field(default_factory=PermissionSettings)


def load_paths(base_dir: Path | None = None) -> Paths:
    env_home = os.environ.get("TASKPILOT_HOME")
    resolved = base_dir or (Path(env_home) if env_home else Path.home() / ".taskpilot")
    return Paths(base_dir=resolved)


def load_config(path: Path) -> AppConfig:
    payload = json.loads(path.read_text())
    llm = payload.get("llm", {})
    agent = payload.get("agent", {})
    tools = payload.get("tools", {})
    permissions = payload.get("permissions", {})
    defaults = AgentSettings()
    groups = permissions.get("groups") or {}
    return AppConfig(
        llm=LLMSettings(
            provider=llm["provider"],
            model=llm["model"],
            base_url=llm["base_url"],
            api_key=llm.get("api_key"),
            supervisor_model=llm.get("supervisor_model"),
        ),
        agent=AgentSettings(
            max_retries=int(agent.get("max_retries", defaults.max_retries)),
            max_consecutive_failures=int(
                agent.get("max_consecutive_failures", defaults.max_consecutive_failures)
            ),
            max_architect_iterations=int(
                agent.get("max_architect_iterations", defaults.max_architect_iterations)
            ),
            force_plan_after_iteration=int(
                agent.get("force_plan_after_iteration", defaults.force_plan_after_iteration)
            ),
            working_memory_size=int(agent.get("working_memory_size", defaults.working_memory_size)),
            working_memory_min_chars=int(
                agent.get("working_memory_min_chars", defaults.working_memory_min_chars)
            ),
            working_memory_excerpt_chars=int(
                agent.get("working_memory_excerpt_chars", defaults.working_memory_excerpt_chars)
            ),
            significant_actions=tuple(agent.get("significant_actions", defaults.significant_actions)),
            mutating_actions=tuple(agent.get("mutating_actions", defaults.mutating_actions)),
            checkpoints_enabled=bool(agent.get("checkpoints_enabled", True)),
            supervisor_enabled=bool(agent.get("supervisor_enabled", True)),
            append_submit_response=bool(agent.get("append_submit_response", False)),
        ),
        tools=ToolSettings(
            fs_max_bytes=int(tools.get("fs_max_bytes", 1_000_000)),
            list_max_entries=int(tools.get("list_max_entries", 500)),
            search_max_matches=int(tools.get("search_max_matches", 200)),
            web_max_bytes=int(tools.get("web_max_bytes", 1_000_000)),
            web_timeout_s=float(tools.get("web_timeout_s", 20.0)),
            web_max_redirects=int(tools.get("web_max_redirects", 5)),
            command_timeout_s=float(tools.get("command_timeout_s", 120.0)),
            disabled_tools=tuple(tools.get("disabled_tools", ())),
        ),
        permissions=PermissionSettings(
            can_execute=bool(permissions.get("can_execute", True)),
            can_read=bool(permissions.get("can_read", True)),
            groups={str(key): bool(value) for key, value in groups.items()},
        ),
    )


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "llm": {
            "provider": config.llm.provider,
            "model": config.llm.model,
            "base_url": config.llm.base_url,
            "api_key": config.llm.api_key,
            "supervisor_model": config.llm.supervisor_model,
        },
        "agent": {
            "max_retries": config.agent.max_retries,
            "max_consecutive_failures": config.agent.max_consecutive_failures,
            "max_architect_iterations": config.agent.max_architect_iterations,
            "force_plan_after_iteration": config.agent.force_plan_after_iteration,
            "working_memory_size": config.agent.working_memory_size,
            "working_memory_min_chars": config.agent.working_memory_min_chars,
            "working_memory_excerpt_chars": config.agent.working_memory_excerpt_chars,
            "significant_actions": list(config.agent.significant_actions),
            "mutating_actions": list(config.agent.mutating_actions),
            "checkpoints_enabled": config.agent.checkpoints_enabled,
            "supervisor_enabled": config.agent.supervisor_enabled,
            "append_submit_response": config.agent.append_submit_response,
        },
        "tools": {
            "fs_max_bytes": config.tools.fs_max_bytes,
            "list_max_entries": config.tools.list_max_entries,
            "search_max_matches": config.tools.search_max_matches,
            "web_max_bytes": config.tools.web_max_bytes,
            "web_timeout_s": config.tools.web_timeout_s,
            "web_max_redirects": config.tools.web_max_redirects,
            "command_timeout_s": config.tools.command_timeout_s,
            "disabled_tools": list(config.tools.disabled_tools),
        },
        "permissions": {
            "can_execute": config.permissions.can_execute,
            "can_read": config.permissions.can_read,
            "groups": dict(config.permissions.groups),
        },
    }
    path.write_text(json.dumps(payload, indent=2))
