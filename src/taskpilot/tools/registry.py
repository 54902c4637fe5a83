from __future__ import annotations

import os
import platform
import re
import shlex
import sys
from pathlib import Path
from typing import Any

import httpx

from taskpilot.cancellation import CancelToken
from taskpilot.config import ToolSettings
from taskpilot.prompts import coder_system_prompt, summary_prompt
from taskpilot.tools.protocol import ToolDefinition, ToolExecutionEnv, ToolParameter, ToolResult
from taskpilot.tools.shell import run_command


SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}
SUMMARY_CHUNK_CHARS = 12000
_CODE_BLOCK = re.compile(r"```(?:[\w+-]*)\n(.+?)\n```", re.DOTALL)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._enabled: set[str] = set()

    def register(self, definition: ToolDefinition) -> None:
        self._tools[definition.name] = definition
        if definition.is_default:
            self._enabled.add(definition.name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDefinition | None:
        if name not in self._enabled:
            return None
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def enabled_tools(self) -> list[ToolDefinition]:
        return [tool for name, tool in self._tools.items() if name in self._enabled]

    def enabled_names(self) -> set[str]:
        return set(self._enabled) & set(self._tools)

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled and name in self._tools

    def set_enabled(self, names: list[str]) -> None:
        self._enabled = {name for name in names if name in self._tools}

    def disable(self, name: str) -> None:
        self._enabled.discard(name)

    def enable(self, name: str) -> None:
        if name in self._tools:
            self._enabled.add(name)

    def describe_tools(self) -> str:
        return "\n".join(tool.describe() for tool in self.enabled_tools())


def _resolve_root(root: Path, target: str) -> Path:
    candidate = Path(target)
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    root_resolved = root.resolve()
    if resolved == root_resolved or root_resolved in resolved.parents:
        return resolved
    raise ValueError("Access to paths outside the workspace is not allowed.")


def _required(params: dict[str, Any], key: str) -> str | None:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        return None
    return value


def _missing(key: str) -> ToolResult:
    return ToolResult(success=False, output=f"Error: '{key}' parameter is required.")


def _env_python(env_name: str) -> str:
    if os.name == "nt":
        return str(Path(env_name) / "Scripts" / "python.exe")
    return str(Path(env_name) / "bin" / "python")


def _walk_files(base: Path) -> list[Path]:
    files: list[Path] = []
    for current, dirs, names in os.walk(base):
        dirs[:] = sorted(d for d in dirs if d not in SKIPPED_DIRS)
        for name in sorted(names):
            files.append(Path(current) / name)
    return files


def build_default_registry(settings: ToolSettings | None = None) -> ToolRegistry:
    settings = settings or ToolSettings()
    registry = ToolRegistry()

    def list_files(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        target = params.get("path") or "."
        try:
            base = _resolve_root(env.workspace_root, str(target))
        except ValueError as exc:
            return ToolResult(success=False, output=f"Error: {exc}")
        if not base.is_dir():
            return ToolResult(success=False, output=f"Error listing files: '{target}' is not a directory.")
        entries: list[str] = []
        for path in _walk_files(base):
            cancel.raise_if_cancelled()
            entries.append(str(path.relative_to(base)))
            if len(entries) >= settings.list_max_entries:
                entries.append(f"... (truncated at {settings.list_max_entries} entries)")
                break
        listing = "\n".join(entries) if entries else "(empty)"
        return ToolResult(success=True, output=f"File listing for '{target}':\n{listing}")

    def read_file(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        target = _required(params, "path")
        if target is None:
            return _missing("path")
        try:
            path = _resolve_root(env.workspace_root, target)
            if path.stat().st_size > settings.fs_max_bytes:
                return ToolResult(success=False, output=f"Error reading file {target}: file exceeds max read size.")
            return ToolResult(success=True, output=path.read_text(encoding="utf-8", errors="replace"))
        except (ValueError, FileNotFoundError, IsADirectoryError) as exc:
            return ToolResult(success=False, output=f"Error reading file {target}: {exc}")

    def search_files(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        pattern = _required(params, "pattern")
        if pattern is None:
            return _missing("pattern")
        try:
            compiled = re.compile(pattern)
            base = _resolve_root(env.workspace_root, str(params.get("path") or "."))
        except re.error as exc:
            return ToolResult(success=False, output=f"Error: invalid pattern: {exc}")
        except ValueError as exc:
            return ToolResult(success=False, output=f"Error: {exc}")
        matches: list[str] = []
        for path in _walk_files(base):
            cancel.raise_if_cancelled()
            try:
                _resolve_root(env.workspace_root, str(path))
            except ValueError:
                continue
            try:
                if path.stat().st_size > settings.fs_max_bytes:
                    continue
                lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            except (FileNotFoundError, IsADirectoryError, PermissionError):
                continue
            for lineno, line in enumerate(lines, start=1):
                if compiled.search(line):
                    rel = path.relative_to(env.workspace_root.resolve())
                    matches.append(f"{rel}:{lineno}: {line.strip()[:200]}")
                    if len(matches) >= settings.search_max_matches:
                        break
            if len(matches) >= settings.search_max_matches:
                matches.append(f"... (truncated at {settings.search_max_matches} matches)")
                break
        if not matches:
            return ToolResult(success=True, output=f"No matches for '{pattern}'.")
        return ToolResult(success=True, output="\n".join(matches))

    def write_file(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        target = _required(params, "path")
        content = params.get("content", params.get("code"))
        if target is None or not isinstance(content, str):
            return ToolResult(success=False, output="Error: 'path' and 'content' are required.")
        if len(content.encode("utf-8")) > settings.fs_max_bytes:
            return ToolResult(success=False, output="Error: content exceeds max write size.")
        try:
            path = _resolve_root(env.workspace_root, target)
        except ValueError as exc:
            return ToolResult(success=False, output=f"Error: {exc}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return ToolResult(success=True, output=f"Successfully wrote to file: {target}")

    def execute_command(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        command = _required(params, "command")
        if command is None:
            return _missing("command")
        return run_command(command, cancel, env.workspace_root, settings.command_timeout_s)

    def create_python_environment(
        params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken
    ) -> ToolResult:
        env_name = _required(params, "env_name")
        if env_name is None:
            return _missing("env_name")
        command = f"{shlex.quote(sys.executable)} -m venv {shlex.quote(env_name)}"
        result = run_command(command, cancel, env.workspace_root, settings.command_timeout_s)
        if result.success:
            env.session.record_environment(env_name)
        return result

    def install_python_dependencies(
        params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken
    ) -> ToolResult:
        env_name = params.get("env_name") or env.session.active_env
        dependencies = params.get("dependencies")
        if isinstance(dependencies, str):
            dependencies = dependencies.split()
        if not env_name or not isinstance(dependencies, list) or not dependencies:
            return ToolResult(success=False, output="Error: 'env_name' and 'dependencies' are required.")
        packages = [str(item) for item in dependencies]
        python = shlex.quote(_env_python(str(env_name)))
        command = f"{python} -m pip install {' '.join(shlex.quote(item) for item in packages)}"
        result = run_command(command, cancel, env.workspace_root, settings.command_timeout_s)
        if result.success:
            env.session.record_packages(packages)
        return result

    def fetch_web_page(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        url = _required(params, "url")
        if url is None:
            return _missing("url")
        if not (url.startswith("http://") or url.startswith("https://")):
            return ToolResult(success=False, output="Error: url must start with http:// or https://")
        allowed_types = {"text/html", "application/json", "text/plain", "text/markdown"}
        current = url
        for _ in range(settings.web_max_redirects + 1):
            cancel.raise_if_cancelled()
            try:
                with httpx.Client(timeout=settings.web_timeout_s, follow_redirects=False) as client:
                    response = client.get(current)
            except httpx.HTTPError as exc:
                return ToolResult(success=False, output=f"Error fetching {current}: {exc}")
            if response.status_code in {301, 302, 303, 307, 308}:
                location = response.headers.get("location")
                if not location:
                    break
                current = str(response.url.join(location))
                continue
            content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
            if content_type and content_type not in allowed_types:
                return ToolResult(success=False, output=f"Error: content-type not allowed: {content_type}")
            content = response.content[: settings.web_max_bytes + 1]
            text = content[: settings.web_max_bytes].decode("utf-8", errors="replace")
            if len(content) > settings.web_max_bytes:
                text += "\n[truncated]"
            if response.status_code >= 400:
                return ToolResult(success=False, output=f"HTTP {response.status_code} from {current}:\n{text[:2000]}")
            return ToolResult(success=True, output=f"Fetched {current} status={response.status_code}\n{text}")
        return ToolResult(success=False, output="Error: too many redirects")

    def request_user_input(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        question = _required(params, "question")
        if question is None:
            return _missing("question")
        if env.orchestrator is None:
            return ToolResult(success=False, output="Error: no user channel is available.")
        answer = env.orchestrator.ask_user(question)
        if answer is None:
            return ToolResult(success=False, output="User cancelled the input request.")
        return ToolResult(success=True, output=f"User provided input: {answer}")

    def wait(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        try:
            seconds = float(params.get("seconds", 1))
        except (TypeError, ValueError):
            return ToolResult(success=False, output="Error: 'seconds' must be a number.")
        if cancel.wait(max(0.0, seconds)):
            cancel.raise_if_cancelled()
        return ToolResult(success=True, output=f"Waited for {seconds:g} seconds.")

    def get_environment_details(
        params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken
    ) -> ToolResult:
        lines = [
            f"os: {platform.system()} {platform.release()}",
            f"python: {sys.version.split()[0]} ({sys.executable})",
            f"workspace: {env.workspace_root}",
            env.session.environment_summary(),
        ]
        return ToolResult(success=True, output="\n".join(lines))

    def generate_code(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        if env.llm is None:
            return ToolResult(success=False, output="Error: no LLM client is configured.")
        file_path = params.get("file_path")
        instruction = params.get("user_prompt") or f"Generate code for {file_path}"
        if file_path:
            try:
                existing = _resolve_root(env.workspace_root, str(file_path))
                if existing.is_file():
                    current = existing.read_text(encoding="utf-8", errors="replace")
                    instruction = (
                        f"I am working on the file `{file_path}`. Here is its current content:\n\n"
                        f"```\n{current}\n```\n\nMy instruction is: {instruction}"
                    )
            except ValueError as exc:
                return ToolResult(success=False, output=f"Error: {exc}")
        plan = env.plan
        system = coder_system_prompt(
            str(params.get("system_prompt") or ""),
            plan.objective if plan else "",
            plan.scratchpad if plan else "",
            env.context() if env.context else "",
        )
        response = env.llm.chat(
            [{"role": "system", "content": system}, {"role": "user", "content": str(instruction)}],
            cancel=cancel,
        )
        match = _CODE_BLOCK.search(response.content)
        if match:
            return ToolResult(success=True, output=match.group(1).strip())
        if response.content.strip():
            return ToolResult(success=True, output=response.content.strip())
        return ToolResult(success=False, output="Coder agent failed to produce any content.")

    def summarize_text(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        text = params.get("text")
        if not isinstance(text, str) or not text:
            return _missing("text")
        if env.llm is None:
            return ToolResult(success=False, output="Error: no LLM client is configured.")
        llm = env.llm
        objective = str(params.get("objective") or "General summary")
        detail = str(params.get("detail_level") or "detailed")

        def summarize(chunk: str, focus: str, level: str) -> str:
            response = llm.chat([{"role": "user", "content": summary_prompt(chunk, focus, level)}], cancel=cancel)
            return response.content.strip()

        if len(text) <= SUMMARY_CHUNK_CHARS:
            summary = summarize(text, objective, detail)
        else:
            partials: list[str] = []
            for start in range(0, len(text), SUMMARY_CHUNK_CHARS):
                cancel.raise_if_cancelled()
                chunk_focus = f"Summarize this part of a larger text. Focus on: {objective}. Keep it concise."
                partial = summarize(text[start : start + SUMMARY_CHUNK_CHARS], chunk_focus, "brief")
                if partial:
                    partials.append(partial)
            combined = "\n\n=== NEXT SECTION ===\n\n".join(partials)
            summary = summarize(
                combined,
                f"Create a coherent final summary from these partial notes. Original objective: {objective}",
                detail,
            )
        if not summary:
            return ToolResult(success=False, output="Summarizer returned an empty response.")
        return ToolResult(success=True, output=summary)

    def edit_plan(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        instruction = _required(params, "instruction")
        if instruction is None:
            return _missing("instruction")
        if env.orchestrator is None:
            return ToolResult(success=False, output="Error: no active orchestrator to edit the plan.")
        return env.orchestrator.replan(instruction, cancel)

    def submit_response(params: dict[str, Any], env: ToolExecutionEnv, cancel: CancelToken) -> ToolResult:
        response = params.get("response")
        if not isinstance(response, str) or not response.strip():
            return _missing("response")
        if env.orchestrator is None:
            return ToolResult(success=False, output="Error: agent environment not fully initialized.")
        env.orchestrator.submit_final_message(response)
        return ToolResult(success=True, output="Response successfully submitted to user.")

    registry.register(
        ToolDefinition(
            name="list_files",
            description="Lists files recursively from a path within the workspace.",
            parameters=(ToolParameter("path", "string", "Relative path to list. Defaults to '.'."),),
            permission_group="filesystem_read",
            execute=list_files,
        )
    )
    registry.register(
        ToolDefinition(
            name="read_file",
            description="Reads the content of a file from the workspace.",
            parameters=(ToolParameter("path", "string", "Relative path of the file.", required=True),),
            permission_group="filesystem_read",
            execute=read_file,
        )
    )
    registry.register(
        ToolDefinition(
            name="search_files",
            description="Searches workspace files for lines matching a regular expression.",
            parameters=(
                ToolParameter("pattern", "string", "Regular expression to search for.", required=True),
                ToolParameter("path", "string", "Relative directory to search. Defaults to '.'."),
            ),
            permission_group="filesystem_read",
            execute=search_files,
        )
    )
    registry.register(
        ToolDefinition(
            name="write_file",
            description="Writes (creates or overwrites) a file inside the workspace.",
            parameters=(
                ToolParameter("path", "string", "Relative path of the file.", required=True),
                ToolParameter("content", "string", "Full file content.", required=True),
            ),
            permission_group="filesystem_write",
            execute=write_file,
        )
    )
    registry.register(
        ToolDefinition(
            name="execute_command",
            description="Executes a shell command in the workspace root.",
            parameters=(ToolParameter("command", "string", "The shell command to execute.", required=True),),
            permission_group="shell_execution",
            execute=execute_command,
        )
    )
    registry.register(
        ToolDefinition(
            name="create_python_environment",
            description="Creates a Python virtual environment in the workspace.",
            parameters=(ToolParameter("env_name", "string", "Environment folder, e.g. 'venv'.", required=True),),
            permission_group="shell_execution",
            execute=create_python_environment,
        )
    )
    registry.register(
        ToolDefinition(
            name="install_python_dependencies",
            description="Installs packages with pip into a virtual environment.",
            parameters=(
                ToolParameter("env_name", "string", "Environment folder. Defaults to the active one."),
                ToolParameter("dependencies", "array", "Package specifiers to install.", required=True),
            ),
            permission_group="shell_execution",
            execute=install_python_dependencies,
        )
    )
    registry.register(
        ToolDefinition(
            name="fetch_web_page",
            description="Fetches a URL over HTTP(S) and returns its text content.",
            parameters=(ToolParameter("url", "string", "Absolute http(s) URL.", required=True),),
            permission_group="internet_access",
            execute=fetch_web_page,
        )
    )
    registry.register(
        ToolDefinition(
            name="request_user_input",
            description="Asks the user a question and returns the answer.",
            parameters=(ToolParameter("question", "string", "The question to ask the user.", required=True),),
            execute=request_user_input,
        )
    )
    registry.register(
        ToolDefinition(
            name="wait",
            description="Pauses execution for a number of seconds.",
            parameters=(ToolParameter("seconds", "number", "Number of seconds to wait.", required=True),),
            execute=wait,
        )
    )
    registry.register(
        ToolDefinition(
            name="get_environment_details",
            description="Reports the OS, interpreter and session environment state.",
            execute=get_environment_details,
        )
    )
    registry.register(
        ToolDefinition(
            name="generate_code",
            description="Generates the complete content of a file with the coder model. Returns the code.",
            parameters=(
                ToolParameter("file_path", "string", "File the code is for (existing content is shown to the coder)."),
                ToolParameter("user_prompt", "string", "What the code must do.", required=True),
                ToolParameter("system_prompt", "string", "Extra instructions for the coder."),
            ),
            is_agentic=True,
            execute=generate_code,
        )
    )
    registry.register(
        ToolDefinition(
            name="summarize_text",
            description="Summarizes text, splitting long input into chunks.",
            parameters=(
                ToolParameter("text", "string", "The text to summarize.", required=True),
                ToolParameter("objective", "string", "Focus of the summary."),
                ToolParameter("detail_level", "string", "brief, detailed, or bullets."),
            ),
            is_agentic=True,
            execute=summarize_text,
        )
    )
    registry.register(
        ToolDefinition(
            name="edit_plan",
            description="Changes the remaining steps of the current plan based on an instruction.",
            parameters=(ToolParameter("instruction", "string", "How the plan should change.", required=True),),
            is_agentic=True,
            execute=edit_plan,
        )
    )
    registry.register(
        ToolDefinition(
            name="submit_response",
            description="Sends the final answer or a status update back to the user.",
            parameters=(ToolParameter("response", "string", "The message for the user.", required=True),),
            is_agentic=True,
            execute=submit_response,
        )
    )
    for name in settings.disabled_tools:
        registry.disable(name)
    return registry
