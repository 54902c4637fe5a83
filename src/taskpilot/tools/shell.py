from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Any

from taskpilot.cancellation import CancelToken
from taskpilot.tools.protocol import ToolResult


_POLL_INTERVAL_S = 0.2


def run_command(
    command: str,
    cancel: CancelToken,
    cwd: Path,
    timeout_s: float,
) -> ToolResult:
    """Run *command* through the shell with a hard wall-clock limit.

    The child runs in its own process group so cancellation and timeouts
    terminate everything it spawned.
    """
    cancel.raise_if_cancelled()
    popen_kwargs: dict[str, Any] = {}
    if os.name == "posix":
        popen_kwargs["start_new_session"] = True
    try:
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            **popen_kwargs,
        )
    except FileNotFoundError as exc:
        return ToolResult(success=False, output=f"Command could not be started (missing binary or directory): {exc}")
    deadline = time.monotonic() + timeout_s
    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_INTERVAL_S)
            break
        except subprocess.TimeoutExpired:
            if cancel.cancelled:
                _terminate(process)
                process.communicate()
                cancel.raise_if_cancelled()
            if time.monotonic() >= deadline:
                _terminate(process)
                stdout, stderr = process.communicate()
                output = _format_output(stdout, stderr)
                return ToolResult(
                    success=False,
                    output=f"Command timed out after {timeout_s:g}s and was terminated.\n{output}",
                )
    output = _format_output(stdout, stderr)
    if process.returncode == 127:
        return ToolResult(
            success=False,
            output=f"Command not found (exit 127). Is the program installed and on PATH?\n{output}",
        )
    if process.returncode != 0:
        return ToolResult(
            success=False,
            output=f"Error during command execution (exit {process.returncode}):\n{output}",
        )
    return ToolResult(success=True, output=f"Command executed successfully:\n{output}")


def _format_output(stdout: str | None, stderr: str | None) -> str:
    return f"STDOUT:\n{stdout or ''}\n\nSTDERR:\n{stderr or ''}"


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
        process.wait(timeout=5)
    except (ProcessLookupError, subprocess.TimeoutExpired):
        if process.poll() is None:
            if os.name == "posix":
                try:
                    os.killpg(process.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            else:
                process.kill()
            process.wait()
