from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shutil
import subprocess


@dataclass(frozen=True)
class CheckpointStatus:
    ok: bool
    ref: str | None
    message: str | None = None


def _git(workspace: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "-C", str(workspace), *args],
        capture_output=True,
        text=True,
        timeout=30,
    )


def create_checkpoint(workspace: Path, label: str) -> CheckpointStatus:
    """Record the working tree in the stash list without touching the files."""
    if not shutil.which("git"):
        return CheckpointStatus(False, None, "Git is not installed; checkpoint skipped.")
    try:
        inside = _git(workspace, "rev-parse", "--is-inside-work-tree")
        if inside.returncode != 0 or inside.stdout.strip() != "true":
            return CheckpointStatus(False, None, "Workspace is not a git repository; checkpoint skipped.")
        created = _git(workspace, "stash", "create", label)
        if created.returncode != 0:
            message = (created.stderr or created.stdout or "git stash create failed").strip()
            return CheckpointStatus(False, None, message)
        ref = created.stdout.strip()
        if not ref:
            return CheckpointStatus(True, None, "No local changes to checkpoint.")
        stored = _git(workspace, "stash", "store", "-m", label, ref)
        if stored.returncode != 0:
            message = (stored.stderr or stored.stdout or "git stash store failed").strip()
            return CheckpointStatus(False, ref, message)
    except (OSError, subprocess.SubprocessError) as exc:
        return CheckpointStatus(False, None, f"Checkpoint failed: {exc}")
    return CheckpointStatus(True, ref, f"Checkpoint {ref[:12]} stored as '{label}'.")
