from __future__ import annotations

import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph.tasklist import (
    RalphError,
    copy_task_list,
    load_task_list,
    read_branch_name,
)

WorkspaceEventHook = Callable[[dict[str, Any]], None]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorkspaceError(RalphError):
    """Raised when a worktree cannot be created or reused."""


def sanitize_branch(branch: str) -> str:
    return branch.replace("/", "-")


def sanitize_component(value: str) -> str:
    """Make ``value`` safe to use as one path or key component."""
    cleaned = _UNSAFE_NAME_CHARS.sub("-", sanitize_branch(value.strip()))
    return cleaned.strip("-") or "default"


def workspace_path(project: str, branch: str, root: Path) -> Path:
    return root / f"{project}-{sanitize_branch(branch)}"


@dataclass(slots=True)
class Workspace:
    path: Path
    project: str
    branch: str
    source_root: Path
    action: str
    task_list_action: str


class WorkspaceProvisioner:
    def __init__(
        self,
        source_root: Path,
        workspaces_root: Path,
        *,
        task_list_name: str = "prd.json",
        event_hook: WorkspaceEventHook | None = None,
    ) -> None:
        self.source_root = source_root.resolve()
        self.workspaces_root = workspaces_root
        self.task_list_name = task_list_name
        self.event_hook = event_hook

    @property
    def project(self) -> str:
        return self.source_root.name

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.source_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def branch_exists(self, branch: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            check=False,
        )
        return proc.returncode == 0

    def _destroy(self, path: Path, branch: str) -> None:
        self._emit({"event": "workspace_reset", "path": str(path)})
        removed = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if removed.returncode != 0:
            shutil.rmtree(path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        if self.branch_exists(branch):
            self._emit({"event": "workspace_branch_deleted", "branch": branch})
            self._run_git(["branch", "-D", branch], check=False)

    def _create(self, path: Path, branch: str) -> None:
        if not self.branch_exists(branch):
            self._emit({"event": "workspace_branch_created", "branch": branch})
            self._run_git(["branch", branch], check=True)
        self._emit({"event": "workspace_created", "path": str(path), "branch": branch})
        self._run_git(["worktree", "add", str(path), branch], check=True)

    def _reconcile_task_list(self, source: Path, path: Path, branch: str) -> str:
        target = path / self.task_list_name
        if target.exists():
            existing_branch = read_branch_name(target)
            if existing_branch == branch:
                self._emit({"event": "task_list_reused", "branch": branch})
                return "reused"
            self._emit(
                {
                    "event": "task_list_branch_mismatch",
                    "workspace_branch": existing_branch,
                    "branch": branch,
                }
            )
            copy_task_list(source, target)
            return "replaced"
        copy_task_list(source, target)
        self._emit({"event": "task_list_copied", "path": str(target)})
        return "copied"

    def provision(self, *, force: bool = False) -> Workspace:
        source = self.source_root / self.task_list_name
        # Validated before anything on disk is touched.
        branch = load_task_list(source).require_branch()
        path = workspace_path(self.project, branch, self.workspaces_root)
        self._emit({"event": "workspace_resolved", "branch": branch, "path": str(path)})

        try:
            self.workspaces_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceError(
                f"Cannot create workspaces root {self.workspaces_root}: {exc}"
            ) from exc

        action = "created"
        if force and path.exists():
            self._destroy(path, branch)
            action = "reset"

        if path.exists():
            self._emit({"event": "workspace_reused", "path": str(path)})
            action = "reused"
        else:
            self._create(path, branch)

        task_list_action = self._reconcile_task_list(source, path, branch)
        return Workspace(
            path=path.resolve(),
            project=self.project,
            branch=branch,
            source_root=self.source_root,
            action=action,
            task_list_action=task_list_action,
        )
