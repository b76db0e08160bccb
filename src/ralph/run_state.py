from __future__ import annotations

import json
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

from ralph.config import FilesConfig
from ralph.tasklist import RalphError, read_branch_name

RunStateEventHook = Callable[[dict[str, Any]], None]

PROGRESS_HEADER = "# Ralph Progress Log"
ARCHIVE_PREFIX = "ralph/"


class RunStateError(RalphError):
    """Raised when run-state files or directories cannot be created."""


def utc_timestamp() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class RunPaths:
    root: Path
    task_list: Path
    progress: Path
    archive_dir: Path
    log_dir: Path
    last_branch: Path

    @classmethod
    def for_root(cls, root: Path, files: FilesConfig | None = None) -> RunPaths:
        files = files or FilesConfig()
        return cls(
            root=root,
            task_list=root / files.task_list,
            progress=root / files.progress,
            archive_dir=root / files.archive_dir,
            log_dir=root / files.log_dir,
            last_branch=root / files.last_branch,
        )

    @property
    def events(self) -> Path:
        return self.log_dir / "events.jsonl"


@dataclass(slots=True)
class RunStateReport:
    current_branch: str | None
    previous_branch: str | None
    rotated: bool = False
    archive_folder: Path | None = None


def archive_folder_name(branch: str, today: date) -> str:
    folder = branch[len(ARCHIVE_PREFIX):] if branch.startswith(ARCHIVE_PREFIX) else branch
    return f"{today.isoformat()}-{folder.replace('/', '-')}"


def progress_header(started: datetime) -> str:
    return f"{PROGRESS_HEADER}\nStarted: {started.strftime('%a %b %d %H:%M:%S %Y')}\n---\n"


class RunStateManager:
    """Tracks which task list a working root last ran and archives on rotation."""

    def __init__(
        self,
        paths: RunPaths,
        *,
        clock: Callable[[], datetime] = datetime.now,
        event_hook: RunStateEventHook | None = None,
    ) -> None:
        self.paths = paths
        self.clock = clock
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _read_last_branch(self) -> str | None:
        try:
            value = self.paths.last_branch.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return value or None

    def _write_progress_header(self) -> None:
        self.paths.progress.write_text(progress_header(self.clock()), encoding="utf-8")

    def _archive(self, previous_branch: str) -> Path:
        folder = self.paths.archive_dir / archive_folder_name(previous_branch, self.clock().date())
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RunStateError(f"Cannot create archive folder {folder}: {exc}") from exc

        for source in (self.paths.task_list, self.paths.progress):
            if not source.is_file():
                continue
            try:
                shutil.copy2(source, folder / source.name)
            except OSError as exc:
                self._emit({"event": "archive_skipped", "path": str(source), "error": str(exc)})
        if self.paths.log_dir.is_dir():
            try:
                shutil.copytree(
                    self.paths.log_dir, folder / self.paths.log_dir.name, dirs_exist_ok=True
                )
            except (OSError, shutil.Error) as exc:
                self._emit(
                    {"event": "archive_skipped", "path": str(self.paths.log_dir), "error": str(exc)}
                )
        return folder

    def prepare(self) -> RunStateReport:
        current_branch = (
            read_branch_name(self.paths.task_list) if self.paths.task_list.exists() else None
        )
        previous_branch = self._read_last_branch()
        report = RunStateReport(current_branch=current_branch, previous_branch=previous_branch)

        if current_branch and previous_branch and current_branch != previous_branch:
            folder = self._archive(previous_branch)
            self._write_progress_header()
            report.rotated = True
            report.archive_folder = folder
            self._emit(
                {
                    "event": "run_archived",
                    "previous_branch": previous_branch,
                    "branch": current_branch,
                    "archive": str(folder),
                }
            )

        try:
            if current_branch:
                self.paths.last_branch.write_text(current_branch + "\n", encoding="utf-8")
            if not self.paths.progress.exists():
                self._write_progress_header()
            self.paths.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RunStateError(f"Cannot prepare run state in {self.paths.root}: {exc}") from exc
        return report

    def record_event(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", utc_timestamp())
        self.paths.log_dir.mkdir(parents=True, exist_ok=True)
        with self.paths.events.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
