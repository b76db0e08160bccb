from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class RalphError(RuntimeError):
    """Base class for every error raised by the supervisor."""


class ConfigurationError(RalphError):
    """Raised when the task list or run configuration is unusable."""


class TaskListError(RalphError):
    """Raised when a task list cannot be read or parsed."""


@dataclass(slots=True)
class Story:
    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: float = 0
    passes: bool = False
    notes: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Story:
        criteria = payload.get("acceptanceCriteria", [])
        if not isinstance(criteria, list):
            criteria = []
        priority = payload.get("priority", 0)
        if not isinstance(priority, (int, float)) or isinstance(priority, bool):
            priority = 0
        notes = payload.get("notes")
        return cls(
            id=str(payload.get("id", "")),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            acceptance_criteria=[str(item) for item in criteria],
            priority=priority,
            passes=payload.get("passes") is True,
            notes=notes if isinstance(notes, str) else None,
        )


@dataclass(slots=True)
class TaskList:
    project: str = ""
    branch_name: str | None = None
    description: str = ""
    stories: list[Story] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskList:
        raw_stories = payload.get("userStories", [])
        if not isinstance(raw_stories, list):
            raise TaskListError("userStories must be a list.")
        stories = [Story.from_dict(item) for item in raw_stories if isinstance(item, dict)]

        seen: set[str] = set()
        for story in stories:
            if story.id in seen:
                raise TaskListError(f"Duplicate story id in task list: {story.id}")
            seen.add(story.id)

        branch = payload.get("branchName")
        return cls(
            project=str(payload.get("project") or ""),
            branch_name=branch if isinstance(branch, str) and branch.strip() else None,
            description=str(payload.get("description") or ""),
            stories=stories,
        )

    def first_incomplete(self) -> Story | None:
        for story in self.stories:
            if not story.passes:
                return story
        return None

    def incomplete(self) -> list[Story]:
        return [story for story in self.stories if not story.passes]

    def completed_count(self) -> int:
        return sum(1 for story in self.stories if story.passes)

    def priority_order_mismatch(self) -> bool:
        """Whether document order disagrees with ascending priority."""
        priorities = [story.priority for story in self.stories]
        return priorities != sorted(priorities)

    def require_branch(self) -> str:
        if not self.branch_name:
            raise ConfigurationError("branchName not found in task list.")
        return self.branch_name


def load_task_list(path: Path) -> TaskList:
    if not path.exists():
        raise ConfigurationError(f"Task list not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TaskListError(f"Task list is not valid JSON: {path}: {exc}") from exc
    except OSError as exc:
        raise TaskListError(f"Cannot read task list {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise TaskListError(f"Task list must be a JSON object: {path}")
    return TaskList.from_dict(payload)


def read_branch_name(path: Path) -> str | None:
    """Return the declared branch of the task list at ``path``, or None."""
    try:
        return load_task_list(path).branch_name
    except RalphError:
        return None


def copy_task_list(source: Path, destination: Path) -> None:
    # Copied byte for byte so the agent sees the document exactly as authored.
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
