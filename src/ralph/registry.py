"""Keyed record of running daemons.

One entry per (project, branch). Entries are a hint, never a lock: every
reader re-checks the process before trusting one, and removes it when the
process is gone.
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph.tasklist import RalphError
from ralph.workspace import sanitize_component

KEY_SEPARATOR = "--"


class RegistryError(RalphError):
    """Raised when the registry cannot be read or written."""


def registry_key(project: str, branch: str) -> str:
    return f"{sanitize_component(project)}{KEY_SEPARATOR}{sanitize_component(branch)}"


@dataclass(slots=True)
class RegistryEntry:
    key: str
    pid: int
    log_path: Path
    project: str
    branch: str
    started_at: str = ""
    argv: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "pid": self.pid,
            "log_path": str(self.log_path),
            "project": self.project,
            "branch": self.branch,
            "started_at": self.started_at,
            "argv": list(self.argv),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RegistryEntry:
        argv = payload.get("argv", [])
        return cls(
            key=str(payload["key"]),
            pid=int(payload["pid"]),
            log_path=Path(str(payload.get("log_path", ""))),
            project=str(payload.get("project", "")),
            branch=str(payload.get("branch", "")),
            started_at=str(payload.get("started_at", "")),
            argv=[str(item) for item in argv] if isinstance(argv, list) else [],
        )


class DaemonRegistry(ABC):
    @abstractmethod
    def get(self, key: str) -> RegistryEntry | None:
        """Return the entry stored under ``key``, if any."""

    @abstractmethod
    def put(self, entry: RegistryEntry) -> None:
        """Store ``entry`` under its key, replacing any previous one."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete the entry for ``key``; missing keys are ignored."""

    @abstractmethod
    def entries(self) -> list[RegistryEntry]:
        """Return every stored entry, sorted by key."""

    @abstractmethod
    def log_path(self, key: str) -> Path:
        """Return where the daemon registered under ``key`` writes its output."""


class InMemoryDaemonRegistry(DaemonRegistry):
    def __init__(self, log_dir: Path | None = None) -> None:
        self._entries: dict[str, RegistryEntry] = {}
        self._log_dir = log_dir or Path("logs")

    def get(self, key: str) -> RegistryEntry | None:
        return self._entries.get(key)

    def put(self, entry: RegistryEntry) -> None:
        self._entries[entry.key] = entry

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def entries(self) -> list[RegistryEntry]:
        return [self._entries[key] for key in sorted(self._entries)]

    def log_path(self, key: str) -> Path:
        return self._log_dir / f"{key}.log"


class FileDaemonRegistry(DaemonRegistry):
    """One ``<key>.json`` file per entry in a shared directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _entry_file(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def _ensure_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Shared between users on the same machine, like /tmp itself.
            os.chmod(self.directory, 0o1777)
        except PermissionError:
            pass
        except OSError as exc:
            raise RegistryError(
                f"Cannot create registry directory {self.directory}: {exc}"
            ) from exc

    def _read(self, path: Path) -> RegistryEntry | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return RegistryEntry.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            return None

    def get(self, key: str) -> RegistryEntry | None:
        return self._read(self._entry_file(key))

    def put(self, entry: RegistryEntry) -> None:
        self._ensure_directory()
        target = self._entry_file(entry.key)
        temp = target.with_suffix(f".json.{os.getpid()}.tmp")
        try:
            temp.write_text(json.dumps(entry.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(temp, target)
        except OSError as exc:
            raise RegistryError(f"Cannot write registry entry {target}: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            self._entry_file(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise RegistryError(f"Cannot remove registry entry {key}: {exc}") from exc

    def entries(self) -> list[RegistryEntry]:
        if not self.directory.is_dir():
            return []
        found: list[RegistryEntry] = []
        for path in sorted(self.directory.glob("*.json")):
            entry = self._read(path)
            if entry is not None:
                found.append(entry)
        return found

    def log_path(self, key: str) -> Path:
        self._ensure_directory()
        return self.directory / f"{key}.log"
