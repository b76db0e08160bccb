from __future__ import annotations

import math
import os
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from ralph.registry import DaemonRegistry, RegistryEntry
from ralph.tasklist import RalphError

DaemonEventHook = Callable[[dict[str, Any]], None]

DAEMON_FLAG = "--daemon"


class DaemonError(RalphError):
    """Raised when a daemon cannot be managed."""


class AlreadyRunningError(DaemonError):
    def __init__(self, entry: RegistryEntry) -> None:
        super().__init__(
            f"Ralph is already running for {entry.project} ({entry.branch}) "
            f"with PID {entry.pid}. Log: {entry.log_path}"
        )
        self.entry = entry


class StartupFailureError(DaemonError):
    """Raised when the daemon exits during its startup grace period."""


class SpawnedProcess(Protocol):
    pid: int

    def poll(self) -> int | None: ...


@dataclass(slots=True)
class DaemonInvocation:
    argv: list[str]
    cwd: Path
    project: str
    branch: str


@dataclass(slots=True)
class DaemonStatus:
    key: str
    running: bool
    pid: int | None = None
    log_path: Path | None = None
    project: str | None = None
    branch: str | None = None
    started_at: str | None = None
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "running": self.running,
            "pid": self.pid,
            "log_path": str(self.log_path) if self.log_path else None,
            "project": self.project,
            "branch": self.branch,
            "started_at": self.started_at,
            "stale": self.stale,
        }


@dataclass(slots=True)
class StopReport:
    key: str
    was_running: bool
    pid: int | None = None
    confirmed: bool = False
    stale: bool = False


@dataclass(slots=True)
class ProcessControl:
    """Spawns detached processes and checks or signals them by PID."""

    extra_env: dict[str, str] = field(default_factory=dict)

    def spawn(self, argv: list[str], cwd: Path, log_path: Path) -> SpawnedProcess:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env.update(self.extra_env)
        log_handle = log_path.open("a", encoding="utf-8")
        try:
            return subprocess.Popen(
                argv,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                env=env,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise DaemonError(f"Cannot start daemon: {exc}") from exc
        finally:
            log_handle.close()

    @staticmethod
    def is_alive(pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @staticmethod
    def terminate(pid: int) -> None:
        # Daemons lead their own session, so the agent they run goes down too.
        try:
            os.killpg(pid, signal.SIGTERM)
            return
        except (ProcessLookupError, PermissionError):
            pass
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass


def strip_daemon_flag(argv: list[str]) -> list[str]:
    return [arg for arg in argv if arg != DAEMON_FLAG]


class DaemonSupervisor:
    def __init__(
        self,
        registry: DaemonRegistry,
        *,
        process_control: ProcessControl | None = None,
        startup_grace_seconds: float = 2.0,
        stop_timeout_seconds: float = 10.0,
        stop_poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        event_hook: DaemonEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.process_control = process_control or ProcessControl()
        self.startup_grace_seconds = startup_grace_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.stop_poll_interval = stop_poll_interval
        self.sleep = sleep
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _live_entry(self, key: str) -> tuple[RegistryEntry | None, bool]:
        """Return ``(entry, stale)``; stale entries are purged on the way."""
        entry = self.registry.get(key)
        if entry is None:
            return None, False
        if self.process_control.is_alive(entry.pid):
            return entry, False
        self.registry.remove(key)
        self._emit({"event": "daemon_stale_purged", "key": key, "pid": entry.pid})
        return None, True

    @staticmethod
    def _running_status(entry: RegistryEntry) -> DaemonStatus:
        return DaemonStatus(
            key=entry.key,
            running=True,
            pid=entry.pid,
            log_path=entry.log_path,
            project=entry.project,
            branch=entry.branch,
            started_at=entry.started_at,
        )

    def start(self, key: str, invocation: DaemonInvocation) -> DaemonStatus:
        existing, _ = self._live_entry(key)
        if existing is not None:
            raise AlreadyRunningError(existing)

        argv = strip_daemon_flag(invocation.argv)
        log_path = self.registry.log_path(key)
        process = self.process_control.spawn(argv, invocation.cwd, log_path)
        entry = RegistryEntry(
            key=key,
            pid=process.pid,
            log_path=log_path,
            project=invocation.project,
            branch=invocation.branch,
            started_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
            argv=argv,
        )
        self.registry.put(entry)
        self._emit({"event": "daemon_spawned", "key": key, "pid": process.pid})

        self.sleep(self.startup_grace_seconds)
        if process.poll() is not None or not self.process_control.is_alive(process.pid):
            self.registry.remove(key)
            raise StartupFailureError(
                f"Daemon exited during startup (PID {process.pid}). Check {log_path}"
            )
        self._emit({"event": "daemon_started", "key": key, "pid": process.pid})
        return self._running_status(entry)

    def status(self, key: str) -> DaemonStatus:
        entry, stale = self._live_entry(key)
        if entry is None:
            return DaemonStatus(key=key, running=False, stale=stale)
        return self._running_status(entry)

    def stop(self, key: str) -> StopReport:
        entry, stale = self._live_entry(key)
        if entry is None:
            return StopReport(key=key, was_running=False, stale=stale)

        self.process_control.terminate(entry.pid)
        self._emit({"event": "daemon_terminate_sent", "key": key, "pid": entry.pid})
        confirmed = False
        polls = max(1, math.ceil(self.stop_timeout_seconds / max(self.stop_poll_interval, 0.001)))
        for _ in range(polls):
            if not self.process_control.is_alive(entry.pid):
                confirmed = True
                break
            self.sleep(self.stop_poll_interval)
        else:
            confirmed = not self.process_control.is_alive(entry.pid)

        self.registry.remove(key)
        self._emit(
            {"event": "daemon_stopped", "key": key, "pid": entry.pid, "confirmed": confirmed}
        )
        return StopReport(key=key, was_running=True, pid=entry.pid, confirmed=confirmed)

    def list(self) -> list[DaemonStatus]:
        running: list[DaemonStatus] = []
        for entry in self.registry.entries():
            if self.process_control.is_alive(entry.pid):
                running.append(self._running_status(entry))
                continue
            self.registry.remove(entry.key)
            self._emit({"event": "daemon_stale_purged", "key": entry.key, "pid": entry.pid})
        return running
