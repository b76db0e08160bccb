from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph.tasklist import RalphError

AgentEventHook = Callable[[dict[str, Any]], None]


class AgentExecutionError(RalphError):
    """Raised when an agent process cannot be run to completion."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process could not be started at all."""


@dataclass(slots=True)
class AgentResult:
    agent: str
    exit_code: int
    log_path: Path
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


class AgentBackend(ABC):
    """An external coding agent invoked once per iteration.

    The transcript (stdout and stderr) of each invocation is written to
    ``log_path``; nothing else from the process is read.
    """

    name: str = "agent"

    def __init__(
        self,
        binary: str | None = None,
        *,
        model: str | None = None,
        effort: str | None = None,
        event_hook: AgentEventHook | None = None,
    ) -> None:
        self.binary = binary or self.name
        self.model = model or None
        self.effort = effort or None
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, prompt: str, working_directory: Path) -> list[str]:
        """Return the argv that runs the agent on ``prompt``."""

    async def run(self, prompt: str, working_directory: Path, log_path: Path) -> AgentResult:
        command = self.build_command(prompt, working_directory)
        self._emit(
            {
                "event": "agent_start",
                "agent": self.name,
                "command": command[:2],
                "model": self.model,
                "log_path": str(log_path),
            }
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("wb") as log_handle:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(working_directory),
                    env=os.environ.copy(),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except FileNotFoundError as exc:
                raise AgentProcessError(
                    f"{self.name} binary not found: {self.binary}",
                    agent=self.name,
                ) from exc
            except OSError as exc:
                raise AgentProcessError(
                    f"{self.name} could not be started ({self.binary}): {exc}",
                    agent=self.name,
                ) from exc
            return_code = await process.wait()

        self._emit({"event": "agent_exit", "agent": self.name, "exit_code": return_code})
        return AgentResult(agent=self.name, exit_code=return_code, log_path=log_path)
