from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Any

from ralph.agents.base import AgentBackend, AgentExecutionError, AgentResult
from ralph.run_state import RunPaths
from ralph.tasklist import ConfigurationError, RalphError, TaskList, load_task_list

EngineEventHook = Callable[[dict[str, Any]], None]

CLEANUP_STORY_ID = "cleanup"
UNKNOWN_STORY_ID = "unknown"
RETROSPECTIVE_LOG_PREFIX = "retrospective"
FAILED_LAUNCH_EXIT_CODE = 127


class EngineState(Enum):
    INIT = "init"
    SELECT_TASK = "select_task"
    INVOKE_AGENT = "invoke_agent"
    VERIFY = "verify"
    RETROSPECTIVE = "retrospective"
    DONE = "done"


class Verdict(Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    EXHAUSTED = "exhausted"


def load_prompt(name: str, override: str | Path | None = None) -> str:
    """Read an instruction payload from ``override`` or the bundled prompts."""
    if override:
        path = Path(override).expanduser()
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read prompt file {path}: {exc}") from exc
    return resources.files("ralph.prompts").joinpath(name).read_text(encoding="utf-8")


@dataclass(slots=True)
class IterationRecord:
    number: int
    story_id: str
    log_path: Path
    exit_code: int
    ok: bool
    started_at: str
    incomplete_after: int | None = None
    completed_after: int | None = None
    error: str | None = None


@dataclass(slots=True)
class RetrospectiveRecord:
    log_path: Path
    exit_code: int
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class RunSummary:
    outcome: Verdict
    iterations: int
    max_iterations: int
    total_stories: int
    completed_stories: int
    incomplete_ids: list[str]
    started_at: str
    ended_at: str
    records: list[IterationRecord] = field(default_factory=list)
    retrospective: RetrospectiveRecord | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome is Verdict.COMPLETE else 1


@dataclass(slots=True)
class _Cursor:
    iteration: int = 0
    story_id: str = UNKNOWN_STORY_ID
    started_at: str = ""
    result: AgentResult | None = None
    verdict: Verdict | None = None
    task_list: TaskList | None = None
    last_completed: int | None = None
    records: list[IterationRecord] = field(default_factory=list)
    retrospective: RetrospectiveRecord | None = None


class IterationEngine:
    """Select, invoke, verify until the task list is done or iterations run out.

    The engine only ever reads the task list. Stories flip to ``passes: true``
    as a side effect of the agent process, and every completion check reads
    the file again from disk.
    """

    def __init__(
        self,
        agent: AgentBackend,
        paths: RunPaths,
        *,
        max_iterations: int = 10,
        iteration_delay_seconds: float = 2.0,
        prompt: str | None = None,
        retrospective_prompt: str | None = None,
        retrospective_report: str = "RETROSPECTIVE.md",
        event_hook: EngineEventHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.agent = agent
        self.paths = paths
        self.max_iterations = max_iterations
        self.iteration_delay_seconds = iteration_delay_seconds
        self.prompt = prompt if prompt is not None else load_prompt("prompt.md")
        self.retrospective_prompt = (
            retrospective_prompt
            if retrospective_prompt is not None
            else load_prompt("retrospective.md")
        )
        self.retrospective_report = retrospective_report
        self.event_hook = event_hook
        self.sleep = sleep
        self.clock = clock
        self._cursor = _Cursor()
        self._handlers: dict[EngineState, Callable[[], Awaitable[EngineState]]] = {
            EngineState.INIT: self._init,
            EngineState.SELECT_TASK: self._select_task,
            EngineState.INVOKE_AGENT: self._invoke_agent,
            EngineState.VERIFY: self._verify,
            EngineState.RETROSPECTIVE: self._retrospective,
        }

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _now_iso(self) -> str:
        return self.clock().replace(microsecond=0).isoformat()

    def _log_path(self, label: str) -> Path:
        stamp = self.clock().strftime("%Y%m%d-%H%M%S")
        candidate = self.paths.log_dir / f"{label}-{stamp}.log"
        suffix = 2
        while candidate.exists():
            candidate = self.paths.log_dir / f"{label}-{stamp}-{suffix}.log"
            suffix += 1
        return candidate

    def _read_task_list(self) -> TaskList | None:
        try:
            return load_task_list(self.paths.task_list)
        except RalphError as exc:
            self._emit({"event": "task_list_unreadable", "error": str(exc)})
            return None

    async def _run_agent(self, prompt: str, log_path: Path) -> AgentResult:
        try:
            return await self.agent.run(prompt, self.paths.root, log_path)
        except AgentExecutionError as exc:
            return AgentResult(
                agent=self.agent.name,
                exit_code=exc.exit_code if exc.exit_code is not None else FAILED_LAUNCH_EXIT_CODE,
                log_path=log_path,
                error=str(exc),
            )

    async def _init(self) -> EngineState:
        if self.max_iterations < 1:
            raise ConfigurationError("max iterations must be at least 1.")
        task_list = load_task_list(self.paths.task_list)
        self._cursor.task_list = task_list
        self._cursor.last_completed = task_list.completed_count()
        self._emit(
            {
                "event": "run_started",
                "agent": self.agent.name,
                "max_iterations": self.max_iterations,
                "root": str(self.paths.root),
                "log_dir": str(self.paths.log_dir),
            }
        )
        if task_list.priority_order_mismatch():
            self._emit(
                {
                    "event": "priority_order_mismatch",
                    "order": [story.id for story in task_list.stories],
                }
            )
        return EngineState.SELECT_TASK

    async def _select_task(self) -> EngineState:
        cursor = self._cursor
        cursor.iteration += 1
        cursor.started_at = self._now_iso()
        task_list = self._read_task_list()
        if task_list is None:
            cursor.story_id = UNKNOWN_STORY_ID
        else:
            story = task_list.first_incomplete()
            cursor.story_id = story.id if story is not None else CLEANUP_STORY_ID
        self._emit(
            {
                "event": "iteration_started",
                "iteration": cursor.iteration,
                "max_iterations": self.max_iterations,
                "story_id": cursor.story_id,
            }
        )
        return EngineState.INVOKE_AGENT

    async def _invoke_agent(self) -> EngineState:
        cursor = self._cursor
        log_path = self._log_path(cursor.story_id)
        result = await self._run_agent(self.prompt, log_path)
        cursor.result = result
        self._emit(
            {
                "event": "iteration_finished" if result.ok else "iteration_failed",
                "iteration": cursor.iteration,
                "story_id": cursor.story_id,
                "exit_code": result.exit_code,
                "log_path": str(log_path),
                "error": result.error,
            }
        )
        if not log_path.exists():
            self._emit({"event": "log_missing", "log_path": str(log_path)})
        return EngineState.VERIFY

    async def _verify(self) -> EngineState:
        cursor = self._cursor
        task_list = self._read_task_list()
        incomplete: int | None = None
        completed: int | None = None
        if task_list is not None:
            cursor.task_list = task_list
            incomplete = len(task_list.incomplete())
            completed = task_list.completed_count()
            if cursor.last_completed is not None and completed < cursor.last_completed:
                self._emit(
                    {
                        "event": "passes_regressed",
                        "iteration": cursor.iteration,
                        "before": cursor.last_completed,
                        "after": completed,
                    }
                )
            cursor.last_completed = completed

        result = cursor.result
        if result is None:
            raise RalphError("Verify reached before the agent was invoked.")
        cursor.records.append(
            IterationRecord(
                number=cursor.iteration,
                story_id=cursor.story_id,
                log_path=result.log_path,
                exit_code=result.exit_code,
                ok=result.ok,
                started_at=cursor.started_at,
                incomplete_after=incomplete,
                completed_after=completed,
                error=result.error,
            )
        )

        if incomplete == 0:
            cursor.verdict = Verdict.COMPLETE
        elif cursor.iteration < self.max_iterations:
            cursor.verdict = Verdict.CONTINUE
        else:
            cursor.verdict = Verdict.EXHAUSTED
        self._emit(
            {
                "event": "iteration_verified",
                "iteration": cursor.iteration,
                "incomplete": incomplete,
                "verdict": cursor.verdict.value,
            }
        )

        if cursor.verdict is Verdict.CONTINUE:
            self._emit({"event": "iteration_delay", "seconds": self.iteration_delay_seconds})
            await self.sleep(self.iteration_delay_seconds)
            return EngineState.SELECT_TASK
        return EngineState.RETROSPECTIVE

    def _retrospective_payload(self) -> str:
        cursor = self._cursor
        task_list = cursor.task_list
        total = len(task_list.stories) if task_list else 0
        completed = task_list.completed_count() if task_list else 0
        incomplete_ids = [story.id for story in task_list.incomplete()] if task_list else []
        outcome = (
            "complete"
            if cursor.verdict is Verdict.COMPLETE
            else "incomplete (iteration limit reached; partial analysis)"
        )
        lines = [
            self.retrospective_prompt.rstrip(),
            "",
            "## Run context",
            f"- Outcome: {outcome}",
            f"- Iterations used: {cursor.iteration} of {self.max_iterations}",
            f"- Stories complete: {completed}/{total}",
            f"- Incomplete stories: {', '.join(incomplete_ids) if incomplete_ids else 'none'}",
            f"- Iteration logs: {self.paths.log_dir}",
            f"- Write the report to: {self.retrospective_report}",
        ]
        return "\n".join(lines) + "\n"

    async def _retrospective(self) -> EngineState:
        cursor = self._cursor
        log_path = self._log_path(RETROSPECTIVE_LOG_PREFIX)
        self._emit(
            {
                "event": "retrospective_started",
                "partial": cursor.verdict is Verdict.EXHAUSTED,
                "log_path": str(log_path),
            }
        )
        result = await self._run_agent(self._retrospective_payload(), log_path)
        cursor.retrospective = RetrospectiveRecord(
            log_path=log_path,
            exit_code=result.exit_code,
            ok=result.ok,
            error=result.error,
        )
        self._emit(
            {
                "event": "retrospective_finished" if result.ok else "retrospective_failed",
                "exit_code": result.exit_code,
                "log_path": str(log_path),
                "report": str(self.paths.root / self.retrospective_report),
            }
        )
        return EngineState.DONE

    async def run(self) -> RunSummary:
        self._cursor = _Cursor()
        started_at = self._now_iso()
        state = EngineState.INIT
        while state is not EngineState.DONE:
            state = await self._handlers[state]()

        cursor = self._cursor
        task_list = cursor.task_list
        if cursor.verdict is None:
            raise RalphError("Run ended without a verdict.")
        summary = RunSummary(
            outcome=cursor.verdict,
            iterations=cursor.iteration,
            max_iterations=self.max_iterations,
            total_stories=len(task_list.stories) if task_list else 0,
            completed_stories=task_list.completed_count() if task_list else 0,
            incomplete_ids=[story.id for story in task_list.incomplete()] if task_list else [],
            started_at=started_at,
            ended_at=self._now_iso(),
            records=list(cursor.records),
            retrospective=cursor.retrospective,
        )
        self._emit(
            {
                "event": "run_finished",
                "outcome": summary.outcome.value,
                "iterations": summary.iterations,
                "exit_code": summary.exit_code,
            }
        )
        return summary
