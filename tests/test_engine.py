import asyncio
import json
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from ralph.agents import AgentBackend, AgentResult, KimiBackend
from ralph.engine import (
    CLEANUP_STORY_ID,
    UNKNOWN_STORY_ID,
    IterationEngine,
    Verdict,
    load_prompt,
)
from ralph.run_state import RunPaths
from ralph.tasklist import ConfigurationError, RalphError

Action = Callable[[Path], None] | None


def _write_prd(root: Path, passes: list[bool]) -> None:
    payload = {
        "project": "shop",
        "branchName": "ralph/login",
        "description": "",
        "userStories": [
            {"id": f"US-00{index + 1}", "title": "", "priority": index + 1, "passes": value}
            for index, value in enumerate(passes)
        ],
    }
    (root / "prd.json").write_text(json.dumps(payload), encoding="utf-8")


def _mark_passing(story_id: str) -> Callable[[Path], None]:
    def _apply(root: Path) -> None:
        path = root / "prd.json"
        payload = json.loads(path.read_text(encoding="utf-8"))
        for story in payload["userStories"]:
            if story["id"] == story_id:
                story["passes"] = True
        path.write_text(json.dumps(payload), encoding="utf-8")

    return _apply


class ScriptedAgent(AgentBackend):
    """Applies one scripted change to the workspace per invocation."""

    name = "scripted"

    def __init__(self, actions: list[Action] | None = None, exit_codes: list[int] | None = None):
        super().__init__("scripted")
        self.actions = list(actions or [])
        self.exit_codes = list(exit_codes or [])
        self.prompts: list[str] = []
        self.log_paths: list[Path] = []

    def build_command(self, prompt: str, working_directory: Path) -> list[str]:
        return [self.binary, prompt]

    async def run(self, prompt: str, working_directory: Path, log_path: Path) -> AgentResult:
        index = len(self.prompts)
        self.prompts.append(prompt)
        self.log_paths.append(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"invocation {index + 1}\n", encoding="utf-8")
        if index < len(self.actions) and self.actions[index] is not None:
            self.actions[index](working_directory)
        exit_code = self.exit_codes[index] if index < len(self.exit_codes) else 0
        return AgentResult(agent=self.name, exit_code=exit_code, log_path=log_path)


def _engine(
    root: Path,
    agent: AgentBackend,
    max_iterations: int,
    events: list[dict[str, Any]] | None = None,
    sleeps: list[float] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> IterationEngine:
    recorded = sleeps if sleeps is not None else []

    async def _sleep(seconds: float) -> None:
        recorded.append(seconds)

    paths = RunPaths.for_root(root)
    paths.log_dir.mkdir(parents=True, exist_ok=True)
    return IterationEngine(
        agent,
        paths,
        max_iterations=max_iterations,
        iteration_delay_seconds=2.0,
        prompt="work on the next story",
        retrospective_prompt="write a retrospective",
        event_hook=events.append if events is not None else None,
        sleep=_sleep,
        clock=clock or datetime.now,
    )


def test_completes_when_every_story_passes(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False, False])
    agent = ScriptedAgent([_mark_passing("US-001"), _mark_passing("US-002")])
    sleeps: list[float] = []

    summary = asyncio.run(_engine(tmp_path, agent, 3, sleeps=sleeps).run())

    assert summary.outcome is Verdict.COMPLETE
    assert summary.exit_code == 0
    assert summary.iterations == 2
    assert [record.story_id for record in summary.records] == ["US-001", "US-002"]
    assert [record.incomplete_after for record in summary.records] == [1, 0]
    assert summary.completed_stories == summary.total_stories == 2
    assert sleeps == [2.0]
    assert len(agent.prompts) == 3
    assert agent.prompts[0] == "work on the next story"
    assert agent.prompts[2].startswith("write a retrospective")
    assert "- Outcome: complete" in agent.prompts[2]
    assert summary.retrospective is not None
    assert summary.retrospective.log_path.name.startswith("retrospective-")


def test_exhausts_iterations_and_still_runs_partial_retrospective(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    before = (tmp_path / "prd.json").read_bytes()
    agent = ScriptedAgent()

    summary = asyncio.run(_engine(tmp_path, agent, 2).run())

    assert summary.outcome is Verdict.EXHAUSTED
    assert summary.exit_code == 1
    assert summary.iterations == 2
    assert summary.incomplete_ids == ["US-001"]
    assert len(agent.prompts) == 3
    assert "partial analysis" in agent.prompts[2]
    assert "- Incomplete stories: US-001" in agent.prompts[2]
    assert (tmp_path / "prd.json").read_bytes() == before


def test_failed_iteration_reselects_same_story(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    agent = ScriptedAgent([None, _mark_passing("US-001")], exit_codes=[1, 0])
    events: list[dict[str, Any]] = []

    summary = asyncio.run(_engine(tmp_path, agent, 3, events=events).run())

    assert summary.outcome is Verdict.COMPLETE
    assert [record.story_id for record in summary.records] == ["US-001", "US-001"]
    assert [record.ok for record in summary.records] == [False, True]
    names = [event["event"] for event in events]
    assert names.count("iteration_failed") == 1
    assert names.count("iteration_finished") == 1


def test_retrospective_failure_does_not_change_exit_code(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    agent = ScriptedAgent([_mark_passing("US-001")], exit_codes=[0, 2])

    summary = asyncio.run(_engine(tmp_path, agent, 1).run())

    assert summary.exit_code == 0
    assert summary.retrospective is not None
    assert summary.retrospective.ok is False


def test_all_passing_runs_single_cleanup_pass(tmp_path: Path) -> None:
    _write_prd(tmp_path, [True, True])
    agent = ScriptedAgent()

    summary = asyncio.run(_engine(tmp_path, agent, 5).run())

    assert summary.outcome is Verdict.COMPLETE
    assert summary.iterations == 1
    assert summary.records[0].story_id == CLEANUP_STORY_ID
    assert agent.log_paths[0].name.startswith(f"{CLEANUP_STORY_ID}-")


def test_log_names_stay_unique_within_one_second(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    agent = ScriptedAgent()
    frozen = datetime(2026, 1, 2, 3, 4, 5)

    asyncio.run(_engine(tmp_path, agent, 2, clock=lambda: frozen).run())

    assert [path.name for path in agent.log_paths] == [
        "US-001-20260102-030405.log",
        "US-001-20260102-030405-2.log",
        "retrospective-20260102-030405.log",
    ]


def test_unreadable_task_list_counts_as_incomplete(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])

    def _corrupt(root: Path) -> None:
        (root / "prd.json").write_text("{broken", encoding="utf-8")

    agent = ScriptedAgent([_corrupt])
    events: list[dict[str, Any]] = []

    summary = asyncio.run(_engine(tmp_path, agent, 2, events=events).run())

    assert summary.outcome is Verdict.EXHAUSTED
    assert summary.records[0].incomplete_after is None
    assert summary.records[1].story_id == UNKNOWN_STORY_ID
    assert "task_list_unreadable" in [event["event"] for event in events]


def test_regressed_passes_are_reported(tmp_path: Path) -> None:
    _write_prd(tmp_path, [True, False])

    def _regress(root: Path) -> None:
        _write_prd(root, [False, False])

    events: list[dict[str, Any]] = []
    asyncio.run(_engine(tmp_path, ScriptedAgent([_regress]), 1, events=events).run())

    regressions = [event for event in events if event["event"] == "passes_regressed"]
    assert regressions == [{"event": "passes_regressed", "iteration": 1, "before": 1, "after": 0}]


def test_completed_count_never_decreases_with_honest_agent(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False, False, False])
    agent = ScriptedAgent(
        [_mark_passing("US-001"), None, _mark_passing("US-002"), _mark_passing("US-003")]
    )

    summary = asyncio.run(_engine(tmp_path, agent, 10).run())

    counts = [record.completed_after for record in summary.records]
    assert counts == sorted(counts)
    assert counts[-1] == 3


def test_missing_agent_binary_is_a_failed_iteration(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    agent = KimiBackend(str(tmp_path / "missing-kimi"))

    summary = asyncio.run(_engine(tmp_path, agent, 1).run())

    assert summary.outcome is Verdict.EXHAUSTED
    assert summary.records[0].exit_code == 127
    assert "binary not found" in (summary.records[0].error or "")


def test_missing_task_list_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        asyncio.run(_engine(tmp_path, ScriptedAgent(), 1).run())


def test_priority_mismatch_is_flagged(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False, False])
    payload = json.loads((tmp_path / "prd.json").read_text(encoding="utf-8"))
    payload["userStories"][0]["priority"] = 9
    (tmp_path / "prd.json").write_text(json.dumps(payload), encoding="utf-8")
    events: list[dict[str, Any]] = []

    asyncio.run(_engine(tmp_path, ScriptedAgent(), 1, events=events).run())

    assert "priority_order_mismatch" in [event["event"] for event in events]


def test_bundled_prompts_load(tmp_path: Path) -> None:
    assert "prd.json" in load_prompt("prompt.md")
    assert "retrospective" in load_prompt("retrospective.md").lower()

    custom = tmp_path / "custom.md"
    custom.write_text("custom payload", encoding="utf-8")
    assert load_prompt("prompt.md", custom) == "custom payload"

    with pytest.raises(ConfigurationError):
        load_prompt("prompt.md", tmp_path / "absent.md")


def test_non_executable_agent_is_a_failed_iteration(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    binary = tmp_path / "kimi"
    binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    binary.chmod(0o644)

    summary = asyncio.run(_engine(tmp_path, KimiBackend(str(binary)), 2).run())

    assert summary.outcome is Verdict.EXHAUSTED
    assert summary.iterations == 2
    assert [record.exit_code for record in summary.records] == [127, 127]
    assert all("could not be started" in (record.error or "") for record in summary.records)
    assert summary.retrospective is not None
    assert summary.retrospective.ok is False


def test_verify_without_agent_result_is_an_error(tmp_path: Path) -> None:
    _write_prd(tmp_path, [False])
    engine = _engine(tmp_path, ScriptedAgent(), 1)

    with pytest.raises(RalphError, match="before the agent was invoked"):
        asyncio.run(engine._verify())
