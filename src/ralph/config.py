from __future__ import annotations

import json
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentName = Literal["kimi", "claude", "codex"]
EffortLevel = Literal["low", "medium", "high"]

AGENT_NAMES: tuple[str, ...] = ("kimi", "claude", "codex")
EFFORT_LEVELS: tuple[str, ...] = ("low", "medium", "high")


@dataclass(slots=True)
class AgentConfig:
    name: AgentName = "kimi"
    model: str = ""
    effort: str = ""
    binary: str = ""


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 10
    iteration_delay_seconds: float = 2.0
    prompt_file: str = ""
    retrospective_prompt_file: str = ""
    retrospective_report: str = "RETROSPECTIVE.md"


@dataclass(slots=True)
class FilesConfig:
    task_list: str = "prd.json"
    progress: str = "progress.txt"
    archive_dir: str = "archive"
    log_dir: str = "logs"
    last_branch: str = ".last-branch"


@dataclass(slots=True)
class WorkspaceConfig:
    root: str = "~/worktrees"

    def resolved_root(self) -> Path:
        return Path(self.root).expanduser().resolve()


@dataclass(slots=True)
class DaemonConfig:
    registry_dir: str = ""
    startup_grace_seconds: float = 2.0
    stop_timeout_seconds: float = 10.0
    stop_poll_interval: float = 1.0

    def resolved_registry_dir(self) -> Path:
        if self.registry_dir:
            return Path(self.registry_dir).expanduser().resolve()
        return Path(tempfile.gettempdir()) / "ralph-daemons"


@dataclass(slots=True)
class RalphConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    files: FilesConfig = field(default_factory=FilesConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)

    @classmethod
    def default(cls) -> RalphConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> RalphConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            loop=LoopConfig(**data.get("loop", {})),
            files=FilesConfig(**data.get("files", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            daemon=DaemonConfig(**data.get("daemon", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "name": self.agent.name,
                "model": self.agent.model,
                "effort": self.agent.effort,
                "binary": self.agent.binary,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "iteration_delay_seconds": self.loop.iteration_delay_seconds,
                "prompt_file": self.loop.prompt_file,
                "retrospective_prompt_file": self.loop.retrospective_prompt_file,
                "retrospective_report": self.loop.retrospective_report,
            },
            "files": {
                "task_list": self.files.task_list,
                "progress": self.files.progress,
                "archive_dir": self.files.archive_dir,
                "log_dir": self.files.log_dir,
                "last_branch": self.files.last_branch,
            },
            "workspace": {
                "root": self.workspace.root,
            },
            "daemon": {
                "registry_dir": self.daemon.registry_dir,
                "startup_grace_seconds": self.daemon.startup_grace_seconds,
                "stop_timeout_seconds": self.daemon.stop_timeout_seconds,
                "stop_poll_interval": self.daemon.stop_poll_interval,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: RalphConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("agent", "loop", "files", "workspace", "daemon"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> RalphConfig:
    if not path.exists():
        return RalphConfig.default()
    return RalphConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: RalphConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
