from __future__ import annotations

import json
from pathlib import Path

from ralph.agents.base import AgentBackend


class CodexBackend(AgentBackend):
    name = "codex"

    def build_command(self, prompt: str, working_directory: Path) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--dangerously-bypass-approvals-and-sandbox",
            "-C",
            str(working_directory),
        ]
        if self.model:
            command.extend(["-m", self.model.strip()])
        if self.effort:
            command.extend(["-c", f"model_reasoning_effort={json.dumps(self.effort)}"])
        command.append(prompt)
        return command
