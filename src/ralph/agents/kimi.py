from __future__ import annotations

from pathlib import Path

from ralph.agents.base import AgentBackend


class KimiBackend(AgentBackend):
    name = "kimi"

    def build_command(self, prompt: str, working_directory: Path) -> list[str]:
        command = [self.binary, "--yolo"]
        if self.effort != "low":
            command.append("--thinking")
        command.extend(["--work-dir", str(working_directory)])
        if self.model:
            command.extend(["--model", self.model])
        command.extend(["--prompt", prompt])
        return command
