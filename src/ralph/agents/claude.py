from __future__ import annotations

from pathlib import Path

from ralph.agents.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def build_command(self, prompt: str, working_directory: Path) -> list[str]:
        # Claude resolves the project from its cwd; effort has no CLI switch.
        _ = working_directory
        command = [self.binary, "-p", prompt, "--dangerously-skip-permissions"]
        if self.model:
            command.extend(["--model", self.model])
        return command
