from ralph.agents.base import (
    AgentBackend,
    AgentEventHook,
    AgentExecutionError,
    AgentProcessError,
    AgentResult,
)
from ralph.agents.claude import ClaudeCodeBackend
from ralph.agents.codex import CodexBackend
from ralph.agents.kimi import KimiBackend

AGENT_BACKENDS: dict[str, type[AgentBackend]] = {
    "kimi": KimiBackend,
    "claude": ClaudeCodeBackend,
    "codex": CodexBackend,
}


def build_agent(
    name: str,
    *,
    binary: str | None = None,
    model: str | None = None,
    effort: str | None = None,
    event_hook: AgentEventHook | None = None,
) -> AgentBackend:
    try:
        backend_cls = AGENT_BACKENDS[name]
    except KeyError as exc:
        raise AgentProcessError(f"Unsupported agent: {name}", agent=name) from exc
    return backend_cls(binary, model=model, effort=effort, event_hook=event_hook)


__all__ = [
    "AGENT_BACKENDS",
    "AgentBackend",
    "AgentEventHook",
    "AgentExecutionError",
    "AgentProcessError",
    "AgentResult",
    "ClaudeCodeBackend",
    "CodexBackend",
    "KimiBackend",
    "build_agent",
]
