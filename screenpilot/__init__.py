"""screenpilot package root exposing the agent loop and provider factory."""

from screenpilot.src.agent.loop_runner import AgentCallbacks, AgentLoop, RunOutcome, RunResult
from screenpilot.src.llm.factory import create_provider
from screenpilot.src.utils.config import CONFIG, AppConfig

__all__ = [
    "AgentCallbacks",
    "AgentLoop",
    "RunOutcome",
    "RunResult",
    "create_provider",
    "CONFIG",
    "AppConfig",
]
