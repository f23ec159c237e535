"""Agent orchestration: conversation memory, queue, state, retries and the loop.

``AgentLoop`` lives in :mod:`screenpilot.src.agent.loop_runner` and is
re-exported from the package root.
"""

from screenpilot.src.agent.action import Action, ActionParseError, extract_json, parse_action
from screenpilot.src.agent.conversation import MAX_HISTORY_LENGTH, ConversationHistory
from screenpilot.src.agent.delay import DelayController
from screenpilot.src.agent.history import ActionHistory, ActionRecord, HistoryManager, SessionHistory
from screenpilot.src.agent.queue import InstructionQueue, QueueFailureMode, QueueItemStatus, QueueManager
from screenpilot.src.agent.state import AgentState, AgentStateManager, AgentStatus, ConfirmationResponse

__all__ = [
    "Action",
    "ActionParseError",
    "extract_json",
    "parse_action",
    "MAX_HISTORY_LENGTH",
    "ConversationHistory",
    "DelayController",
    "ActionHistory",
    "ActionRecord",
    "HistoryManager",
    "SessionHistory",
    "InstructionQueue",
    "QueueFailureMode",
    "QueueItemStatus",
    "QueueManager",
    "AgentState",
    "AgentStateManager",
    "AgentStatus",
    "ConfirmationResponse",
]
