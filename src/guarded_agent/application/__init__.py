"""Application layer."""

from guarded_agent.application.dispatcher import ToolDispatcher
from guarded_agent.application.errors import (
    AgentError,
    FatalError,
    OperationCancelledError,
    PermissionDeniedError,
    SessionNotFoundError,
)
from guarded_agent.application.orchestrator import LoopOutcome, LoopState, Orchestrator
from guarded_agent.application.session import SessionState, SessionStore

__all__ = [
    "AgentError",
    "FatalError",
    "LoopOutcome",
    "LoopState",
    "OperationCancelledError",
    "Orchestrator",
    "PermissionDeniedError",
    "SessionNotFoundError",
    "SessionState",
    "SessionStore",
    "ToolDispatcher",
]
