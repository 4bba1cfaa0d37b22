from autopilot.backends.base import (
    AgentBackend,
    AgentRequest,
    AgentResult,
    BackendExecutionError,
    BackendProcessError,
)
from autopilot.backends.claude import ClaudeCodeBackend
from autopilot.backends.opencode import OpenCodeBackend
from autopilot.backends.resilient import ResilientBackend, RetryPolicy, create_backend

__all__ = [
    "AgentBackend",
    "AgentRequest",
    "AgentResult",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "OpenCodeBackend",
    "ResilientBackend",
    "RetryPolicy",
    "create_backend",
]
