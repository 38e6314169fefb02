from plansync.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from plansync.backends.cli import ClaudeCodeBackend, CliAgentBackend, CodexBackend
from plansync.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
