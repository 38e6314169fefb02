from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """An agent process gave no usable output for a worker step.

    ``retriable`` tells ``ResilientBackend`` whether another attempt may help.
    ``step`` and ``task_key`` are attached by the worker that made the call.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        step: str | None = None,
        task_key: str | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable
        self.step = step
        self.task_key = task_key

    def __str__(self) -> str:
        message = super().__str__()
        if self.step and self.task_key:
            return f"{self.step} step for {self.task_key}: {message}"
        return message


class BackendTimeoutError(BackendExecutionError):
    """The agent process outlived ``[backend] timeout_seconds``."""


class BackendProcessError(BackendExecutionError):
    """The agent binary could not be started or exposed no stdout."""


class AgentBackend(ABC):
    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream the agent's text for one prompt."""
