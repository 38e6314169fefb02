from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from plansync.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy

    async def _collect(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            return [chunk async for chunk in backend.execute(system_prompt, user_prompt, context)]

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        chunks: list[str] | None = None
        for backend_name, backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    logger.info(
                        "Retrying %s backend (attempt %d) in %.2fs", backend_name, attempt, delay
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect(backend, system_prompt, user_prompt, context)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    logger.warning("%s backend attempt %d failed: %s", backend_name, attempt, exc)
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    logger.info("Fallback backend %s succeeded", backend_name)
                break
            if chunks is not None:
                break

        if chunks is None:
            summary = "; ".join(errors[-6:])
            raise BackendExecutionError(
                f"All backend attempts failed. {summary}",
                retriable=False,
            )
        for chunk in chunks:
            yield chunk
