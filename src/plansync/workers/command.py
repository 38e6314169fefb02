from __future__ import annotations

import asyncio
import logging
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any

from plansync.models import Finding, Severity
from plansync.workers.base import WorkerOutcome, WorkRequest

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")


class CommandVerifier:
    """Verifies a task by running a shell command; a non-zero exit is a failure.

    ``{plan}``, ``{task}`` and ``{deliverables}`` in the command are replaced
    with the task being verified.
    """

    role = "verifier"

    def __init__(self, command: str, *, working_directory: Path, timeout_seconds: float = 900.0):
        self.command = command
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds

    def render(self, request: WorkRequest) -> str:
        return (
            self.command.replace("{plan}", shlex.quote(request.ref.plan_id))
            .replace("{task}", shlex.quote(request.ref.task_id))
            .replace("{deliverables}", " ".join(shlex.quote(d) for d in request.deliverables))
        )

    def _run(self, command_text: str) -> dict[str, Any]:
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        payload: str | list[str] = command_text
        if not used_shell:
            try:
                payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
        try:
            proc = subprocess.run(
                payload,
                cwd=self.working_directory,
                shell=used_shell,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return {
                "exit_code": 124,
                "stdout_tail": "",
                "stderr_tail": f"Command timed out after {self.timeout_seconds:.0f}s.",
            }
        except FileNotFoundError as exc:
            return {"exit_code": 127, "stdout_tail": "", "stderr_tail": str(exc)}
        return {
            "exit_code": proc.returncode,
            "stdout_tail": proc.stdout.strip()[-1000:],
            "stderr_tail": proc.stderr.strip()[-1000:],
        }

    async def execute(self, request: WorkRequest) -> WorkerOutcome:
        command_text = self.render(request).strip()
        if not command_text:
            return WorkerOutcome.failure("Verify command is empty.")
        result = await asyncio.to_thread(self._run, command_text)
        content = f"{result['stdout_tail']}\n{result['stderr_tail']}".strip()
        if result["exit_code"] == 0:
            return WorkerOutcome(success=True, content=content)
        logger.info(
            "Verify command failed for %s with exit code %s", request.ref.key, result["exit_code"]
        )
        tail = result["stderr_tail"] or result["stdout_tail"] or "no output"
        return WorkerOutcome(
            success=False,
            findings=[
                Finding(
                    severity=Severity.CRITICAL,
                    description=f"`{command_text}` exited with {result['exit_code']}: {tail}",
                )
            ],
            content=content,
        )
