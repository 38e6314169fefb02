from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from plansync.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = logging.getLogger(__name__)


class CliAgentBackend(AgentBackend):
    """Streams text out of an agent CLI that emits JSON events on stdout."""

    name = "cli"
    default_binary = ""

    def __init__(self, binary: str | None = None, working_directory: Path | None = None) -> None:
        self.binary = binary or self.default_binary
        self.working_directory = working_directory

    def build_command(self, system_prompt: str, prompt: str, context: dict[str, Any]) -> list[str]:
        raise NotImplementedError

    @staticmethod
    def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        visible = {key: value for key, value in context.items() if not key.startswith("_")}
        if not visible:
            return user_prompt
        return (
            f"{user_prompt}\n\nContext JSON:\n"
            f"{json.dumps(visible, ensure_ascii=False, indent=2)}"
        )

    @staticmethod
    def _text_blocks(content: list[Any]) -> str:
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict)
            and item.get("type", "text") == "text"
            and isinstance(item.get("text"), str)
        )

    @classmethod
    def _extract_content(cls, event: dict[str, Any]) -> str:
        # Tool results echoed back to the agent.
        if event.get("type") == "user":
            return ""
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return cls._text_blocks(content)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            inner = message.get("content")
            if isinstance(inner, str):
                return inner
            if isinstance(inner, list):
                text = cls._text_blocks(inner)
                return text if not text or text.endswith("\n") else f"{text}\n"
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _cwd(self, context: dict[str, Any]) -> str | None:
        override = context.get("_working_directory")
        if isinstance(override, str) and override.strip():
            return override
        return str(self.working_directory) if self.working_directory else None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(
            system_prompt, self.render_prompt(user_prompt, context), context
        )
        logger.debug("Starting %s backend: %s", self.name, command[:3])
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self._cwd(context),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        parse_buffer = ""
        streamed = False
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield line + "\n"
                continue

            if not isinstance(event, dict):
                continue
            if event.get("type") == "result":
                final = event.get("result")
                if not streamed and isinstance(final, str) and final:
                    streamed = True
                    yield final
                continue
            content = self._extract_content(event)
            if content:
                streamed = True
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, system_prompt: str, prompt: str, context: dict[str, Any]) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        command.extend(["--append-system-prompt", system_prompt])
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command


class CodexBackend(CliAgentBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, system_prompt: str, prompt: str, context: dict[str, Any]) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(prompt)
        return command
