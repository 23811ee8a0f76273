"""AI provider interface: an opaque, cancellable stream of agent messages.

The supervisor only depends on AgentProvider.execute(), which yields
ProviderMessage objects until the turn ends. Two implementations:

- ClaudeCLIProvider: runs `claude -p` with stream-json input/output in the
  workspace directory. The prompt goes over stdin, never argv, so it is not
  visible in `ps`.
- MockProvider: deterministic stand-in used by tests and by
  AGENTBOARD_MOCK_AGENT=true. Writes a file into the workspace so there is
  something to review and commit.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from agentboard.core.config import BoardConfig, ConfigError
from agentboard.core.errors import ExternalError
from agentboard.core.prompt import PromptContent
from agentboard.core.utils import truncate_output

logger = logging.getLogger(__name__)


class ProviderError(ExternalError):
    """The provider process could not be run or failed."""

    pass


class MessageType(str, Enum):
    """Kinds of message a provider can yield."""

    TEXT = "text"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"


@dataclass
class ProviderMessage:
    """One item from a provider stream."""

    type: MessageType
    text: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    is_error: bool = False
    session_id: str | None = None  # provider-side conversation id, for resume


@dataclass
class ExecuteOptions:
    """Everything a provider needs for one turn."""

    prompt: PromptContent
    cwd: Path
    cancel_token: asyncio.Event
    model: str | None = None
    max_turns: int = 20
    allowed_tools: list[str] = field(default_factory=list)
    resume_session_id: str | None = None


class AgentProvider(Protocol):
    """Streaming execution capability."""

    name: str

    def execute(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]: ...


class ClaudeCLIProvider:
    """Run turns through the Claude Code CLI in print mode."""

    name = "claude"

    def __init__(self, executable: str = "claude", timeout: float | None = None):
        self.executable = executable
        self.timeout = timeout

    def _build_command(self, options: ExecuteOptions) -> list[str]:
        cmd = [
            self.executable,
            "-p",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(options.max_turns),
        ]
        if options.model:
            cmd += ["--model", options.model]
        if options.allowed_tools:
            cmd += ["--allowedTools", ",".join(options.allowed_tools)]
        if options.resume_session_id:
            cmd += ["--resume", options.resume_session_id]
        return cmd

    @staticmethod
    def _stdin_payload(prompt: PromptContent) -> bytes:
        content = prompt.content
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        message = {"type": "user", "message": {"role": "user", "content": content}}
        return (json.dumps(message) + "\n").encode()

    async def execute(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        if shutil.which(self.executable) is None:
            raise ProviderError(f"'{self.executable}' not found on PATH")

        cmd = self._build_command(options)
        logger.debug(f"Starting provider: {' '.join(cmd[:3])} ... in {options.cwd}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=options.cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=16 * 1024 * 1024,
            )
        except OSError as e:
            raise ProviderError(f"Cannot start {self.executable}: {e}") from e

        if proc.stdin is None or proc.stdout is None or proc.stderr is None:
            raise ProviderError(f"{self.executable} started without stdio pipes")
        # Drain stderr concurrently so a chatty process cannot block on a full pipe
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        try:
            proc.stdin.write(self._stdin_payload(options.prompt))
            await proc.stdin.drain()
            proc.stdin.close()

            while not options.cancel_token.is_set():
                if self.timeout is not None:
                    line = await asyncio.wait_for(proc.stdout.readline(), timeout=self.timeout)
                else:
                    line = await proc.stdout.readline()
                if not line:
                    break
                for message in parse_stream_line(line.decode(errors="replace")):
                    yield message

            returncode = await proc.wait()
            if returncode not in (0, None) and not options.cancel_token.is_set():
                stderr = await stderr_task
                raise ProviderError(
                    f"{self.executable} exited with {returncode}: "
                    f"{truncate_output(stderr.decode(errors='replace').strip())}"
                )
        finally:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()


def parse_stream_line(line: str) -> list[ProviderMessage]:
    """Translate one stream-json line into provider messages.

    Non-JSON lines are passed through as text.
    """
    line = line.strip()
    if not line:
        return []
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return [ProviderMessage(type=MessageType.TEXT, text=line)]
    if not isinstance(data, dict):
        return []

    kind = data.get("type")
    if kind == "assistant":
        messages = []
        for block in data.get("message", {}).get("content", []) or []:
            if block.get("type") == "text" and block.get("text"):
                messages.append(ProviderMessage(type=MessageType.TEXT, text=block["text"]))
            elif block.get("type") == "tool_use":
                messages.append(
                    ProviderMessage(
                        type=MessageType.TOOL_USE,
                        tool_name=block.get("name"),
                        tool_input=block.get("input") or {},
                    )
                )
        return messages
    if kind == "result":
        is_error = bool(data.get("is_error")) or data.get("subtype", "success") != "success"
        return [
            ProviderMessage(
                type=MessageType.RESULT,
                text=str(data.get("result") or data.get("subtype") or ""),
                is_error=is_error,
                session_id=data.get("session_id"),
            )
        ]
    if kind == "error":
        error = data.get("error")
        text = error.get("message", "") if isinstance(error, dict) else str(error or "")
        return [ProviderMessage(type=MessageType.ERROR, text=text, is_error=True)]
    return []


class MockProvider:
    """Scripted provider for tests and offline runs.

    Args:
        delay: Seconds to wait between messages
        hold: If given, the turn blocks here until it is set (or cancelled)
        error: If given, the turn ends with an ERROR message carrying this text
        write_file: Write MOCK_AGENT_OUTPUT.md into the workspace before finishing
    """

    name = "mock"
    OUTPUT_FILE = "MOCK_AGENT_OUTPUT.md"

    def __init__(
        self,
        delay: float = 0.0,
        hold: asyncio.Event | None = None,
        error: str | None = None,
        write_file: bool = True,
    ):
        self.delay = delay
        self.hold = hold
        self.error = error
        self.write_file = write_file
        self.calls: list[ExecuteOptions] = []

    async def _pause(self, options: ExecuteOptions) -> bool:
        """Sleep for the delay; returns False if cancelled meanwhile."""
        if self.delay:
            try:
                await asyncio.wait_for(options.cancel_token.wait(), timeout=self.delay)
            except asyncio.TimeoutError:
                pass
        return not options.cancel_token.is_set()

    async def execute(self, options: ExecuteOptions) -> AsyncIterator[ProviderMessage]:
        self.calls.append(options)
        yield ProviderMessage(type=MessageType.TEXT, text="Mock agent: reading the request")
        if not await self._pause(options):
            return

        if self.hold is not None:
            waiters = {
                asyncio.ensure_future(self.hold.wait()),
                asyncio.ensure_future(options.cancel_token.wait()),
            }
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in pending:
                waiter.cancel()
            if options.cancel_token.is_set():
                return

        if self.error:
            yield ProviderMessage(type=MessageType.ERROR, text=self.error, is_error=True)
            return

        yield ProviderMessage(
            type=MessageType.TOOL_USE,
            tool_name="Write",
            tool_input={"file_path": self.OUTPUT_FILE},
        )
        if self.write_file:
            target = Path(options.cwd) / self.OUTPUT_FILE
            previous = target.read_text() if target.exists() else ""
            target.write_text(f"{previous}# Mock agent output\n\n{options.prompt.text}\n")
        if not await self._pause(options):
            return

        yield ProviderMessage(
            type=MessageType.RESULT,
            text="Mock agent finished",
            session_id=f"mock-{len(self.calls)}",
        )


def get_provider(config: BoardConfig) -> AgentProvider:
    """Provider selected by configuration (mock wins if forced by env).

    Any name other than "mock" is the executable of a CLI that speaks the
    Claude stream-json protocol; "claude" is the default.
    """
    if config.use_mock_agent:
        return MockProvider()
    executable = (config.provider.name or "").strip()
    if not executable:
        raise ConfigError("provider.name must name an agent CLI or 'mock'")
    return ClaudeCLIProvider(executable=executable, timeout=config.provider.cli_timeout)
