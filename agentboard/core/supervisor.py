"""Agent session supervisor: one cancellable streaming run per feature.

start() launches an asyncio task bound to the workspace directory. Inputs
(the initial prompt and any follow-ups passed to send()) go through the
session inbox and run as consecutive provider turns; the session completes
once the inbox is empty after a turn.

Cancellation is cooperative. stop() sets the session's cancel token; the run
loop checks it at every suspension point (each provider message and each
turn boundary) and unwinds. The supervisor imposes no timeout of its own.

Provider output is published on the event bus as feature:progress and
feature:tool-use events. When a session ends, on_finish(session) is awaited
so the controller can apply the lifecycle transition; without on_finish the
supervisor emits feature:completed / feature:error / feature:stopped itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from agentboard.core.errors import OrchestrationError, classify_error, user_friendly_message
from agentboard.core.events import EventBus
from agentboard.core.models import RunState, Workspace, utc_now
from agentboard.core.prompt import build_prompt_with_images
from agentboard.core.provider import (
    AgentProvider,
    ExecuteOptions,
    MessageType,
    ProviderMessage,
)
from agentboard.core.state import EventType

logger = logging.getLogger(__name__)


class SessionError(OrchestrationError):
    """Session command could not be applied."""

    pass


class SessionAlreadyRunning(SessionError):
    """A running session already exists for the feature."""

    def __init__(self, feature_id: str, session_id: str):
        self.feature_id = feature_id
        self.session_id = session_id
        super().__init__(f"Feature '{feature_id}' already has a running session ({session_id})")


class SessionNotFound(SessionError):
    """No session with the given id."""

    pass


class AgentRunError(Exception):
    """The provider reported a failed turn."""

    pass


class SessionOutcome(str, Enum):
    """How a session ended."""

    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class QueuedMessage:
    """One input waiting in a session inbox."""

    text: str
    attachments: list[str] = field(default_factory=list)


@dataclass
class AgentSession:
    """A running or finished agent execution for one feature."""

    id: str
    feature_id: str
    workspace: Workspace
    run_state: RunState = RunState.IDLE
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)
    inbox: asyncio.Queue[QueuedMessage] = field(default_factory=asyncio.Queue)
    # Streaming waits on this; start(hold=True) leaves it clear until release()
    released: asyncio.Event = field(default_factory=asyncio.Event)
    # Set once the run loop has unwound (before on_finish runs)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    outcome: SessionOutcome | None = None
    error: str | None = None
    result_text: str | None = None
    provider_session_id: str | None = None
    turns: int = 0
    follow_up: bool = False
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None


SessionCallback = Callable[[AgentSession], Awaitable[None]]

_OUTCOME_EVENTS = {
    SessionOutcome.COMPLETED: EventType.FEATURE_COMPLETED,
    SessionOutcome.STOPPED: EventType.FEATURE_STOPPED,
    SessionOutcome.FAILED: EventType.FEATURE_ERROR,
}


class AgentSessionSupervisor:
    """Run, stream and cancel agent sessions, at most one running per feature."""

    def __init__(
        self,
        provider: AgentProvider,
        bus: EventBus,
        *,
        model: str | None = None,
        max_turns: int = 20,
        allowed_tools: list[str] | None = None,
        on_finish: SessionCallback | None = None,
    ):
        self.provider = provider
        self.bus = bus
        self.model = model
        self.max_turns = max_turns
        self.allowed_tools = list(allowed_tools or [])
        self.on_finish = on_finish
        self._sessions: dict[str, AgentSession] = {}
        # feature_id -> running session; the per-feature concurrency map
        self._active: dict[str, AgentSession] = {}

    # --- queries ---

    def get(self, session_id: str) -> AgentSession | None:
        return self._sessions.get(session_id)

    def session_for(self, feature_id: str) -> AgentSession | None:
        """Live (running or stopping) session for a feature."""
        return self._active.get(feature_id)

    def is_running(self, feature_id: str) -> bool:
        session = self._active.get(feature_id)
        return session is not None and session.run_state in (RunState.RUNNING, RunState.STOPPING)

    def running_features(self) -> list[str]:
        return [fid for fid in self._active if self.is_running(fid)]

    # --- commands ---

    async def start(
        self,
        feature_id: str,
        workspace: Workspace,
        prompt: str = "",
        attachments: list[str] | None = None,
        *,
        follow_up: bool = False,
        resume_session_id: str | None = None,
        hold: bool = False,
    ) -> str:
        """Start a session in the workspace and return its id.

        With hold=True the session is registered but produces no output until
        release() is called, so the caller can record the start first.

        Raises:
            SessionAlreadyRunning: If the feature already has a running session
        """
        existing = self._active.get(feature_id)
        if existing is not None:
            raise SessionAlreadyRunning(feature_id, existing.id)

        session = AgentSession(
            id=uuid.uuid4().hex,
            feature_id=feature_id,
            workspace=workspace,
            run_state=RunState.RUNNING,
            follow_up=follow_up,
            provider_session_id=resume_session_id,
        )
        session.inbox.put_nowait(QueuedMessage(prompt, list(attachments or [])))
        if not hold:
            session.released.set()
        # Claim the feature before the first await so a concurrent start is rejected
        self._active[feature_id] = session
        self._sessions[session.id] = session
        session.task = asyncio.create_task(self._run(session), name=f"agent-{feature_id}")
        logger.info(f"Started session {session.id} for {feature_id} in {workspace.path}")
        return session.id

    def send(self, session_id: str, message: str, attachments: list[str] | None = None) -> None:
        """Queue input for a running session. Returns immediately.

        Raises:
            SessionNotFound: Unknown session id
            SessionError: Session is not running
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No session '{session_id}'")
        if session.run_state != RunState.RUNNING:
            raise SessionError(
                f"Session '{session_id}' is {session.run_state.value}; cannot accept input"
            )
        session.inbox.put_nowait(QueuedMessage(message, list(attachments or [])))
        logger.debug(f"Queued follow-up for session {session_id}")

    def release(self, session_id: str) -> None:
        """Let a session started with hold=True begin streaming."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No session '{session_id}'")
        session.released.set()

    async def stop(self, session_id: str) -> None:
        """Cancel a session and wait for its run loop to unwind.

        Idempotent: stopping a stopped or unknown session does nothing.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug(f"stop() for unknown session {session_id}; ignoring")
            return
        if session.run_state == RunState.STOPPED:
            return
        if session.run_state == RunState.RUNNING:
            session.run_state = RunState.STOPPING
            logger.info(f"Stopping session {session_id} ({session.feature_id})")
        session.cancel_token.set()
        session.released.set()
        # Waiting on `done`, not the task, so a controller holding the feature
        # lock never waits on its own on_finish callback
        await session.done.wait()

    async def wait(self, session_id: str) -> AgentSession:
        """Wait until a session has fully finished, on_finish included."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No session '{session_id}'")
        if session.task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(session.task)
        return session

    async def shutdown(self) -> None:
        """Stop every live session."""
        for session in list(self._active.values()):
            await self.stop(session.id)

    # --- run loop ---

    async def _run(self, session: AgentSession) -> None:
        try:
            await session.released.wait()
            while not session.cancel_token.is_set():
                try:
                    message = session.inbox.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._run_turn(session, message)
            session.outcome = (
                SessionOutcome.STOPPED if session.cancel_token.is_set() else SessionOutcome.COMPLETED
            )
        except asyncio.CancelledError:
            session.outcome = SessionOutcome.STOPPED
            self._finish(session)
            raise
        except Exception as e:
            info = classify_error(e)
            if session.cancel_token.is_set() or info.is_cancellation or info.is_abort:
                session.outcome = SessionOutcome.STOPPED
            else:
                session.outcome = SessionOutcome.FAILED
                session.error = user_friendly_message(e)
                logger.error(
                    f"Session {session.id} ({session.feature_id}) failed "
                    f"[{info.type.value}]: {info.message}"
                )

        self._finish(session)
        await self._notify(session)

    def _finish(self, session: AgentSession) -> None:
        session.run_state = RunState.STOPPED
        session.finished_at = utc_now()
        if self._active.get(session.feature_id) is session:
            del self._active[session.feature_id]
        session.done.set()
        logger.info(
            f"Session {session.id} for {session.feature_id} ended: {session.outcome.value}"
            if session.outcome
            else f"Session {session.id} for {session.feature_id} ended"
        )

    async def _notify(self, session: AgentSession) -> None:
        if self.on_finish is not None:
            try:
                await self.on_finish(session)
            except Exception as e:
                logger.error(f"on_finish failed for session {session.id}: {e}")
            return

        payload = {"session_id": session.id}
        if session.error:
            payload["error"] = session.error
        if session.result_text:
            payload["summary"] = session.result_text
        await self.bus.emit_async(
            session.feature_id, _OUTCOME_EVENTS[session.outcome], payload
        )

    async def _run_turn(self, session: AgentSession, message: QueuedMessage) -> None:
        prompt = build_prompt_with_images(
            message.text,
            message.attachments,
            work_dir=session.workspace.path,
            include_image_paths=True,
        )
        options = ExecuteOptions(
            prompt=prompt,
            cwd=session.workspace.path,
            cancel_token=session.cancel_token,
            model=self.model,
            max_turns=self.max_turns,
            allowed_tools=self.allowed_tools,
            resume_session_id=session.provider_session_id,
        )
        session.turns += 1
        stream = self.provider.execute(options)
        try:
            while True:
                item = await self._next_or_cancel(stream, session.cancel_token)
                if item is None:
                    return
                await self._handle_message(session, item)
        finally:
            with contextlib.suppress(Exception):
                await stream.aclose()  # type: ignore[attr-defined]

    async def _next_or_cancel(
        self,
        stream: AsyncIterator[ProviderMessage],
        cancel_token: asyncio.Event,
    ) -> ProviderMessage | None:
        """Next provider message, or None when the stream ends or is cancelled."""

        async def pull() -> ProviderMessage | None:
            try:
                return await anext(stream)
            except StopAsyncIteration:
                return None

        if cancel_token.is_set():
            return None
        next_task = asyncio.ensure_future(pull())
        cancel_task = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            next_task.cancel()
            cancel_task.cancel()
            raise
        if next_task in done:
            cancel_task.cancel()
            return next_task.result()

        next_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await next_task
        return None

    async def _handle_message(self, session: AgentSession, message: ProviderMessage) -> None:
        fid = session.feature_id
        match message.type:
            case MessageType.TEXT:
                await self.bus.emit_async(
                    fid,
                    EventType.FEATURE_PROGRESS,
                    {"session_id": session.id, "content": message.text},
                )
            case MessageType.TOOL_USE:
                await self.bus.emit_async(
                    fid,
                    EventType.FEATURE_TOOL_USE,
                    {
                        "session_id": session.id,
                        "tool": message.tool_name,
                        "input": message.tool_input or {},
                    },
                )
            case MessageType.RESULT:
                if message.session_id:
                    session.provider_session_id = message.session_id
                if message.is_error:
                    raise AgentRunError(message.text or "Agent run failed")
                session.result_text = message.text
            case MessageType.ERROR:
                raise AgentRunError(message.text or "Agent reported an error")
