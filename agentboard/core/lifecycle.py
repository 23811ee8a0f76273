"""Feature lifecycle state machine.

The transition function is pure: given a status and a command it returns the
next status, the side effects the controller must run, and the event to
record. It never touches git, sessions or storage. The controller executes
effects first and persists the new status only if every effect succeeded.

    backlog -> in_progress -> waiting_approval -> verified <-> completed
                   ^                 |               |
                   +---- follow_up --+---------------+

    any non-running status -> deleted (terminal)
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

from agentboard.core.errors import GuardError
from agentboard.core.models import FeatureStatus
from agentboard.core.state import EventType


class Command(str, Enum):
    """Inputs that drive the lifecycle."""

    START = "start"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    FOLLOW_UP = "follow_up"
    COMMIT = "commit"
    ARCHIVE = "archive"
    RESTORE = "restore"
    STOP = "stop"
    DELETE = "delete"


class Effect(str, Enum):
    """Side effects the controller runs for a transition, in order."""

    ENSURE_WORKSPACE = "ensure_workspace"
    START_SESSION = "start_session"
    STOP_SESSION = "stop_session"
    COMMIT_WORKSPACE = "commit_workspace"
    RELEASE_WORKSPACE = "release_workspace"  # archive; reclaim only if configured
    RECLAIM_WORKSPACE = "reclaim_workspace"
    REMOVE_RECORD = "remove_record"


class Transition(NamedTuple):
    """Result of transition(): unpacks as (status, effects, event)."""

    status: FeatureStatus
    effects: tuple[Effect, ...]
    event: EventType


class InvalidTransition(GuardError):
    """Command is not allowed from the current status."""

    def __init__(self, from_state: FeatureStatus, command: Command, reason: str | None = None):
        self.from_state = from_state
        self.command = command
        super().__init__(
            reason or f"Cannot {command.value} a feature in status '{from_state.value}'"
        )


S = FeatureStatus

# Each entry: trigger, source, dest, effects, event.
# "when" selects between entries sharing a trigger and source.
TRANSITIONS: list[dict] = [
    # Start a ready backlog feature, or retry one left in progress after a stop
    {
        "trigger": Command.START, "source": S.BACKLOG, "dest": S.IN_PROGRESS,
        "effects": (Effect.ENSURE_WORKSPACE, Effect.START_SESSION),
        "event": EventType.FEATURE_STARTED,
    },
    {
        "trigger": Command.START, "source": S.IN_PROGRESS, "dest": S.IN_PROGRESS,
        "effects": (Effect.ENSURE_WORKSPACE, Effect.START_SESSION),
        "event": EventType.FEATURE_STARTED,
    },
    # Agent run finished; workspace is retained for review
    {
        "trigger": Command.AGENT_COMPLETED, "source": S.IN_PROGRESS, "dest": S.WAITING_APPROVAL,
        "effects": (), "event": EventType.FEATURE_COMPLETED,
    },
    {
        "trigger": Command.AGENT_FAILED, "source": S.IN_PROGRESS, "dest": S.IN_PROGRESS,
        "effects": (), "event": EventType.FEATURE_ERROR,
    },
    # Follow-up instructions resume work in the retained workspace
    {
        "trigger": Command.FOLLOW_UP, "source": S.WAITING_APPROVAL, "dest": S.IN_PROGRESS,
        "effects": (Effect.ENSURE_WORKSPACE, Effect.START_SESSION),
        "event": EventType.FEATURE_FOLLOW_UP_STARTED,
    },
    {
        "trigger": Command.FOLLOW_UP, "source": S.VERIFIED, "dest": S.IN_PROGRESS,
        "effects": (Effect.ENSURE_WORKSPACE, Effect.START_SESSION),
        "event": EventType.FEATURE_FOLLOW_UP_STARTED,
    },
    {
        "trigger": Command.COMMIT, "source": S.WAITING_APPROVAL, "dest": S.VERIFIED,
        "effects": (Effect.COMMIT_WORKSPACE,), "event": EventType.FEATURE_VERIFIED,
    },
    {
        "trigger": Command.ARCHIVE, "source": S.VERIFIED, "dest": S.COMPLETED,
        "effects": (Effect.RELEASE_WORKSPACE,), "event": EventType.FEATURE_ARCHIVED,
    },
    {
        "trigger": Command.RESTORE, "source": S.COMPLETED, "dest": S.VERIFIED,
        "effects": (), "event": EventType.FEATURE_RESTORED,
    },
    # Force-stop: partial progress goes to review, otherwise stays for manual retry
    {
        "trigger": Command.STOP, "source": S.IN_PROGRESS, "dest": S.WAITING_APPROVAL,
        "when": "has_progress",
        "effects": (Effect.STOP_SESSION,), "event": EventType.FEATURE_STOPPED,
    },
    {
        "trigger": Command.STOP, "source": S.IN_PROGRESS, "dest": S.IN_PROGRESS,
        "effects": (Effect.STOP_SESSION,), "event": EventType.FEATURE_STOPPED,
    },
]

_DELETE = Transition(
    S.DELETED,
    (Effect.RECLAIM_WORKSPACE, Effect.REMOVE_RECORD),
    EventType.FEATURE_DELETED,
)


def transition(
    status: FeatureStatus,
    command: Command,
    *,
    running: bool = False,
    has_progress: bool = False,
) -> Transition:
    """Compute the next lifecycle step.

    Args:
        status: Current feature status
        command: Command being applied
        running: Whether an agent session for the feature is running
        has_progress: Whether the workspace holds uncommitted agent changes

    Returns:
        Transition(status, effects, event)

    Raises:
        InvalidTransition: If the command is illegal from this status
    """
    if command == Command.DELETE:
        if status == S.DELETED:
            raise InvalidTransition(status, command, "Feature is already deleted")
        if running:
            raise InvalidTransition(
                status, command, "Feature is running; force-stop it before deleting"
            )
        return _DELETE

    if command == Command.START and status == S.IN_PROGRESS and running:
        raise InvalidTransition(status, command, "Feature already has a running session")

    if command == Command.FOLLOW_UP and running:
        raise InvalidTransition(
            status, command, "Feature is running; send the message to the live session"
        )

    flags = {"has_progress": has_progress}
    for entry in TRANSITIONS:
        if entry["trigger"] != command or entry["source"] != status:
            continue
        condition = entry.get("when")
        if condition is not None and not flags[condition]:
            continue
        return Transition(entry["dest"], tuple(entry["effects"]), entry["event"])

    raise InvalidTransition(status, command)


def allowed_commands(status: FeatureStatus, *, running: bool = False) -> list[Command]:
    """Commands that transition() would accept from this status."""
    allowed = []
    for command in Command:
        try:
            transition(status, command, running=running)
        except InvalidTransition:
            continue
        allowed.append(command)
    return allowed
