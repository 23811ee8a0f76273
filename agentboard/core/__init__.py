"""Core modules for the agentboard orchestration engine."""

from agentboard.core.controller import FeatureController, ReconcileReport
from agentboard.core.errors import (
    ExternalError,
    GuardError,
    OrchestrationError,
    ValidationError,
)
from agentboard.core.events import EventBus
from agentboard.core.lifecycle import Command, InvalidTransition, transition
from agentboard.core.models import (
    CommitResult,
    CommitStatus,
    DiffResult,
    Feature,
    FeatureStatus,
    Workspace,
)
from agentboard.core.resolver import ResolutionResult, resolve_order
from agentboard.core.state import Database, Event, EventType

__all__ = [
    "Command",
    "CommitResult",
    "CommitStatus",
    "Database",
    "DiffResult",
    "Event",
    "EventBus",
    "EventType",
    "ExternalError",
    "Feature",
    "FeatureController",
    "FeatureStatus",
    "GuardError",
    "InvalidTransition",
    "OrchestrationError",
    "ReconcileReport",
    "ResolutionResult",
    "ValidationError",
    "Workspace",
    "resolve_order",
    "transition",
]
