"""Data models for the feature orchestration engine.

Uses Pydantic for schema-enforced persisted records. Runtime-only objects
(sessions, cancel tokens) live next to the component that owns them.
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_PRIORITY = 2


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class FeatureStatus(str, Enum):
    """Lifecycle status of a feature on the board."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    COMPLETED = "completed"
    DELETED = "deleted"


# A dependency in one of these states no longer blocks its dependents
SATISFIED_STATUSES = frozenset({FeatureStatus.VERIFIED, FeatureStatus.COMPLETED})


class RunState(str, Enum):
    """Run state of an agent session."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Feature(BaseModel):
    """A unit of work tracked on the board."""

    id: str
    title: str = ""
    description: str = ""
    category: str = ""
    status: FeatureStatus = FeatureStatus.BACKLOG
    priority: int = DEFAULT_PRIORITY
    dependencies: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    workspace_ref: str | None = None  # branch name of the active workspace
    session_ref: str | None = None
    workspace_history: list[str] = Field(default_factory=list)
    image_paths: list[str] = Field(default_factory=list)
    summary: str | None = None
    last_commit: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("dependencies")
    @classmethod
    def _dedupe_dependencies(cls, value: list[str]) -> list[str]:
        # Ordered set: keep first occurrence
        return list(dict.fromkeys(value))

    @property
    def is_satisfied_status(self) -> bool:
        return self.status in SATISFIED_STATUSES


class Workspace(BaseModel):
    """An isolated git worktree bound to one feature."""

    path: Path
    branch_name: str
    feature_id: str
    base_revision: str
    # True only when allocate() created the branch itself
    created_branch: bool = False


class CommitStatus(str, Enum):
    """Outcome of a workspace commit."""

    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"  # clean tree, branch ahead of base
    NOTHING_TO_COMMIT = "nothing_to_commit"
    FAILED = "failed"


class CommitResult(BaseModel):
    """Typed result of staging and committing a workspace."""

    status: CommitStatus
    commit_sha: str | None = None
    message: str = ""
    files: list[str] = Field(default_factory=list)
    error: str | None = None
    clean: bool = False

    @property
    def ok(self) -> bool:
        return self.clean and self.status in (
            CommitStatus.COMMITTED,
            CommitStatus.ALREADY_COMMITTED,
        )


class FileStatus(BaseModel):
    """Structured status for one path from `git status --porcelain`."""

    path: str
    status: str  # primary status code: M, A, D, R, C, U, ?
    index_status: str = " "
    worktree_status: str = " "
    status_text: str = ""
    old_path: str | None = None
    is_binary: bool = False


class DiffResult(BaseModel):
    """File statuses plus unified diff text for a workspace."""

    files: list[FileStatus] = Field(default_factory=list)
    diff: str = ""
    truncated: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.files)
