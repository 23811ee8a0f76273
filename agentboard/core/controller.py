"""Feature lifecycle controller: the top-level coordinator.

Every command follows the same shape:

1. take the feature's lock (one asyncio.Lock per feature id)
2. read the current record and ask lifecycle.transition() what to do
3. run the returned effects (workspace allocate/commit/reclaim, session
   start/stop); git, registry and database calls run in worker threads
4. persist the new status together with its event, then publish the event;
   a new session is held until its feature:started event is recorded

If an effect fails the record is not written, so a feature never ends up in
a half-applied state. Commands on different features never share a lock.
Dependency resolution works on a snapshot of the board and holds no lock.

On startup reconcile() lines up feature records, the branch registry and
`git worktree list` before any transition is accepted; session state lives
in memory only, so in-progress features lose their session ref on restart.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentboard.core.config import BoardConfig, load_config
from agentboard.core.errors import ExternalError, GuardError, OrchestrationError, ValidationError
from agentboard.core.events import EventBus
from agentboard.core.lifecycle import Command, Effect, Transition, transition
from agentboard.core.models import (
    CommitResult,
    CommitStatus,
    DiffResult,
    Feature,
    FeatureStatus,
    Workspace,
    utc_now,
)
from agentboard.core.prompt import build_feature_prompt, build_follow_up_prompt
from agentboard.core.provider import AgentProvider, get_provider
from agentboard.core.registry import BranchEntry, BranchRegistry
from agentboard.core.resolver import (
    ResolutionResult,
    blocking_dependencies,
    cycle_members_through,
    missing_dependencies,
    ready_features,
    resolve_order,
)
from agentboard.core.state import Database, Event, EventType
from agentboard.core.supervisor import (
    AgentSession,
    AgentSessionSupervisor,
    SessionOutcome,
)
from agentboard.core.utils import feature_dir, feature_images_dir, resolve_in, state_dir
from agentboard.core.workspace import WorkspaceManager, WorktreeError, WorktreeInfo

logger = logging.getLogger(__name__)

_FEATURE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_EDITABLE_FIELDS = ("title", "description", "category", "tags", "dependencies")


class CommitFailedError(ExternalError):
    """Workspace commit did not succeed; the feature stays in review."""

    def __init__(self, result: CommitResult):
        self.result = result
        super().__init__(result.error or f"Commit failed ({result.status.value})")


@dataclass
class ReconcileReport:
    """What reconcile() changed."""

    cleared_sessions: list[str] = field(default_factory=list)
    cleared_workspaces: list[str] = field(default_factory=list)
    restored_workspaces: list[str] = field(default_factory=list)
    dropped_registrations: list[str] = field(default_factory=list)
    registered_branches: list[str] = field(default_factory=list)
    removed_directories: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(
            (
                self.cleared_sessions,
                self.cleared_workspaces,
                self.restored_workspaces,
                self.dropped_registrations,
                self.registered_branches,
                self.removed_directories,
            )
        )


def generate_feature_id() -> str:
    return f"feature-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class FeatureController:
    """Apply lifecycle commands to features on one project board."""

    def __init__(
        self,
        project_root: Path | str,
        *,
        config: BoardConfig | None = None,
        db: Database | None = None,
        provider: AgentProvider | None = None,
        bus: EventBus | None = None,
        registry: BranchRegistry | None = None,
        workspaces: WorkspaceManager | None = None,
    ):
        self.project_root = Path(project_root).absolute()
        self.config = config or load_config(self.project_root)
        self.db = db or Database(state_dir(self.project_root) / "state.db")
        self.bus = bus or EventBus(self.db)
        self.registry = registry or BranchRegistry(state_dir(self.project_root))
        self.workspaces = workspaces or WorkspaceManager.from_config(
            self.project_root, self.config, self.registry
        )
        self.supervisor = AgentSessionSupervisor(
            provider or get_provider(self.config),
            self.bus,
            model=self.config.provider.model,
            max_turns=self.config.provider.max_turns,
            allowed_tools=self.config.provider.allowed_tools,
            on_finish=self._on_session_finished,
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._reconcile_lock = asyncio.Lock()
        self._reconciled = False

    # --- helpers ---

    def _lock_for(self, feature_id: str) -> asyncio.Lock:
        lock = self._locks.get(feature_id)
        if lock is None:
            lock = self._locks[feature_id] = asyncio.Lock()
        return lock

    def _require(self, feature_id: str) -> Feature:
        if not feature_id:
            raise ValidationError("Feature id is required")
        feature = self.db.get_feature(feature_id)
        if feature is None:
            raise ValidationError(f"Feature not found: {feature_id}")
        return feature

    async def _load(self, feature_id: str) -> Feature:
        return await asyncio.to_thread(self._require, feature_id)

    async def _workspace_for(self, feature_id: str) -> Workspace | None:
        return await asyncio.to_thread(self.workspaces.get, feature_id)

    async def _persist(
        self,
        feature: Feature,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
    ) -> Feature:
        feature.updated_at = utc_now()
        payload = payload or {}
        event_id = await asyncio.to_thread(self.db.save_feature, feature, event_type, payload)
        self.bus.publish(
            Event(
                id=event_id,
                feature_id=feature.id,
                event_type=event_type,
                status=feature.status.value,
                payload=payload,
            )
        )
        return feature

    async def _report_error(self, feature_id: str, error: Exception, action: str) -> None:
        logger.warning(f"{action} failed for {feature_id}: {error}")
        await self.bus.emit_async(
            feature_id,
            EventType.FEATURE_ERROR,
            {"action": action, "error": str(error), "error_type": type(error).__name__},
        )

    @staticmethod
    def _validate_dependencies(dependencies: list[str]) -> list[str]:
        if not isinstance(dependencies, list):
            raise ValidationError("dependencies must be a list of feature ids")
        for dep in dependencies:
            if not isinstance(dep, str) or not dep.strip():
                raise ValidationError(f"Malformed dependency id: {dep!r}")
        return [d.strip() for d in dependencies]

    async def _ensure_reconciled(self) -> None:
        if self._reconciled:
            return
        async with self._reconcile_lock:
            if not self._reconciled:
                await self.reconcile()

    # --- queries ---

    def get_feature(self, feature_id: str) -> Feature:
        return self._require(feature_id)

    def list_features(self) -> list[Feature]:
        return self.db.list_features()

    def resolve(self) -> ResolutionResult:
        """Resolver output over a snapshot of the board."""
        return resolve_order(self.db.list_features())

    def ready_features(self) -> list[Feature]:
        return ready_features(self.db.list_features())

    def events(self, feature_id: str, after_id: int = 0) -> list[Event]:
        return self.bus.replay(feature_id, after_id)

    async def diff(self, feature_id: str) -> DiffResult:
        """Status and diff of the feature's workspace."""
        await self._load(feature_id)
        workspace = await self._workspace_for(feature_id)
        if workspace is None:
            raise GuardError(f"Feature '{feature_id}' has no active workspace")
        return await asyncio.to_thread(self.workspaces.diff_and_status, workspace)

    # --- commands ---

    async def create_feature(
        self,
        title: str,
        description: str = "",
        *,
        category: str = "",
        priority: int | None = None,
        dependencies: list[str] | None = None,
        tags: list[str] | None = None,
        image_paths: list[str] | None = None,
        feature_id: str | None = None,
    ) -> Feature:
        """Add a feature to the backlog.

        Raises:
            ValidationError: Missing title/description, bad id or duplicate id
        """
        if not (title or "").strip() and not (description or "").strip():
            raise ValidationError("A feature needs a title or a description")
        if feature_id is not None:
            if not _FEATURE_ID_PATTERN.match(feature_id):
                raise ValidationError(f"Invalid feature id: {feature_id!r}")
            if await asyncio.to_thread(self.db.get_feature, feature_id) is not None:
                raise ValidationError(f"Feature already exists: {feature_id}")
        if priority is not None and not isinstance(priority, int):
            raise ValidationError(f"Priority must be an integer, got {priority!r}")

        feature = Feature(
            id=feature_id or generate_feature_id(),
            title=(title or "").strip(),
            description=description or "",
            category=category or "",
            dependencies=self._validate_dependencies(list(dependencies or [])),
            tags=list(tags or []),
        )
        if priority is not None:
            feature.priority = priority
        if image_paths:
            feature.image_paths = await asyncio.to_thread(
                self._store_attachments, feature.id, image_paths
            )

        await self._persist(feature, EventType.FEATURE_CREATED, {"title": feature.title})
        logger.info(f"Created feature {feature.id} ({feature.title})")
        return feature

    async def update_feature(self, feature_id: str, **changes: Any) -> Feature:
        """Edit descriptive fields or dependencies of a non-running feature."""
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            if self.supervisor.is_running(feature_id):
                raise GuardError(f"Feature '{feature_id}' is running; stop it before editing")
            if "dependencies" in changes:
                changes["dependencies"] = self._validate_dependencies(changes["dependencies"])
            updated = feature.model_copy(update=changes)
            # model_copy skips validation; re-validate to dedupe dependencies
            updated = Feature.model_validate(updated.model_dump())
            return await self._persist(
                updated, EventType.FEATURE_UPDATED, {"fields": sorted(changes)}
            )

    async def set_priority(self, feature_id: str, priority: int) -> Feature:
        if not isinstance(priority, int):
            raise ValidationError(f"Priority must be an integer, got {priority!r}")
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            feature.priority = priority
            return await self._persist(feature, EventType.FEATURE_UPDATED, {"priority": priority})

    async def reorder(self, feature_ids: list[str]) -> list[Feature]:
        """Assign priorities 1..n following the given order."""
        if len(set(feature_ids)) != len(feature_ids):
            raise ValidationError("Duplicate ids in reorder list")
        for fid in feature_ids:
            await self._load(fid)
        return [
            await self.set_priority(fid, position)
            for position, fid in enumerate(feature_ids, start=1)
        ]

    async def start_feature(self, feature_id: str) -> Feature:
        """Move a ready feature into progress: allocate workspace, start agent.

        Also retries a feature left in progress after a stop or failure.

        Raises:
            GuardError: Unsatisfied dependencies, dependency cycle, running session,
                wrong status
            WorktreeError: Workspace allocation failed (feature unchanged)
        """
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            step = transition(
                feature.status,
                Command.START,
                running=self.supervisor.is_running(feature_id),
            )
            if feature.status == FeatureStatus.BACKLOG:
                board = await asyncio.to_thread(self.db.list_features)
                cycle = cycle_members_through(feature_id, board)
                if cycle:
                    raise GuardError(
                        f"Feature '{feature_id}' is on a dependency cycle: {' -> '.join(cycle)}",
                        blocking=cycle,
                    )
                blocking = blocking_dependencies(feature, board)
                if blocking:
                    raise GuardError(
                        f"Feature '{feature_id}' is blocked by unfinished dependencies: "
                        f"{', '.join(blocking)}",
                        blocking=blocking,
                    )
                missing = missing_dependencies(board).get(feature_id)
                if missing:
                    logger.warning(
                        f"Starting {feature_id} with unknown dependencies treated as "
                        f"satisfied: {', '.join(missing)}"
                    )

            prompt = build_feature_prompt(feature)
            if feature.status == FeatureStatus.IN_PROGRESS and feature.error:
                prompt += f"\n\nThe previous attempt failed with: {feature.error}"
            return await self._apply(
                feature,
                step,
                prompt=prompt,
                attachments=feature.image_paths,
            )

    async def send_follow_up(
        self,
        feature_id: str,
        message: str,
        attachments: list[str] | None = None,
    ) -> Feature:
        """Send more instructions to a feature.

        If the agent is running the message is queued on the live session;
        otherwise a new session resumes work in the retained workspace.
        """
        if not (message or "").strip() and not attachments:
            raise ValidationError("Follow-up message is empty")
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            stored = await asyncio.to_thread(
                self._store_attachments, feature_id, attachments or []
            )

            session = self.supervisor.session_for(feature_id)
            if session is not None and self.supervisor.is_running(feature_id):
                self.supervisor.send(session.id, message, stored)
                await self.bus.emit_async(
                    feature_id,
                    EventType.FEATURE_FOLLOW_UP_STARTED,
                    {"session_id": session.id, "message": message, "queued": True},
                )
                return feature

            step = transition(feature.status, Command.FOLLOW_UP)
            if stored:
                feature.image_paths = list(dict.fromkeys(feature.image_paths + stored))
            return await self._apply(
                feature,
                step,
                prompt=build_follow_up_prompt(feature, message),
                attachments=stored,
                follow_up=True,
                payload={"message": message},
            )

    async def commit_feature(self, feature_id: str, message: str | None = None) -> Feature:
        """Approve a feature: commit its workspace and mark it verified.

        Raises:
            GuardError: Wrong status, no workspace, or nothing to commit
            CommitFailedError: git refused the commit (feature stays in review)
        """
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            step = transition(
                feature.status,
                Command.COMMIT,
                running=self.supervisor.is_running(feature_id),
            )
            return await self._apply(feature, step, commit_message=message)

    async def stop_feature(self, feature_id: str) -> Feature:
        """Force-stop a running feature.

        The feature moves to review if the agent left changes, otherwise it
        stays in progress for a manual retry. The workspace is kept.
        """
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            running = self.supervisor.is_running(feature_id)
            # Validate before touching the session
            transition(feature.status, Command.STOP, running=running)

            session = self.supervisor.session_for(feature_id)
            if session is not None:
                await self.supervisor.stop(session.id)
            elif feature.session_ref:
                await self.supervisor.stop(feature.session_ref)

            workspace = await self._workspace_for(feature_id)
            has_progress = False
            if workspace is not None:
                has_progress = await asyncio.to_thread(self.workspaces.has_progress, workspace)
            step = transition(
                feature.status, Command.STOP, running=running, has_progress=has_progress
            )
            # STOP_SESSION already ran above
            return await self._commit_transition(
                feature,
                step,
                session_ref=None,
                workspace_ref=feature.workspace_ref,
                payload={"has_progress": has_progress, "session_id": feature.session_ref},
            )

    async def archive_feature(self, feature_id: str) -> Feature:
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            step = transition(feature.status, Command.ARCHIVE)
            return await self._apply(feature, step)

    async def restore_feature(self, feature_id: str) -> Feature:
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            step = transition(feature.status, Command.RESTORE)
            return await self._apply(feature, step)

    async def delete_feature(self, feature_id: str, delete_branch: bool | None = None) -> None:
        """Remove a feature, its workspace and its stored assets.

        Raises:
            GuardError: If the feature is running (force-stop first)
        """
        await self._ensure_reconciled()
        async with self._lock_for(feature_id):
            feature = await self._load(feature_id)
            step = transition(
                feature.status,
                Command.DELETE,
                running=self.supervisor.is_running(feature_id),
            )
            if delete_branch is None:
                delete_branch = self.config.delete_branch_on_delete
            await self._apply(feature, step, delete_branch=delete_branch)
        self._locks.pop(feature_id, None)

    async def run_ready(self, limit: int | None = None) -> list[str]:
        """Auto mode: start ready features up to the concurrency limit.

        A feature that fails to start is reported and skipped; it never
        prevents the others from starting.

        Returns:
            Ids of the features started
        """
        await self._ensure_reconciled()
        capacity = (limit or self.config.max_concurrency) - len(self.supervisor.running_features())
        if capacity <= 0:
            return []

        started: list[str] = []
        for feature in await asyncio.to_thread(self.ready_features):
            if len(started) >= capacity:
                break
            try:
                await self.start_feature(feature.id)
            except OrchestrationError as e:
                logger.warning(f"Auto mode could not start {feature.id}: {e}")
                continue
            started.append(feature.id)
        return started

    async def wait_for_session(self, feature_id: str) -> AgentSession | None:
        """Wait until the feature's current session has finished and been applied."""
        feature = await self._load(feature_id)
        session_id = feature.session_ref
        session = self.supervisor.session_for(feature_id)
        if session is not None:
            session_id = session.id
        if not session_id or self.supervisor.get(session_id) is None:
            return None
        return await self.supervisor.wait(session_id)

    async def shutdown(self) -> None:
        """Stop every running feature (their workspaces are kept)."""
        for feature_id in self.supervisor.running_features():
            try:
                await self.stop_feature(feature_id)
            except OrchestrationError as e:
                logger.warning(f"Could not stop {feature_id} during shutdown: {e}")

    # --- effect execution ---

    async def _apply(
        self,
        feature: Feature,
        step: Transition,
        *,
        prompt: str = "",
        attachments: list[str] | None = None,
        follow_up: bool = False,
        commit_message: str | None = None,
        delete_branch: bool = False,
        payload: dict[str, Any] | None = None,
    ) -> Feature:
        """Run a transition's effects, then persist it. Caller holds the lock."""
        payload = dict(payload or {})
        workspace: Workspace | None = None
        allocated_here = False
        held_session: str | None = None
        session_ref = feature.session_ref
        workspace_ref = feature.workspace_ref

        for effect in step.effects:
            match effect:
                case Effect.ENSURE_WORKSPACE:
                    workspace = await self._workspace_for(feature.id)
                    if workspace is None:
                        try:
                            workspace = await asyncio.to_thread(
                                self.workspaces.allocate, feature.id
                            )
                        except (WorktreeError, GuardError) as e:
                            await self._report_error(feature.id, e, "allocate workspace")
                            raise
                        allocated_here = True
                    workspace_ref = workspace.branch_name

                case Effect.START_SESSION:
                    if workspace is None:
                        raise OrchestrationError(
                            f"No workspace for '{feature.id}' to start a session in"
                        )
                    try:
                        session_ref = await self.supervisor.start(
                            feature.id,
                            workspace,
                            prompt,
                            attachments,
                            follow_up=follow_up,
                            hold=True,
                        )
                    except Exception as e:
                        if allocated_here:
                            # Keep a branch that existed before this allocation
                            await asyncio.to_thread(
                                self.workspaces.reclaim, workspace, workspace.created_branch
                            )
                        await self._report_error(feature.id, e, "start session")
                        raise
                    held_session = session_ref
                    payload["session_id"] = session_ref
                    payload["workspace"] = str(workspace.path)

                case Effect.COMMIT_WORKSPACE:
                    result = await self._commit_workspace(feature, commit_message)
                    payload["commit"] = result.model_dump(mode="json")

                case Effect.RELEASE_WORKSPACE:
                    if self.config.reclaim_on_archive:
                        existing = await self._workspace_for(feature.id)
                        if existing is not None:
                            await asyncio.to_thread(self.workspaces.reclaim, existing, False)
                        workspace_ref = None

                case Effect.RECLAIM_WORKSPACE:
                    await self._reclaim_for_delete(feature, delete_branch)
                    workspace_ref = None

                case Effect.STOP_SESSION:
                    if session_ref:
                        await self.supervisor.stop(session_ref)
                    session_ref = None

                case Effect.REMOVE_RECORD:
                    await asyncio.to_thread(
                        shutil.rmtree, feature_dir(self.project_root, feature.id), ignore_errors=True
                    )
                    event_id = await asyncio.to_thread(self.db.delete_feature, feature.id, payload)
                    self.bus.publish(
                        Event(
                            id=event_id,
                            feature_id=feature.id,
                            event_type=step.event,
                            status=FeatureStatus.DELETED.value,
                            payload=payload,
                        )
                    )
                    logger.info(f"Deleted feature {feature.id}")
                    feature.status = FeatureStatus.DELETED
                    return feature

        try:
            updated = await self._commit_transition(
                feature,
                step,
                session_ref=session_ref,
                workspace_ref=workspace_ref,
                payload=payload,
            )
        except Exception:
            if held_session is not None:
                await self.supervisor.stop(held_session)
            raise
        if held_session is not None:
            # Output streams only after feature:started is recorded
            self.supervisor.release(held_session)
        return updated

    async def _commit_transition(
        self,
        feature: Feature,
        step: Transition,
        *,
        session_ref: str | None,
        workspace_ref: str | None,
        payload: dict[str, Any] | None = None,
    ) -> Feature:
        previous = feature.status
        feature.status = step.status
        feature.session_ref = session_ref
        feature.workspace_ref = workspace_ref
        if feature.workspace_ref and (
            not feature.workspace_history or feature.workspace_history[-1] != feature.workspace_ref
        ):
            feature.workspace_history.append(feature.workspace_ref)
        if step.event == EventType.FEATURE_STARTED:
            feature.error = None
        payload = dict(payload or {})
        payload["from"] = previous.value
        await self._persist(feature, step.event, payload)
        logger.info(f"{feature.id}: {previous.value} -> {feature.status.value} ({step.event.value})")
        return feature

    async def _commit_workspace(self, feature: Feature, message: str | None) -> CommitResult:
        workspace = await self._workspace_for(feature.id)
        if workspace is None:
            raise GuardError(f"Feature '{feature.id}' has no workspace to commit")
        commit_message = message or f"feat: {feature.title or feature.id}"
        result = await asyncio.to_thread(self.workspaces.commit, workspace, commit_message)
        if result.status == CommitStatus.NOTHING_TO_COMMIT:
            raise GuardError(f"Nothing to commit in workspace for '{feature.id}'")
        if not result.ok:
            error = CommitFailedError(result)
            await self._report_error(feature.id, error, "commit")
            raise error
        feature.last_commit = result.commit_sha
        await self.bus.emit_async(
            feature.id,
            EventType.FEATURE_COMMITTED,
            {
                "commit": result.commit_sha,
                "files": result.files,
                "status": result.status.value,
                "branch": workspace.branch_name,
            },
        )
        return result

    async def _reclaim_for_delete(self, feature: Feature, delete_branch: bool) -> None:
        workspace = await self._workspace_for(feature.id)
        if workspace is not None:
            await asyncio.to_thread(self.workspaces.reclaim, workspace, delete_branch)
            return
        entry = await asyncio.to_thread(self.registry.find_by_feature, feature.id)
        if entry is not None:
            await asyncio.to_thread(self.registry.unregister, entry.branch)
        if delete_branch and feature.workspace_ref:
            # Worktree already gone (archived with reclaim), branch may remain
            await asyncio.to_thread(self.workspaces.delete_branch, feature.workspace_ref)

    def _store_attachments(self, feature_id: str, paths: list[str]) -> list[str]:
        """Copy attachments into the feature's image directory.

        Returns:
            Absolute paths of the stored copies
        """
        if not paths:
            return []
        target_dir = feature_images_dir(self.project_root, feature_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        stored = []
        for raw in paths:
            source = resolve_in(raw, self.project_root)
            if not source.is_file():
                raise ValidationError(f"Attachment not found: {raw}")
            if source.parent == target_dir.resolve():
                stored.append(str(source))
                continue
            target = target_dir / f"{int(time.time() * 1000)}-{source.name}"
            shutil.copy2(source, target)
            stored.append(str(target))
        return stored

    # --- session completion ---

    async def _on_session_finished(self, session: AgentSession) -> None:
        """Apply the lifecycle result of a finished session."""
        async with self._lock_for(session.feature_id):
            feature = await asyncio.to_thread(self.db.get_feature, session.feature_id)
            if feature is None or feature.session_ref != session.id:
                # Already handled by stop/delete
                logger.debug(f"Ignoring finished session {session.id} (stale)")
                return

            payload: dict[str, Any] = {"session_id": session.id, "turns": session.turns}
            match session.outcome:
                case SessionOutcome.COMPLETED:
                    step = transition(feature.status, Command.AGENT_COMPLETED)
                    feature.summary = session.result_text
                    feature.error = None
                    if session.result_text:
                        payload["summary"] = session.result_text
                case SessionOutcome.FAILED:
                    step = transition(feature.status, Command.AGENT_FAILED)
                    feature.error = session.error
                    payload["error"] = session.error
                case _:
                    workspace = await self._workspace_for(feature.id)
                    has_progress = workspace is not None and await asyncio.to_thread(
                        self.workspaces.has_progress, workspace
                    )
                    step = transition(feature.status, Command.STOP, has_progress=has_progress)
                    payload["has_progress"] = has_progress

            await self._commit_transition(
                feature,
                step,
                session_ref=None,
                workspace_ref=feature.workspace_ref,
                payload=payload,
            )
            if session.follow_up and session.outcome == SessionOutcome.COMPLETED:
                await self.bus.emit_async(
                    feature.id, EventType.FEATURE_FOLLOW_UP_COMPLETED, payload
                )

    # --- restart recovery ---

    async def reconcile(self) -> ReconcileReport:
        """Line up feature records, the branch registry and live worktrees.

        Safe to run repeatedly; run automatically before the first command.
        """
        report = ReconcileReport()
        features = {f.id: f for f in await asyncio.to_thread(self.db.list_features)}
        try:
            worktrees = await asyncio.to_thread(self.workspaces.list_worktrees)
        except WorktreeError as e:
            # Not a repository (yet): leave the registry alone
            logger.warning(f"Skipping worktree reconciliation: {e}")
            worktrees = None

        if worktrees is not None:
            await self._reconcile_registry(worktrees, features, report)

        for feature in features.values():
            changed = False
            if feature.session_ref and not self.supervisor.is_running(feature.id):
                feature.session_ref = None
                report.cleared_sessions.append(feature.id)
                changed = True
            entry = await asyncio.to_thread(self.registry.find_by_feature, feature.id)
            if feature.workspace_ref and entry is None:
                feature.workspace_ref = None
                report.cleared_workspaces.append(feature.id)
                changed = True
            elif entry is not None and feature.workspace_ref != entry.branch:
                feature.workspace_ref = entry.branch
                if entry.branch not in feature.workspace_history:
                    feature.workspace_history.append(entry.branch)
                report.restored_workspaces.append(feature.id)
                changed = True
            if changed:
                await self._persist(feature, EventType.FEATURE_UPDATED, {"reconciled": True})

        removed = await asyncio.to_thread(self.workspaces.cleanup_stale_worktrees)
        report.removed_directories = [str(p) for p in removed]

        self._reconciled = True
        if report.changed:
            logger.info(f"Reconciled board state: {report}")
        return report

    async def _reconcile_registry(
        self,
        worktrees: list[WorktreeInfo],
        features: dict[str, Feature],
        report: ReconcileReport,
    ) -> None:
        live_paths = {wt.path.resolve() for wt in worktrees if not wt.prunable}

        def keep(entry: BranchEntry) -> bool:
            if entry.feature_id not in features:
                return False
            return Path(entry.path).resolve() in live_paths

        for entry in await asyncio.to_thread(self.registry.prune, keep):
            report.dropped_registrations.append(entry.branch)
            if entry.feature_id not in features and Path(entry.path).exists():
                # Feature record is gone; its worktree is an orphan
                orphan = Workspace(
                    path=Path(entry.path),
                    branch_name=entry.branch,
                    feature_id=entry.feature_id,
                    base_revision=entry.base_revision or "",
                )
                await asyncio.to_thread(self.workspaces.reclaim, orphan, False)

        registered = {e.branch for e in await asyncio.to_thread(self.registry.entries)}
        by_branch = {self.workspaces.branch_name(fid): fid for fid in features}
        for wt in worktrees:
            if wt.branch is None or wt.prunable or wt.branch in registered:
                continue
            feature_id = by_branch.get(wt.branch)
            if feature_id is None or wt.path.resolve() == self.project_root.resolve():
                continue
            await asyncio.to_thread(
                self.registry.register, wt.branch, feature_id, wt.path, base_revision=wt.head
            )
            report.registered_branches.append(wt.branch)
