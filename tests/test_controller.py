"""Tests for the feature lifecycle controller.

These run against a real git repository with the scripted mock agent, so
every command exercises workspace allocation, commits and reclaim end to end.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
from filelock import FileLock

from agentboard.core.config import BoardConfig
from agentboard.core.controller import FeatureController
from agentboard.core.errors import GuardError, OrchestrationError, ValidationError
from agentboard.core.lifecycle import Effect, InvalidTransition, Transition
from agentboard.core.models import FeatureStatus
from agentboard.core.provider import MockProvider
from agentboard.core.state import EventType
from agentboard.core.workspace import WorktreeError

pytestmark = [pytest.mark.git, pytest.mark.integration]


@pytest.fixture
def make_controller(
    repo_with_git: Path, board_config: BoardConfig
) -> Callable[..., FeatureController]:
    """Controller on the shared repository with a custom mock provider."""

    def _make(provider: MockProvider | None = None, root: Path | None = None) -> FeatureController:
        return FeatureController(
            root or repo_with_git,
            config=board_config,
            provider=provider or MockProvider(),
        )

    return _make


async def _run_to_review(controller: FeatureController, feature_id: str = "auth"):
    await controller.create_feature("Add login", feature_id=feature_id)
    await controller.start_feature(feature_id)
    await controller.wait_for_session(feature_id)
    return controller.get_feature(feature_id)


def _event_types(controller: FeatureController, feature_id: str) -> list[EventType]:
    return [e.event_type for e in controller.events(feature_id)]


class TestCreateAndEdit:
    """Tests for create_feature(), update_feature() and ordering commands."""

    @pytest.mark.asyncio
    async def test_create_defaults(self, controller: FeatureController):
        """New features land in the backlog with a generated id."""
        feature = await controller.create_feature("Add login", "JWT endpoint")

        assert feature.status == FeatureStatus.BACKLOG
        assert feature.id.startswith("feature-")
        assert controller.get_feature(feature.id).description == "JWT endpoint"
        assert _event_types(controller, feature.id) == [EventType.FEATURE_CREATED]

    @pytest.mark.asyncio
    async def test_create_requires_title_or_description(self, controller: FeatureController):
        with pytest.raises(ValidationError, match="title or a description"):
            await controller.create_feature("  ", "")

    @pytest.mark.asyncio
    async def test_create_rejects_duplicate_and_bad_ids(self, controller: FeatureController):
        """Explicit ids must be well formed and unused."""
        await controller.create_feature("Add login", feature_id="auth")

        with pytest.raises(ValidationError, match="already exists"):
            await controller.create_feature("Again", feature_id="auth")
        with pytest.raises(ValidationError, match="Invalid feature id"):
            await controller.create_feature("Bad", feature_id="../etc")

    @pytest.mark.asyncio
    async def test_create_rejects_malformed_dependencies(self, controller: FeatureController):
        with pytest.raises(ValidationError, match="Malformed dependency"):
            await controller.create_feature("Api", dependencies=["db", "  "])

    @pytest.mark.asyncio
    async def test_create_allows_unknown_dependencies(self, controller: FeatureController):
        """Missing dependency ids are accepted; the resolver reports them."""
        await controller.create_feature("Api", feature_id="api", dependencies=["db"])

        result = controller.resolve()

        assert result.missing_dependencies == {"api": ["db"]}

    @pytest.mark.asyncio
    async def test_attachments_copied(self, controller: FeatureController, repo_with_git: Path):
        """Images are copied into the feature's asset directory."""
        (repo_with_git / "shot.png").write_bytes(b"png")

        feature = await controller.create_feature(
            "Fix layout", feature_id="ui", image_paths=["shot.png"]
        )

        (stored,) = feature.image_paths
        assert Path(stored).read_bytes() == b"png"
        assert "ui" in Path(stored).parts
        with pytest.raises(ValidationError, match="Attachment not found"):
            await controller.create_feature("Other", image_paths=["missing.png"])

    @pytest.mark.asyncio
    async def test_update_fields(self, controller: FeatureController):
        """Edits are validated and dependencies stay deduplicated."""
        await controller.create_feature("Api", feature_id="api")

        updated = await controller.update_feature(
            "api", title="REST api", dependencies=["db", "db", "auth"]
        )

        assert updated.title == "REST api"
        assert controller.get_feature("api").dependencies == ["db", "auth"]
        with pytest.raises(ValidationError, match="Cannot edit"):
            await controller.update_feature("api", status="verified")

    @pytest.mark.asyncio
    async def test_reorder_assigns_priorities(self, controller: FeatureController):
        for fid in ("a", "b", "c"):
            await controller.create_feature(fid.upper(), feature_id=fid)

        await controller.reorder(["c", "a", "b"])

        assert controller.resolve().ordered_ids == ["c", "a", "b"]
        with pytest.raises(ValidationError, match="Duplicate"):
            await controller.reorder(["a", "a"])

    @pytest.mark.asyncio
    async def test_unknown_feature(self, controller: FeatureController):
        with pytest.raises(ValidationError, match="not found"):
            await controller.start_feature("ghost")


class TestStart:
    """Tests for start_feature()."""

    @pytest.mark.asyncio
    async def test_blocked_by_dependency(self, controller: FeatureController):
        """Unsatisfied dependencies block start and are named."""
        await controller.create_feature("Db", feature_id="db")
        await controller.create_feature("Api", feature_id="api", dependencies=["db"])

        with pytest.raises(GuardError) as exc_info:
            await controller.start_feature("api")

        assert exc_info.value.blocking == ["db"]
        assert controller.get_feature("api").status == FeatureStatus.BACKLOG
        assert controller.workspaces.get("api") is None

    @pytest.mark.asyncio
    async def test_missing_dependency_does_not_block(self, controller, caplog):
        """Unknown dependency ids count as satisfied but are logged."""
        await controller.create_feature("Api", feature_id="api", dependencies=["db"])

        with caplog.at_level("WARNING", logger="agentboard.core.controller"):
            feature = await controller.start_feature("api")
        await controller.wait_for_session("api")

        assert feature.status == FeatureStatus.IN_PROGRESS
        assert "unknown dependencies" in caplog.text

    @pytest.mark.asyncio
    async def test_cycle_member_not_startable(self, controller: FeatureController):
        """A feature on a cycle stays in the backlog even if its partner is verified."""
        await _run_to_review(controller, "b")
        await controller.commit_feature("b")
        await controller.create_feature("A", feature_id="a", dependencies=["b"])
        await controller.update_feature("b", dependencies=["a"])

        with pytest.raises(GuardError, match="dependency cycle") as exc_info:
            await controller.start_feature("a")

        assert sorted(exc_info.value.blocking) == ["a", "b"]
        assert controller.get_feature("a").status == FeatureStatus.BACKLOG
        assert controller.workspaces.get("a") is None
        assert controller.ready_features() == []

    @pytest.mark.asyncio
    async def test_session_failure_keeps_existing_branch(
        self, controller: FeatureController, run_git, repo_with_git: Path, monkeypatch
    ):
        """Rolling back a failed start removes the worktree but not a branch it reused."""
        run_git(repo_with_git, "branch", "feature/auth")
        await controller.create_feature("Add login", feature_id="auth")

        async def refuse(*args, **kwargs):
            raise RuntimeError("agent unavailable")

        monkeypatch.setattr(controller.supervisor, "start", refuse)

        with pytest.raises(RuntimeError):
            await controller.start_feature("auth")

        assert controller.get_feature("auth").status == FeatureStatus.BACKLOG
        assert controller.workspaces.get("auth") is None
        assert controller.workspaces.branch_exists("feature/auth")

    @pytest.mark.asyncio
    async def test_session_failure_deletes_new_branch(
        self, controller: FeatureController, monkeypatch
    ):
        await controller.create_feature("Add login", feature_id="auth")

        async def refuse(*args, **kwargs):
            raise RuntimeError("agent unavailable")

        monkeypatch.setattr(controller.supervisor, "start", refuse)

        with pytest.raises(RuntimeError):
            await controller.start_feature("auth")

        assert not controller.workspaces.branch_exists("feature/auth")

    @pytest.mark.asyncio
    async def test_session_needs_workspace(self, controller: FeatureController):
        """A session effect without an allocated workspace is an error, not an assert."""
        feature = await controller.create_feature("Add login", feature_id="auth")
        step = Transition(
            FeatureStatus.IN_PROGRESS, (Effect.START_SESSION,), EventType.FEATURE_STARTED
        )

        with pytest.raises(OrchestrationError, match="No workspace"):
            await controller._apply(feature, step, prompt="go")

        assert controller.get_feature("auth").status == FeatureStatus.BACKLOG

    @pytest.mark.asyncio
    async def test_registry_lock_does_not_stall_loop(self, controller: FeatureController):
        """A registry lock held elsewhere blocks only the waiting command."""
        await _run_to_review(controller)
        loop = asyncio.get_running_loop()

        with FileLock(str(controller.registry.path) + ".lock"):
            task = asyncio.create_task(controller.diff("auth"))
            before = loop.time()
            await asyncio.sleep(0.1)

            assert loop.time() - before < 1.0
            assert not task.done()

        diff = await asyncio.wait_for(task, timeout=15)
        assert [f.path for f in diff.files] == [MockProvider.OUTPUT_FILE]

    @pytest.mark.asyncio
    async def test_start_allocates_workspace(self, controller: FeatureController):
        """Start moves to in_progress with a session and a worktree."""
        await controller.create_feature("Add login", feature_id="auth")

        feature = await controller.start_feature("auth")

        assert feature.status == FeatureStatus.IN_PROGRESS
        assert feature.session_ref is not None
        assert feature.workspace_ref == "feature/auth"
        assert controller.workspaces.get("auth").path.is_dir()
        await controller.wait_for_session("auth")

    @pytest.mark.asyncio
    async def test_second_start_rejected(self, make_controller):
        """A running feature cannot be started again."""
        hold = asyncio.Event()
        controller = make_controller(MockProvider(hold=hold))
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")

        with pytest.raises(InvalidTransition, match="running session"):
            await controller.start_feature("auth")

        hold.set()
        await controller.wait_for_session("auth")

    @pytest.mark.asyncio
    async def test_allocation_failure_leaves_backlog(self, temp_repo: Path, board_config):
        """Outside a git repository start fails and nothing changes."""
        controller = FeatureController(temp_repo, config=board_config, provider=MockProvider())
        await controller.create_feature("Add login", feature_id="auth")

        with pytest.raises(WorktreeError):
            await controller.start_feature("auth")

        feature = controller.get_feature("auth")
        assert feature.status == FeatureStatus.BACKLOG
        assert feature.workspace_ref is None
        errors = [e for e in controller.events("auth") if e.event_type == EventType.FEATURE_ERROR]
        assert errors[0].payload["action"] == "allocate workspace"


class TestLifecycle:
    """Tests for the full review path."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, controller: FeatureController, run_git, repo_with_git):
        """backlog -> in_progress -> review -> verified -> completed -> verified."""
        feature = await _run_to_review(controller)
        assert feature.status == FeatureStatus.WAITING_APPROVAL
        assert feature.session_ref is None
        assert feature.summary == "Mock agent finished"

        diff = await controller.diff("auth")
        assert [f.path for f in diff.files] == [MockProvider.OUTPUT_FILE]

        feature = await controller.commit_feature("auth", "feat: login")
        assert feature.status == FeatureStatus.VERIFIED
        assert feature.last_commit == run_git(repo_with_git, "rev-parse", "feature/auth")
        assert run_git(repo_with_git, "log", "-1", "--format=%s", "feature/auth") == "feat: login"

        feature = await controller.archive_feature("auth")
        assert feature.status == FeatureStatus.COMPLETED
        # Archive keeps the worktree unless reclaim_on_archive is set
        assert feature.workspace_ref == "feature/auth"

        feature = await controller.restore_feature("auth")
        assert feature.status == FeatureStatus.VERIFIED
        assert feature.workspace_history == ["feature/auth"]

        assert _event_types(controller, "auth") == [
            EventType.FEATURE_CREATED,
            EventType.FEATURE_STARTED,
            EventType.FEATURE_PROGRESS,
            EventType.FEATURE_TOOL_USE,
            EventType.FEATURE_COMPLETED,
            EventType.FEATURE_COMMITTED,
            EventType.FEATURE_VERIFIED,
            EventType.FEATURE_ARCHIVED,
            EventType.FEATURE_RESTORED,
        ]

    @pytest.mark.asyncio
    async def test_commit_nothing_stays_in_review(self, make_controller):
        """An empty workspace cannot be approved."""
        controller = make_controller(MockProvider(write_file=False))
        await _run_to_review(controller)

        with pytest.raises(GuardError, match="Nothing to commit"):
            await controller.commit_feature("auth")

        assert controller.get_feature("auth").status == FeatureStatus.WAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_commit_requires_review_status(self, controller: FeatureController):
        await controller.create_feature("Add login", feature_id="auth")

        with pytest.raises(InvalidTransition):
            await controller.commit_feature("auth")

    @pytest.mark.asyncio
    async def test_archive_with_reclaim(self, repo_with_git: Path, board_config: BoardConfig):
        """reclaim_on_archive removes the worktree but keeps the branch."""
        board_config.reclaim_on_archive = True
        controller = FeatureController(repo_with_git, config=board_config, provider=MockProvider())
        await _run_to_review(controller)
        await controller.commit_feature("auth")

        feature = await controller.archive_feature("auth")

        assert feature.workspace_ref is None
        assert controller.workspaces.get("auth") is None
        assert controller.workspaces.branch_exists("feature/auth")

    @pytest.mark.asyncio
    async def test_failure_keeps_in_progress(self, make_controller):
        """A failed run records the error and can be retried."""
        provider = MockProvider(error="tool crashed")
        controller = make_controller(provider)
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")
        await controller.wait_for_session("auth")

        feature = controller.get_feature("auth")
        assert feature.status == FeatureStatus.IN_PROGRESS
        assert feature.error == "tool crashed"
        assert feature.workspace_ref == "feature/auth"

        provider.error = None
        await controller.start_feature("auth")
        await controller.wait_for_session("auth")

        feature = controller.get_feature("auth")
        assert feature.status == FeatureStatus.WAITING_APPROVAL
        assert feature.error is None
        assert "tool crashed" in provider.calls[-1].prompt.text
        assert feature.workspace_history == ["feature/auth"]


class TestStop:
    """Tests for stop_feature()."""

    @pytest.mark.asyncio
    async def test_stop_without_progress(self, make_controller):
        """No changes: the feature stays in progress with its workspace."""
        hold = asyncio.Event()
        controller = make_controller(MockProvider(hold=hold))
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")

        feature = await controller.stop_feature("auth")

        assert feature.status == FeatureStatus.IN_PROGRESS
        assert feature.session_ref is None
        assert feature.workspace_ref == "feature/auth"
        assert not controller.supervisor.is_running("auth")
        assert EventType.FEATURE_STOPPED in _event_types(controller, "auth")

    @pytest.mark.asyncio
    async def test_stop_with_progress_goes_to_review(self, make_controller):
        """Partial changes send the feature to review."""
        controller = make_controller(MockProvider(hold=asyncio.Event()))
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")
        (controller.workspaces.get("auth").path / "partial.py").write_text("x = 1\n")

        feature = await controller.stop_feature("auth")

        assert feature.status == FeatureStatus.WAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_stop_requires_in_progress(self, controller: FeatureController):
        await controller.create_feature("Add login", feature_id="auth")

        with pytest.raises(InvalidTransition):
            await controller.stop_feature("auth")

    @pytest.mark.asyncio
    async def test_shutdown_stops_running(self, make_controller):
        controller = make_controller(MockProvider(hold=asyncio.Event()))
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")

        await controller.shutdown()

        assert controller.get_feature("auth").session_ref is None
        assert controller.supervisor.running_features() == []


class TestFollowUp:
    """Tests for send_follow_up()."""

    @pytest.mark.asyncio
    async def test_follow_up_from_review(self, controller: FeatureController, mock_provider):
        """A follow-up resumes work in the retained workspace."""
        await _run_to_review(controller)

        feature = await controller.send_follow_up("auth", "Also add logout")
        assert feature.status == FeatureStatus.IN_PROGRESS
        await controller.wait_for_session("auth")

        assert controller.get_feature("auth").status == FeatureStatus.WAITING_APPROVAL
        assert "Also add logout" in mock_provider.calls[-1].prompt.text
        types = _event_types(controller, "auth")
        assert EventType.FEATURE_FOLLOW_UP_STARTED in types
        assert types[-1] == EventType.FEATURE_FOLLOW_UP_COMPLETED

    @pytest.mark.asyncio
    async def test_follow_up_queued_while_running(self, make_controller):
        """While running, the message joins the live session."""
        hold = asyncio.Event()
        provider = MockProvider(hold=hold)
        controller = make_controller(provider)
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")

        await controller.send_follow_up("auth", "Also add logout")
        hold.set()
        await controller.wait_for_session("auth")

        assert len(provider.calls) == 2
        assert controller.get_feature("auth").status == FeatureStatus.WAITING_APPROVAL
        queued = [
            e for e in controller.events("auth")
            if e.event_type == EventType.FEATURE_FOLLOW_UP_STARTED
        ]
        assert queued[0].payload["queued"] is True

    @pytest.mark.asyncio
    async def test_follow_up_rejected_from_backlog(self, controller: FeatureController):
        await controller.create_feature("Add login", feature_id="auth")

        with pytest.raises(InvalidTransition):
            await controller.send_follow_up("auth", "hello")

    @pytest.mark.asyncio
    async def test_empty_follow_up(self, controller: FeatureController):
        with pytest.raises(ValidationError, match="empty"):
            await controller.send_follow_up("auth", "  ")


class TestDelete:
    """Tests for delete_feature()."""

    @pytest.mark.asyncio
    async def test_delete_reclaims_workspace(self, controller, run_git, repo_with_git):
        """Delete removes the record, the worktree and the branch."""
        feature = await _run_to_review(controller)
        path = controller.workspaces.get(feature.id).path

        await controller.delete_feature("auth")

        assert not path.exists()
        assert run_git(repo_with_git, "branch", "--list", "feature/auth") == ""
        assert controller.registry.find_by_feature("auth") is None
        with pytest.raises(ValidationError):
            controller.get_feature("auth")
        assert _event_types(controller, "auth")[-1] == EventType.FEATURE_DELETED

    @pytest.mark.asyncio
    async def test_delete_keep_branch(self, controller: FeatureController):
        await _run_to_review(controller)

        await controller.delete_feature("auth", delete_branch=False)

        assert controller.workspaces.branch_exists("feature/auth")

    @pytest.mark.asyncio
    async def test_delete_running_rejected(self, make_controller):
        """A running feature must be stopped before deletion."""
        controller = make_controller(MockProvider(hold=asyncio.Event()))
        await controller.create_feature("Add login", feature_id="auth")
        await controller.start_feature("auth")

        with pytest.raises(GuardError, match="force-stop"):
            await controller.delete_feature("auth")

        await controller.shutdown()

    @pytest.mark.asyncio
    async def test_delete_backlog_feature(self, controller: FeatureController):
        await controller.create_feature("Add login", feature_id="auth")

        await controller.delete_feature("auth")

        assert controller.list_features() == []


class TestAutoMode:
    """Tests for run_ready()."""

    @pytest.mark.asyncio
    async def test_starts_ready_features_up_to_limit(self, controller: FeatureController):
        """Blocked features are skipped; the limit caps the batch."""
        await controller.create_feature("A", feature_id="a")
        await controller.create_feature("B", feature_id="b", dependencies=["a"])
        await controller.create_feature("C", feature_id="c")
        await controller.create_feature("D", feature_id="d")

        started = await controller.run_ready(limit=2)
        await asyncio.gather(*(controller.wait_for_session(fid) for fid in started))

        assert len(started) == 2
        assert "b" not in started
        assert controller.get_feature("b").status == FeatureStatus.BACKLOG

    @pytest.mark.asyncio
    async def test_nothing_ready(self, controller: FeatureController):
        await controller.create_feature("X", feature_id="x", dependencies=["y"])
        await controller.create_feature("Y", feature_id="y", dependencies=["x"])

        assert await controller.run_ready() == []


class TestReconcile:
    """Tests for reconcile()."""

    @pytest.mark.asyncio
    async def test_clears_stale_refs(self, controller: FeatureController):
        """Session refs and missing workspaces from a previous run are dropped."""
        feature = await controller.create_feature("Add login", feature_id="auth")
        feature.status = FeatureStatus.IN_PROGRESS
        feature.session_ref = "gone"
        feature.workspace_ref = "feature/auth"
        controller.db.save_feature(feature, EventType.FEATURE_UPDATED)

        report = await controller.reconcile()

        assert report.cleared_sessions == ["auth"]
        assert report.cleared_workspaces == ["auth"]
        feature = controller.get_feature("auth")
        assert feature.session_ref is None
        assert feature.workspace_ref is None

    @pytest.mark.asyncio
    async def test_registers_existing_worktree(self, controller, run_git, repo_with_git):
        """An unregistered worktree on a feature's branch is adopted."""
        await controller.create_feature("Add login", feature_id="auth")
        path = repo_with_git / ".agentboard" / "worktrees" / "auth"
        path.parent.mkdir(parents=True)
        run_git(repo_with_git, "worktree", "add", "-b", "feature/auth", str(path))

        report = await controller.reconcile()

        assert report.registered_branches == ["feature/auth"]
        assert report.restored_workspaces == ["auth"]
        assert controller.get_feature("auth").workspace_ref == "feature/auth"

    @pytest.mark.asyncio
    async def test_drops_orphan_registration(self, controller: FeatureController, tmp_path):
        controller.registry.register("feature/ghost", "ghost", tmp_path / "nowhere")

        report = await controller.reconcile()

        assert report.dropped_registrations == ["feature/ghost"]
        assert controller.registry.entries() == []

    @pytest.mark.asyncio
    async def test_restart_keeps_review_state(self, controller, repo_with_git, board_config):
        """A new controller on the same project sees the retained workspace."""
        await _run_to_review(controller)

        restarted = FeatureController(repo_with_git, config=board_config, provider=MockProvider())
        report = await restarted.reconcile()

        assert not report.changed
        feature = restarted.get_feature("auth")
        assert feature.status == FeatureStatus.WAITING_APPROVAL
        assert restarted.workspaces.get("auth") is not None
        committed = await restarted.commit_feature("auth")
        assert committed.status == FeatureStatus.VERIFIED
