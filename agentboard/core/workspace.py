"""Git worktree isolation, one worktree per in-flight feature.

Other components depend on four operations only:

    allocate(feature_id)            -> Workspace
    reclaim(workspace, delete_branch)
    commit(workspace, message)      -> CommitResult
    diff_and_status(workspace)      -> DiffResult

Every git call goes through _git(), which converts timeouts and OS errors
into WorktreeError. Callers never see raw exit codes: failures come back as
WorktreeError or as typed results (CommitResult.status, ReclaimResult).
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from agentboard.core.config import BoardConfig
from agentboard.core.errors import ExternalError
from agentboard.core.git_status import (
    has_conflicts,
    is_binary_path,
    parse_porcelain,
    synthesize_untracked_diff,
)
from agentboard.core.models import CommitResult, CommitStatus, DiffResult, FileStatus, Workspace
from agentboard.core.registry import BranchInUseError, BranchRegistry
from agentboard.core.utils import (
    STATE_DIR,
    branch_name_for,
    sanitize_identifier,
    state_dir,
    truncate_output,
)

logger = logging.getLogger(__name__)


class WorktreeError(ExternalError):
    """Error during worktree operations."""

    pass


@dataclass
class WorktreeInfo:
    """One entry from `git worktree list --porcelain`."""

    path: Path
    head: str | None = None
    branch: str | None = None  # short name, None when detached
    prunable: bool = False


@dataclass
class ReclaimResult:
    """What reclaim() managed to do."""

    removed: bool
    pruned: bool = False
    branch_deleted: bool = False
    error: str | None = None


class WorkspaceManager:
    """Allocate and reclaim per-feature git worktrees.

    Workflow:
    1. allocate(): new branch off the project HEAD, checked out in
       <worktrees_dir>/<feature-id>, recorded in the branch registry
    2. agent works inside the worktree
    3. diff_and_status() for review, commit() on approval
    4. reclaim(): remove the worktree (prune on failure), optionally the branch
    """

    # Grace period before an unregistered worktree directory counts as stale
    STALE_AGE_SECONDS = 300

    def __init__(
        self,
        project_root: Path | str,
        registry: BranchRegistry | None = None,
        *,
        worktrees_dir: str = ".agentboard/worktrees",
        branch_prefix: str = "feature/",
        protected_branches: tuple[str, ...] | list[str] = ("main", "master"),
        git_timeout: int = 30,
        max_diff_chars: int = 200_000,
    ):
        self.project_root = Path(project_root).absolute()
        self.registry = registry or BranchRegistry(state_dir(self.project_root))
        self.worktrees_dir = self.project_root / worktrees_dir
        self.branch_prefix = branch_prefix
        self.protected_branches = frozenset(protected_branches)
        self.git_timeout = git_timeout
        self.max_diff_chars = max_diff_chars

    @classmethod
    def from_config(
        cls,
        project_root: Path | str,
        config: BoardConfig,
        registry: BranchRegistry | None = None,
    ) -> WorkspaceManager:
        return cls(
            project_root,
            registry,
            worktrees_dir=config.worktrees_dir,
            branch_prefix=config.branch_prefix,
            protected_branches=config.protected_branches,
            git_timeout=config.git_timeout,
            max_diff_chars=config.max_diff_chars,
        )

    # --- git subprocess boundary ---

    def _git(
        self,
        args: list[str],
        cwd: Path | None = None,
        check: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command.

        Raises:
            WorktreeError: On timeout, missing git binary, or (if check) non-zero exit
        """
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd or self.project_root,
                capture_output=True,
                text=True,
                timeout=self.git_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise WorktreeError(
                f"'git {' '.join(args)}' timed out after {self.git_timeout}s"
            ) from e
        except OSError as e:
            raise WorktreeError(f"Cannot run git: {e}") from e

        if check and result.returncode != 0:
            raise WorktreeError(
                f"'git {' '.join(args)}' failed: {truncate_output(result.stderr.strip())}"
            )
        return result

    def validate_repo(self) -> None:
        """Ensure the project root is a git repository with at least one commit."""
        if not self.project_root.is_dir():
            raise WorktreeError(f"Project root does not exist: {self.project_root}")
        result = self._git(["rev-parse", "--git-dir"])
        if result.returncode != 0:
            raise WorktreeError(f"Not a git repository: {self.project_root}")
        if self._git(["rev-parse", "--verify", "HEAD"]).returncode != 0:
            raise WorktreeError(f"Repository has no commits yet: {self.project_root}")

    def head_revision(self, cwd: Path | None = None) -> str:
        """Current HEAD commit SHA."""
        return self._git(["rev-parse", "HEAD"], cwd=cwd, check=True).stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        result = self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"])
        return result.returncode == 0

    def list_worktrees(self) -> list[WorktreeInfo]:
        """Parse `git worktree list --porcelain` (the main worktree included)."""
        result = self._git(["worktree", "list", "--porcelain"], check=True)
        worktrees: list[WorktreeInfo] = []
        current: WorktreeInfo | None = None
        for line in result.stdout.split("\n"):
            if line.startswith("worktree "):
                current = WorktreeInfo(path=Path(line[9:].strip()))
                worktrees.append(current)
            elif current is None:
                continue
            elif line.startswith("HEAD "):
                current.head = line[5:].strip()
            elif line.startswith("branch "):
                current.branch = line[7:].strip().removeprefix("refs/heads/")
            elif line.startswith("prunable"):
                current.prunable = True
        return worktrees

    def is_active_worktree(self, path: Path) -> bool:
        """True if git lists path as a worktree of this repository."""
        try:
            worktrees = self.list_worktrees()
        except WorktreeError:
            return False
        resolved = Path(path).resolve()
        return any(wt.path.resolve() == resolved and not wt.prunable for wt in worktrees)

    def prune(self) -> bool:
        """Run `git worktree prune`. Returns True on success."""
        try:
            result = self._git(["worktree", "prune"])
        except WorktreeError as e:
            logger.warning(f"git worktree prune failed: {e}")
            return False
        return result.returncode == 0

    # --- allocate / reclaim ---

    def branch_name(self, feature_id: str) -> str:
        return branch_name_for(feature_id, self.branch_prefix)

    def worktree_path(self, feature_id: str) -> Path:
        return self.worktrees_dir / sanitize_identifier(feature_id)

    def allocate(self, feature_id: str) -> Workspace:
        """Create (or reuse) the isolated worktree for a feature.

        The branch name is derived from the feature id. If the registry already
        maps the branch to this feature and the worktree is live, that
        workspace is returned unchanged.

        Raises:
            WorktreeError: If the project is not a repository or git fails
            BranchInUseError: If the branch is registered to another feature
        """
        self.validate_repo()
        try:
            branch = self.branch_name(feature_id)
        except ValueError as e:
            raise WorktreeError(str(e)) from e

        entry = self.registry.get(branch)
        if entry is not None:
            if entry.feature_id != feature_id:
                raise BranchInUseError(
                    f"Branch '{branch}' is already in use by feature '{entry.feature_id}'",
                    blocking=[entry.feature_id],
                )
            existing_path = Path(entry.path)
            if existing_path.is_dir() and self.is_active_worktree(existing_path):
                logger.debug(f"Reusing workspace {existing_path} for {feature_id}")
                return Workspace(
                    path=existing_path,
                    branch_name=branch,
                    feature_id=feature_id,
                    base_revision=entry.base_revision or self.head_revision(existing_path),
                )

        self._validate_worktrees_dir()
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_excluded()

        path = self.worktree_path(feature_id)
        if path.exists() or path.is_symlink():
            if self.is_active_worktree(path):
                raise WorktreeError(
                    f"Worktree {path} is checked out but not registered to {feature_id}; "
                    "run reconcile first"
                )
            self._remove_safe(path)
            self.prune()

        base_revision = self.head_revision()
        created_branch = not self.branch_exists(branch)
        if not created_branch:
            # Kept from an earlier run: check it out again instead of recreating
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), base_revision]
        result = self._git(args)
        if result.returncode != 0:
            raise WorktreeError(
                f"Failed to create worktree for {feature_id}: "
                f"{truncate_output(result.stderr.strip())}"
            )

        try:
            self.registry.register(branch, feature_id, path, base_revision=base_revision)
        except Exception:
            # Roll back so a failed allocation leaves nothing behind
            self._git(["worktree", "remove", str(path), "--force"])
            self.prune()
            raise

        logger.info(f"Allocated workspace {path} on branch {branch} for {feature_id}")
        return Workspace(
            path=path,
            branch_name=branch,
            feature_id=feature_id,
            base_revision=base_revision,
            created_branch=created_branch,
        )

    def get(self, feature_id: str) -> Workspace | None:
        """Registered, live workspace for a feature, if any."""
        entry = self.registry.find_by_feature(feature_id)
        if entry is None:
            return None
        path = Path(entry.path)
        if not path.is_dir():
            return None
        return Workspace(
            path=path,
            branch_name=entry.branch,
            feature_id=feature_id,
            base_revision=entry.base_revision or "",
        )

    def reclaim(self, workspace: Workspace, delete_branch: bool = False) -> ReclaimResult:
        """Remove a feature's worktree.

        Never raises for git failures: if `git worktree remove` fails the
        directory is deleted directly and `git worktree prune` cleans up the
        metadata. Protected branches (main/master) are never deleted, and a
        failed branch delete is logged, not raised.
        """
        path = Path(workspace.path)
        branch = workspace.branch_name
        outcome = ReclaimResult(removed=False)

        if path.exists() or path.is_symlink():
            try:
                result = self._git(["worktree", "remove", str(path), "--force"])
                outcome.removed = result.returncode == 0
                if not outcome.removed:
                    outcome.error = result.stderr.strip()
            except WorktreeError as e:
                outcome.error = str(e)

            if not outcome.removed:
                logger.warning(
                    f"git worktree remove failed for {path} ({outcome.error}); "
                    "falling back to prune"
                )
                self._remove_safe(path)
                outcome.removed = not path.exists()
        else:
            outcome.removed = True

        outcome.pruned = self.prune()
        self.registry.unregister(branch)

        if delete_branch:
            outcome.branch_deleted = self.delete_branch(branch)

        logger.info(f"Reclaimed workspace {path} (branch {branch})")
        return outcome

    def delete_branch(self, branch: str) -> bool:
        """Delete a local branch unless protected. Failures are logged, not raised."""
        if branch in self.protected_branches:
            logger.info(f"Not deleting protected branch {branch}")
            return False
        try:
            result = self._git(["branch", "-D", branch])
        except WorktreeError as e:
            logger.warning(f"Branch delete failed for {branch}: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"Branch delete failed for {branch}: {result.stderr.strip()}")
            return False
        return True

    # --- commit / diff ---

    def status(self, workspace: Workspace) -> list[FileStatus]:
        """Structured per-file status of the worktree, untracked files expanded."""
        result = self._git(
            ["status", "--porcelain=v1", "-z", "--untracked-files=all"],
            cwd=Path(workspace.path),
        )
        if result.returncode != 0:
            raise WorktreeError(
                f"git status failed in {workspace.path}: {result.stderr.strip()}"
            )
        return parse_porcelain(result.stdout)

    def commits_ahead(self, workspace: Workspace) -> int:
        """Commits on the workspace branch that are not in its base revision."""
        if not workspace.base_revision:
            return 0
        result = self._git(
            ["rev-list", "--count", f"{workspace.base_revision}..HEAD"],
            cwd=Path(workspace.path),
        )
        if result.returncode != 0:
            return 0
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            return 0

    def has_progress(self, workspace: Workspace) -> bool:
        """True if the agent left uncommitted changes or new commits."""
        if not Path(workspace.path).is_dir():
            return False
        try:
            return bool(self.status(workspace)) or self.commits_ahead(workspace) > 0
        except WorktreeError as e:
            logger.warning(f"Cannot inspect {workspace.path}: {e}")
            return False

    def commit(self, workspace: Workspace, message: str) -> CommitResult:
        """Stage every change in the worktree and commit it.

        Returns COMMITTED when a commit was made, ALREADY_COMMITTED when the tree
        is clean but the branch is ahead of its base, NOTHING_TO_COMMIT when
        there is no work at all, FAILED on any repository error. `clean` is
        True only if the committed paths no longer show up in git status.
        """
        path = Path(workspace.path)
        if not path.is_dir():
            return CommitResult(
                status=CommitStatus.FAILED,
                message=message,
                error=f"Workspace does not exist: {path}",
            )

        try:
            before = self.status(workspace)
            if has_conflicts(before):
                return CommitResult(
                    status=CommitStatus.FAILED,
                    message=message,
                    error="Unmerged paths in workspace; resolve conflicts first",
                )

            if not before:
                ahead = self.commits_ahead(workspace)
                return CommitResult(
                    status=CommitStatus.ALREADY_COMMITTED if ahead else CommitStatus.NOTHING_TO_COMMIT,
                    commit_sha=self.head_revision(path) if ahead else None,
                    message=message,
                    clean=True,
                )

            committed = [s.path for s in before] + [s.old_path for s in before if s.old_path]

            add = self._git(["add", "-A"], cwd=path)
            if add.returncode != 0:
                return CommitResult(
                    status=CommitStatus.FAILED,
                    message=message,
                    error=f"git add failed: {truncate_output(add.stderr.strip())}",
                )

            result = self._git(["commit", "-m", message], cwd=path)
            if result.returncode != 0:
                output = f"{result.stdout}\n{result.stderr}"
                if "nothing to commit" in output:
                    return CommitResult(
                        status=CommitStatus.NOTHING_TO_COMMIT, message=message, clean=True
                    )
                return CommitResult(
                    status=CommitStatus.FAILED,
                    message=message,
                    error=f"git commit failed: {truncate_output(output.strip())}",
                )

            sha = self.head_revision(path)
            after = {s.path for s in self.status(workspace)}
        except WorktreeError as e:
            return CommitResult(status=CommitStatus.FAILED, message=message, error=str(e))

        pending = sorted(after.intersection(committed))
        if pending:
            logger.warning(f"Paths still pending after commit in {path}: {pending}")
        logger.info(f"Committed {len(committed)} path(s) in {path} as {sha[:8]}")
        return CommitResult(
            status=CommitStatus.COMMITTED,
            commit_sha=sha,
            message=message,
            files=sorted(set(committed)),
            clean=not pending,
        )

    def diff_and_status(self, workspace: Workspace) -> DiffResult:
        """File statuses plus a unified diff of all changes against HEAD.

        Binary files (by extension) are listed but not diffed. Untracked files
        get a synthesized all-additions diff.

        Raises:
            WorktreeError: If the workspace is missing or git fails
        """
        path = Path(workspace.path)
        if not path.is_dir():
            raise WorktreeError(f"Workspace does not exist: {path}")

        files = self.status(workspace)
        tracked_paths: list[str] = []
        binary_stubs: list[str] = []
        untracked: list[str] = []
        for entry in files:
            if entry.status == "?":
                untracked.append(entry.path)
            elif entry.is_binary:
                binary_stubs.append(f"Binary file {entry.path} changed\n")
            else:
                tracked_paths.append(entry.path)
                if entry.old_path and not is_binary_path(entry.old_path):
                    tracked_paths.append(entry.old_path)

        parts: list[str] = []
        if tracked_paths:
            result = self._git(
                ["diff", "--no-color", "--no-ext-diff", "HEAD", "--", *tracked_paths],
                cwd=path,
            )
            if result.returncode != 0:
                raise WorktreeError(f"git diff failed in {path}: {result.stderr.strip()}")
            parts.append(result.stdout)
        parts.extend(binary_stubs)
        parts.extend(synthesize_untracked_diff(path, rel) for rel in untracked)

        diff = "".join(parts)
        truncated = len(diff) > self.max_diff_chars
        if truncated:
            diff = truncate_output(diff, self.max_diff_chars)
        return DiffResult(files=files, diff=diff, truncated=truncated)

    # --- housekeeping ---

    def cleanup_stale_worktrees(self) -> list[Path]:
        """Remove worktree directories git no longer knows about.

        Skips registered and recently modified directories. Uses a file lock so
        two processes never clean up at the same time; if the lock is busy the
        cleanup is skipped.

        Returns:
            Directories removed
        """
        if not self.worktrees_dir.is_dir() or self.worktrees_dir.is_symlink():
            return []

        lock = FileLock(str(self.worktrees_dir / ".cleanup.lock"), timeout=5)
        try:
            lock.acquire()
        except FileLockTimeout:
            logger.info("Another process is cleaning up worktrees; skipping")
            return []

        removed: list[Path] = []
        try:
            self.prune()
            try:
                active = {wt.path.resolve() for wt in self.list_worktrees()}
            except WorktreeError:
                # Without the active list we might delete live worktrees
                return []
            registered = {Path(e.path).resolve() for e in self.registry.entries()}

            for entry in self.worktrees_dir.iterdir():
                if entry.is_symlink() or not entry.is_dir():
                    continue
                resolved = entry.resolve()
                if resolved in active or resolved in registered:
                    continue
                try:
                    if time.time() - entry.stat().st_mtime < self.STALE_AGE_SECONDS:
                        continue
                except OSError:
                    continue
                self._remove_safe(entry)
                if not entry.exists():
                    removed.append(entry)
        finally:
            lock.release()

        for entry in removed:
            logger.info(f"Removed stale worktree directory {entry}")
        return removed

    def _ensure_excluded(self) -> None:
        """Keep the state directory out of the main tree's git status."""
        result = self._git(["rev-parse", "--git-path", "info/exclude"])
        if result.returncode != 0:
            return
        exclude = Path(result.stdout.strip())
        if not exclude.is_absolute():
            exclude = self.project_root / exclude
        pattern = f"/{STATE_DIR}/"
        try:
            existing = exclude.read_text() if exclude.exists() else ""
            if pattern in existing.splitlines():
                return
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with open(exclude, "a") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write(f"{pattern}\n")
        except OSError as e:
            logger.warning(f"Cannot update {exclude}: {e}")

    def _validate_worktrees_dir(self) -> None:
        """Refuse a worktrees directory that is a symlink or escapes the project."""
        if self.worktrees_dir.is_symlink():
            raise WorktreeError(f"{self.worktrees_dir} is a symlink; remove it manually")
        if self.worktrees_dir.exists():
            try:
                self.worktrees_dir.resolve().relative_to(self.project_root.resolve())
            except ValueError:
                raise WorktreeError(f"{self.worktrees_dir} resolves outside the project")

    def _remove_safe(self, path: Path) -> None:
        """Delete a worktree directory without following symlinks out of the project."""
        if path.is_symlink():
            path.unlink()
            return
        if not path.exists():
            return
        try:
            path.resolve().relative_to(self.project_root.resolve())
        except ValueError:
            logger.warning(f"Refusing to delete {path}: resolves outside the project")
            return
        current = path.parent
        while current != self.project_root and current != current.parent:
            if current.is_symlink():
                logger.warning(f"Refusing to delete {path}: ancestor {current} is a symlink")
                return
            current = current.parent
        shutil.rmtree(path, ignore_errors=True)
