"""Persisted registry of active feature branches.

Maps branch name -> (feature id, worktree path) in
.agentboard/active-branches.json so a restarted process can tell which
branches are in use. All reads and writes go through a filelock so two
agentboard processes on the same project never clobber each other; writes
are atomic (temp file + os.replace).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Generator

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel, Field

from agentboard.core.errors import ExternalError, GuardError
from agentboard.core.models import utc_now

logger = logging.getLogger(__name__)


class RegistryError(ExternalError):
    """Registry file could not be locked, read or written."""

    pass


class BranchInUseError(GuardError):
    """Branch is already registered to a different feature."""

    pass


class BranchEntry(BaseModel):
    """One active branch."""

    branch: str
    feature_id: str
    path: str
    base_revision: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class BranchRegistry:
    """File-backed branch -> feature mapping."""

    FILENAME = "active-branches.json"
    LOCK_TIMEOUT = 10

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / self.FILENAME
        self._lock = FileLock(str(self.path) + ".lock", timeout=self.LOCK_TIMEOUT)

    @contextmanager
    def _locked(self) -> Generator[None, None, None]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                yield
        except FileLockTimeout as e:
            raise RegistryError(
                f"Branch registry locked for more than {self.LOCK_TIMEOUT}s: {self.path}"
            ) from e

    def _read(self) -> list[BranchEntry]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text() or "[]")
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"Cannot read branch registry {self.path}: {e}") from e
        return [BranchEntry.model_validate(item) for item in raw]

    def _write(self, entries: list[BranchEntry]) -> None:
        data = json.dumps([e.model_dump(mode="json") for e in entries], indent=2)
        fd, tmp = tempfile.mkstemp(dir=self.state_dir, prefix=".active-branches.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(data)
            os.replace(tmp, self.path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise RegistryError(f"Cannot write branch registry {self.path}: {e}") from e

    def entries(self) -> list[BranchEntry]:
        with self._locked():
            return self._read()

    def get(self, branch: str) -> BranchEntry | None:
        for entry in self.entries():
            if entry.branch == branch:
                return entry
        return None

    def find_by_feature(self, feature_id: str) -> BranchEntry | None:
        for entry in self.entries():
            if entry.feature_id == feature_id:
                return entry
        return None

    def register(
        self,
        branch: str,
        feature_id: str,
        path: Path | str,
        base_revision: str | None = None,
    ) -> BranchEntry:
        """Record branch as active for feature_id.

        Re-registering the same branch for the same feature updates its path.

        Raises:
            BranchInUseError: If the branch belongs to another feature
        """
        with self._locked():
            entries = self._read()
            for existing in entries:
                if existing.branch == branch and existing.feature_id != feature_id:
                    raise BranchInUseError(
                        f"Branch '{branch}' is already in use by feature '{existing.feature_id}'",
                        blocking=[existing.feature_id],
                    )
            entries = [e for e in entries if e.branch != branch]
            entry = BranchEntry(
                branch=branch,
                feature_id=feature_id,
                path=str(path),
                base_revision=base_revision,
            )
            entries.append(entry)
            self._write(entries)
        logger.debug(f"Registered branch {branch} -> {feature_id}")
        return entry

    def unregister(self, branch: str) -> bool:
        """Remove a branch. Returns True if it was registered."""
        with self._locked():
            entries = self._read()
            remaining = [e for e in entries if e.branch != branch]
            if len(remaining) == len(entries):
                return False
            self._write(remaining)
        logger.debug(f"Unregistered branch {branch}")
        return True

    def prune(self, keep: Callable[[BranchEntry], bool]) -> list[BranchEntry]:
        """Drop every entry for which keep() is False.

        Returns:
            The removed entries
        """
        with self._locked():
            entries = self._read()
            kept: list[BranchEntry] = []
            removed: list[BranchEntry] = []
            for entry in entries:
                (kept if keep(entry) else removed).append(entry)
            if removed:
                self._write(kept)
        for entry in removed:
            logger.info(f"Pruned stale branch registration {entry.branch} ({entry.feature_id})")
        return removed
