"""Tests for the persisted branch registry."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from filelock import FileLock

from agentboard.core.registry import BranchInUseError, BranchRegistry, RegistryError


@pytest.fixture
def branch_registry(tmp_path: Path) -> BranchRegistry:
    return BranchRegistry(tmp_path / ".agentboard")


class TestRegister:
    """Tests for register / unregister / lookups."""

    def test_register_and_lookup(self, branch_registry: BranchRegistry):
        """Entries are found by branch and by feature."""
        branch_registry.register("feature/auth", "auth", "/wt/auth", base_revision="abc")

        assert branch_registry.get("feature/auth").feature_id == "auth"
        assert branch_registry.find_by_feature("auth").path == "/wt/auth"
        assert branch_registry.find_by_feature("auth").base_revision == "abc"

    def test_branch_owned_by_other_feature(self, branch_registry: BranchRegistry):
        """Two features never share a branch."""
        branch_registry.register("feature/auth", "auth", "/wt/auth")

        with pytest.raises(BranchInUseError) as exc_info:
            branch_registry.register("feature/auth", "other", "/wt/other")

        assert exc_info.value.blocking == ["auth"]

    def test_reregister_same_feature_updates_path(self, branch_registry: BranchRegistry):
        """The owning feature may re-register with a new path."""
        branch_registry.register("feature/auth", "auth", "/old")
        branch_registry.register("feature/auth", "auth", "/new")

        assert len(branch_registry.entries()) == 1
        assert branch_registry.get("feature/auth").path == "/new"

    def test_unregister_frees_branch(self, branch_registry: BranchRegistry):
        """After unregister another feature can claim the branch."""
        branch_registry.register("feature/auth", "auth", "/wt/auth")

        assert branch_registry.unregister("feature/auth") is True
        assert branch_registry.unregister("feature/auth") is False
        branch_registry.register("feature/auth", "other", "/wt/other")
        assert branch_registry.get("feature/auth").feature_id == "other"


class TestPersistence:
    """Tests for the on-disk format."""

    def test_survives_new_instance(self, tmp_path: Path):
        """A restarted process sees the same registrations."""
        BranchRegistry(tmp_path).register("feature/a", "a", "/wt/a")

        assert BranchRegistry(tmp_path).get("feature/a") is not None

    def test_file_is_json_list(self, branch_registry: BranchRegistry):
        """Registry file is a readable JSON list."""
        branch_registry.register("feature/a", "a", "/wt/a")

        data = json.loads(branch_registry.path.read_text())

        assert data[0]["branch"] == "feature/a"
        assert data[0]["feature_id"] == "a"

    def test_corrupt_file_raises(self, branch_registry: BranchRegistry):
        """A corrupt registry is reported, not silently reset."""
        branch_registry.state_dir.mkdir(parents=True, exist_ok=True)
        branch_registry.path.write_text("{not json")

        with pytest.raises(RegistryError):
            branch_registry.entries()

    def test_lock_timeout_raises(self, branch_registry: BranchRegistry, monkeypatch):
        """A held lock times out with RegistryError."""
        monkeypatch.setattr(BranchRegistry, "LOCK_TIMEOUT", 0.1)
        contender = BranchRegistry(branch_registry.state_dir)
        branch_registry.state_dir.mkdir(parents=True, exist_ok=True)

        holder = FileLock(str(branch_registry.path) + ".lock")
        with holder:
            with pytest.raises(RegistryError, match="locked"):
                contender.entries()


class TestPrune:
    """Tests for prune()."""

    def test_prune_returns_removed(self, branch_registry: BranchRegistry):
        """Entries failing keep() are dropped and returned."""
        branch_registry.register("feature/a", "a", "/wt/a")
        branch_registry.register("feature/b", "b", "/wt/b")

        removed = branch_registry.prune(lambda e: e.feature_id == "a")

        assert [e.branch for e in removed] == ["feature/b"]
        assert [e.branch for e in branch_registry.entries()] == ["feature/a"]

    def test_prune_nothing(self, branch_registry: BranchRegistry):
        """Keeping everything changes nothing."""
        branch_registry.register("feature/a", "a", "/wt/a")

        assert branch_registry.prune(lambda e: True) == []
