# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the agentboard test suite.

This module provides foundational fixtures used across all test modules:
- Temporary repositories (fake and real git)
- Test databases with event sourcing
- Feature factories and board configuration
- A controller wired to the scripted mock provider

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from agentboard.core.config import BoardConfig
from agentboard.core.controller import FeatureController
from agentboard.core.models import Feature, FeatureStatus
from agentboard.core.provider import MockProvider
from agentboard.core.registry import BranchRegistry
from agentboard.core.state import Database
from agentboard.core.utils import state_dir
from agentboard.core.workspace import WorkspaceManager

# =============================================================================
# Repository and File System Fixtures
# =============================================================================


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary project with a basic file structure.

    Creates:
        - src/ directory with a sample Python file
        - README.md

    Returns:
        Path to the temporary project root (not a git repository).
    """
    src_dir = tmp_path / "src"
    src_dir.mkdir()
    (src_dir / "__init__.py").write_text("")
    (src_dir / "main.py").write_text(
        '"""Main module."""\n\ndef main():\n    """Entry point."""\n    pass\n'
    )
    (tmp_path / "README.md").write_text("# Test Project\n\nA test project for agentboard.\n")
    return tmp_path


@pytest.fixture
def repo_with_git(temp_repo: Path) -> Path:
    """Create a temporary repository with actual git initialization.

    WARNING: Runs actual git commands. Slower than temp_repo.
    Only use when you need real git operations (worktrees, commits, etc.).

    Returns:
        Path to git-initialized repository with one commit.
    """
    if shutil.which("git") is None:
        pytest.skip("Git not available")

    try:
        for args in (
            ["git", "init"],
            ["git", "config", "user.email", "test@example.com"],
            ["git", "config", "user.name", "Test User"],
            ["git", "config", "commit.gpgsign", "false"],
            ["git", "add", "."],
            ["git", "commit", "-m", "Initial commit"],
        ):
            subprocess.run(args, cwd=temp_repo, check=True, capture_output=True)
        return temp_repo
    except subprocess.CalledProcessError:
        pytest.skip("Git not available")


@pytest.fixture
def run_git() -> Callable[..., str]:
    """Run a git command in a repository and return stripped stdout.

    Example:
        def test_branch(repo_with_git, run_git):
            assert run_git(repo_with_git, "branch", "--list", "feature/*") == ""
    """

    def _run(repo: Path, *args: str) -> str:
        result = subprocess.run(
            ["git", *args], cwd=repo, check=True, capture_output=True, text=True
        )
        return result.stdout.strip()

    return _run


# =============================================================================
# Database and State Management Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database with event sourcing.

    Returns:
        Initialized Database instance.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def make_feature() -> Callable[..., Feature]:
    """Factory for Feature records.

    Example:
        def test_order(make_feature):
            api = make_feature("api", deps=["db"], priority=1)
    """

    def _make(
        feature_id: str,
        deps: list[str] | None = None,
        priority: int = 2,
        status: FeatureStatus = FeatureStatus.BACKLOG,
        title: str | None = None,
    ) -> Feature:
        return Feature(
            id=feature_id,
            title=title or feature_id.capitalize(),
            dependencies=deps or [],
            priority=priority,
            status=status,
        )

    return _make


# =============================================================================
# Workspace and Controller Fixtures
# =============================================================================


@pytest.fixture
def board_config() -> BoardConfig:
    """Default board configuration (mock provider, short git timeout)."""
    config = BoardConfig(git_timeout=30)
    config.provider.name = "mock"
    return config


@pytest.fixture
def registry(repo_with_git: Path) -> BranchRegistry:
    return BranchRegistry(state_dir(repo_with_git))


@pytest.fixture
def workspace_manager(repo_with_git: Path, registry: BranchRegistry) -> WorkspaceManager:
    """WorkspaceManager on a real repository."""
    return WorkspaceManager(repo_with_git, registry)


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def controller(
    repo_with_git: Path,
    board_config: BoardConfig,
    mock_provider: MockProvider,
) -> FeatureController:
    """Controller on a real repository, running the scripted mock agent."""
    return FeatureController(repo_with_git, config=board_config, provider=mock_provider)


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "integration: marks integration tests")
    config.addinivalue_line("markers", "git: marks tests requiring git")
