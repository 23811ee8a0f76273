"""agentboard - Feature orchestration engine.

Runs AI coding agents against a dependency-ordered backlog of features,
each in its own git worktree, behind an explicit approval lifecycle.
"""

__version__ = "0.1.0"
