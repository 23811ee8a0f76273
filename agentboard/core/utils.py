"""Shared utility functions for agentboard core modules."""

import re
import uuid
from pathlib import Path

STATE_DIR = ".agentboard"


def state_dir(project_root: Path) -> Path:
    """Directory holding the database, registry, config and assets."""
    return Path(project_root) / STATE_DIR


def feature_dir(project_root: Path, feature_id: str) -> Path:
    return state_dir(project_root) / "features" / sanitize_identifier(feature_id)


def feature_images_dir(project_root: Path, feature_id: str) -> Path:
    return feature_dir(project_root, feature_id) / "images"


def sanitize_identifier(value: str, max_length: int = 64) -> str:
    """Sanitize an id for use as a directory or branch name component.

    Prevents path traversal: separators, NUL and leading dots are removed,
    everything outside [a-zA-Z0-9_-] becomes a dash. Falls back to a random
    hex id if nothing survives.
    """
    sanitized = re.sub(r"[/\\\x00]", "-", value)
    sanitized = sanitized.lstrip(".")
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "-", sanitized)
    sanitized = sanitized[:max_length]
    if not sanitized:
        sanitized = uuid.uuid4().hex[:16]
    return sanitized


def branch_name_for(feature_id: str, prefix: str = "feature/") -> str:
    """Deterministic branch name for a feature.

    Same feature id always yields the same branch. Not random-suffixed, so a
    collision must be resolved through the branch registry.
    """
    component = re.sub(r"[^a-zA-Z0-9_-]", "-", feature_id).strip("-")
    component = re.sub(r"-{2,}", "-", component)[:64].lower()
    if not component:
        raise ValueError(f"Cannot derive a branch name from feature id {feature_id!r}")
    return f"{prefix}{component}"


def truncate_output(output: str, max_length: int = 2000) -> str:
    """Truncate output preserving both head and tail.

    Returns: First ~40% + marker + last ~60% if truncation is needed.
    """
    if len(output) <= max_length:
        return output

    if max_length < 60:
        if max_length <= 3:
            return output[:max_length]
        return output[: max_length - 3] + "..."

    truncated_chars = len(output) - max_length
    separator = f"\n\n... [{truncated_chars} chars truncated] ...\n\n"
    available = max_length - len(separator)
    if available < 20:
        return output[: max_length - 3] + "..."

    head_size = int(available * 0.4)
    tail_size = available - head_size
    return f"{output[:head_size]}{separator}{output[-tail_size:]}"


def resolve_in(path: str | Path, root: Path) -> Path:
    """Resolve a possibly-relative path against root."""
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = Path(root) / candidate
    return candidate.resolve()
