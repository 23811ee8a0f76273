"""Parsing and rendering helpers for `git status` and `git diff` output.

No subprocess calls here: WorkspaceManager runs git and feeds the raw output
through these functions.
"""

from __future__ import annotations

import logging
from pathlib import Path

from agentboard.core.models import FileStatus

logger = logging.getLogger(__name__)

GIT_STATUS_MAP = {
    "M": "Modified",
    "A": "Added",
    "D": "Deleted",
    "R": "Renamed",
    "C": "Copied",
    "U": "Updated",
    "?": "Untracked",
    "!": "Ignored",
    " ": "Unmodified",
}

BINARY_EXTENSIONS = frozenset(
    {
        # Images
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".svg",
        # Documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # Archives
        ".zip", ".tar", ".gz", ".rar", ".7z",
        # Binaries
        ".exe", ".dll", ".so", ".dylib",
        # Media
        ".mp3", ".mp4", ".wav", ".avi", ".mov", ".mkv",
        # Fonts
        ".ttf", ".otf", ".woff", ".woff2", ".eot",
        # Databases and compiled output
        ".db", ".sqlite", ".sqlite3", ".pyc", ".pyo", ".class", ".o", ".obj",
    }
)

# Unmerged XY pairs in porcelain v1
UNMERGED_STATUSES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})

MAX_SYNTHETIC_FILE_BYTES = 1_000_000


def is_binary_path(path: str) -> bool:
    """Classify a path as binary by extension."""
    return Path(path).suffix.lower() in BINARY_EXTENSIONS


def primary_status(index_status: str, worktree_status: str) -> str:
    """Collapse the XY pair into one status code.

    Untracked wins, then the staged (index) status, then the worktree status.
    """
    if index_status == "?" or worktree_status == "?":
        return "?"
    if index_status not in (" ", "?"):
        return index_status
    return worktree_status


def status_text(index_status: str, worktree_status: str) -> str:
    """Human readable status, e.g. "Modified (staged), Deleted (unstaged)"."""
    if index_status == "?" and worktree_status == "?":
        return "Untracked"
    if index_status == "!" and worktree_status == "!":
        return "Ignored"

    parts = []
    if index_status not in (" ", "?"):
        parts.append(f"{GIT_STATUS_MAP.get(index_status, index_status)} (staged)")
    if worktree_status not in (" ", "?"):
        parts.append(f"{GIT_STATUS_MAP.get(worktree_status, worktree_status)} (unstaged)")
    return ", ".join(parts) or "Unknown"


def _make_status(xy: str, path: str, old_path: str | None = None) -> FileStatus:
    index_status, worktree_status = xy[0], xy[1]
    return FileStatus(
        path=path,
        status=primary_status(index_status, worktree_status),
        index_status=index_status,
        worktree_status=worktree_status,
        status_text=status_text(index_status, worktree_status),
        old_path=old_path,
        is_binary=is_binary_path(path),
    )


def parse_porcelain(output: str) -> list[FileStatus]:
    """Parse `git status --porcelain=v1` output.

    Accepts both the NUL-separated form (`-z`) and the line form.

    Line form:  "XY PATH" or "XY ORIG -> PATH" for renames/copies
    -z form:    "XY PATH\\0" or "XY PATH\\0ORIG\\0" for renames/copies
                (destination first, no arrow)
    """
    if "\x00" in output:
        return _parse_nul_separated(output)

    statuses = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        xy, rest = line[:2], line[3:]
        old_path = None
        if xy[0] in "RC" and " -> " in rest:
            old_path, rest = rest.split(" -> ", 1)
        statuses.append(_make_status(xy, _unquote(rest), _unquote(old_path) if old_path else None))
    return statuses


def _parse_nul_separated(output: str) -> list[FileStatus]:
    entries = [e for e in output.split("\x00") if e]
    statuses = []
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if len(entry) < 4:
            continue
        xy, path = entry[:2], entry[3:]
        old_path = None
        if xy[0] in "RC" and i < len(entries):
            old_path = entries[i]
            i += 1
        statuses.append(_make_status(xy, path, old_path))
    return statuses


def _unquote(path: str) -> str:
    # Line-form output quotes paths with special characters
    if len(path) >= 2 and path[0] == '"' and path[-1] == '"':
        # C-style escapes with octal UTF-8 bytes, e.g. "caf\303\251.txt"
        unescaped = path[1:-1].encode("utf-8").decode("unicode_escape")
        return unescaped.encode("latin-1").decode("utf-8", errors="replace")
    return path


def has_conflicts(statuses: list[FileStatus]) -> bool:
    """True if any entry is an unmerged path."""
    return any(
        f"{s.index_status}{s.worktree_status}" in UNMERGED_STATUSES or s.status == "U"
        for s in statuses
    )


def synthesize_untracked_diff(
    root: Path,
    rel_path: str,
    max_file_bytes: int = MAX_SYNTHETIC_FILE_BYTES,
) -> str:
    """Build a unified diff that adds an untracked file in full.

    git does not diff paths it has never seen, so the whole content is
    rendered as an addition. Binary files get a one-line stub, directories are
    expanded recursively, unreadable files get a placeholder hunk.
    """
    full_path = Path(root) / rel_path
    if full_path.is_dir():
        parts = []
        for child in sorted(full_path.rglob("*")):
            if child.is_file():
                parts.append(
                    synthesize_untracked_diff(
                        root, child.relative_to(root).as_posix(), max_file_bytes
                    )
                )
        return "".join(parts)

    header = (
        f"diff --git a/{rel_path} b/{rel_path}\n"
        "new file mode 100644\n"
        "index 0000000..0000000\n"
    )

    if is_binary_path(rel_path):
        return f"{header}Binary file {rel_path} added\n"

    try:
        size = full_path.stat().st_size
        if size > max_file_bytes:
            return (
                f"{header}--- /dev/null\n+++ b/{rel_path}\n"
                f"@@ -0,0 +1,1 @@\n+[File too large to display: {size} bytes]\n"
            )
        raw = full_path.read_bytes()
    except OSError as e:
        logger.warning(f"Cannot read untracked file {full_path}: {e}")
        return (
            f"{header}--- /dev/null\n+++ b/{rel_path}\n"
            "@@ -0,0 +1,1 @@\n+[Unable to read file content]\n"
        )

    if b"\x00" in raw:
        return f"{header}Binary file {rel_path} added\n"
    if not raw:
        return f"{header}--- /dev/null\n+++ b/{rel_path}\n"

    content = raw.decode("utf-8", errors="replace")
    has_trailing_newline = content.endswith("\n")
    lines = content.split("\n")
    if has_trailing_newline:
        lines = lines[:-1]

    body = "".join(f"+{line}\n" for line in lines)
    if not has_trailing_newline:
        body += "\\ No newline at end of file\n"
    return f"{header}--- /dev/null\n+++ b/{rel_path}\n@@ -0,0 +1,{len(lines)} @@\n{body}"
