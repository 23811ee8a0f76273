"""Prompt construction for agent runs, including image attachments."""

from __future__ import annotations

import base64
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentboard.core.models import Feature
from agentboard.core.utils import resolve_in

logger = logging.getLogger(__name__)


@dataclass
class PromptContent:
    """Prompt ready for a provider.

    content is a plain string when there is nothing but text, otherwise a list
    of content blocks ({"type": "text"} / {"type": "image"}).
    """

    content: str | list[dict[str, Any]]
    has_images: bool

    @property
    def text(self) -> str:
        """Text portion of the prompt (empty if image-only)."""
        if isinstance(self.content, str):
            return self.content
        return "\n\n".join(b["text"] for b in self.content if b.get("type") == "text")


def build_feature_prompt(feature: Feature) -> str:
    """Initial instructions for implementing a feature."""
    lines = ["Implement the following feature in this repository.", "", f"# {feature.title}"]
    if feature.description:
        lines += ["", feature.description]
    if feature.category:
        lines += ["", f"Category: {feature.category}"]
    if feature.tags:
        lines.append(f"Tags: {', '.join(feature.tags)}")
    lines += [
        "",
        "Work only inside the current directory. Leave your changes uncommitted;",
        "they will be reviewed and committed after approval.",
    ]
    return "\n".join(lines)


def build_follow_up_prompt(feature: Feature, message: str) -> str:
    """Instructions for continuing a feature with new input."""
    return (
        f'Continue working on the feature "{feature.title}".\n\n'
        f"{feature.description}\n\n"
        f"Follow-up instructions:\n{message}"
    ).strip()


def _image_block(path: Path) -> dict[str, Any]:
    media_type = mimetypes.guess_type(path.name)[0] or "image/png"
    data = base64.standard_b64encode(path.read_bytes()).decode("ascii")
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def build_prompt_with_images(
    text: str,
    image_paths: list[str] | None = None,
    work_dir: Path | None = None,
    include_image_paths: bool = False,
) -> PromptContent:
    """Combine prompt text and image attachments into content blocks.

    Relative image paths resolve against work_dir. Images that cannot be read
    are logged and skipped; if none load, the plain text is returned.
    Whitespace-only text is dropped when images are present.
    """
    if not image_paths:
        return PromptContent(content=text, has_images=False)

    text_content = text
    if include_image_paths:
        listing = "\n".join(f"- {p}" for p in image_paths)
        text_content = f"{text}\n\nAttached images:\n{listing}"

    blocks: list[dict[str, Any]] = []
    if text_content.strip():
        blocks.append({"type": "text", "text": text_content})

    root = work_dir or Path.cwd()
    for image_path in image_paths:
        try:
            blocks.append(_image_block(resolve_in(image_path, root)))
        except OSError as e:
            logger.warning(f"Skipping unreadable image {image_path}: {e}")

    if len(blocks) == 1 and blocks[0]["type"] == "text":
        return PromptContent(content=text_content, has_images=True)
    if not blocks:
        return PromptContent(content=text, has_images=True)
    return PromptContent(content=blocks, has_images=True)
