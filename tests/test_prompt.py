"""Tests for prompt construction with image attachments."""

from __future__ import annotations

import base64
from pathlib import Path

from agentboard.core.models import Feature
from agentboard.core.prompt import (
    build_feature_prompt,
    build_follow_up_prompt,
    build_prompt_with_images,
)


class TestFeaturePrompts:
    """Tests for the feature and follow-up prompt text."""

    def test_feature_prompt_contents(self):
        """Title, description, category and tags appear in the prompt."""
        feature = Feature(
            id="auth",
            title="Add login",
            description="JWT based login endpoint",
            category="backend",
            tags=["api", "security"],
        )

        prompt = build_feature_prompt(feature)

        assert "# Add login" in prompt
        assert "JWT based login endpoint" in prompt
        assert "Category: backend" in prompt
        assert "Tags: api, security" in prompt
        assert "uncommitted" in prompt

    def test_follow_up_prompt(self):
        """Follow-ups reference the feature and carry the new instructions."""
        feature = Feature(id="auth", title="Add login")

        prompt = build_follow_up_prompt(feature, "Also add logout")

        assert 'feature "Add login"' in prompt
        assert prompt.endswith("Also add logout")


class TestPromptWithImages:
    """Tests for build_prompt_with_images()."""

    def test_text_only(self):
        """No images: plain string content."""
        prompt = build_prompt_with_images("do it")

        assert prompt.content == "do it"
        assert prompt.has_images is False
        assert prompt.text == "do it"

    def test_image_block_added(self, tmp_path: Path):
        """Readable images become base64 blocks with a guessed media type."""
        image = tmp_path / "shot.jpg"
        image.write_bytes(b"\xff\xd8\xff")

        prompt = build_prompt_with_images("look", ["shot.jpg"], work_dir=tmp_path)

        assert prompt.has_images is True
        text_block, image_block = prompt.content
        assert text_block == {"type": "text", "text": "look"}
        assert image_block["source"]["media_type"] == "image/jpeg"
        assert base64.b64decode(image_block["source"]["data"]) == b"\xff\xd8\xff"

    def test_image_paths_listed_when_requested(self, tmp_path: Path):
        """include_image_paths appends the attachment list to the text."""
        (tmp_path / "a.png").write_bytes(b"png")

        prompt = build_prompt_with_images(
            "fix layout", ["a.png"], work_dir=tmp_path, include_image_paths=True
        )

        assert "Attached images:\n- a.png" in prompt.text

    def test_unreadable_images_skipped(self, tmp_path: Path):
        """If no image loads, the text is sent as a plain string."""
        prompt = build_prompt_with_images("look", ["missing.png"], work_dir=tmp_path)

        assert prompt.content == "look"
        assert prompt.has_images is True

    def test_whitespace_text_dropped(self, tmp_path: Path):
        """Image-only prompts have no empty text block."""
        (tmp_path / "a.png").write_bytes(b"png")

        prompt = build_prompt_with_images("   ", ["a.png"], work_dir=tmp_path)

        assert [block["type"] for block in prompt.content] == ["image"]
        assert prompt.text == ""
