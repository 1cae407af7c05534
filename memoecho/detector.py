"""
Note-type gating.

Decides whether a note is worth sending to concept extraction. Checks run
in a fixed order and the first one that fires wins.
"""

import re
from typing import Iterable, Optional

from .config import SkipRules
from .types import NoteTypeDetection

_IMAGE_EMBED = re.compile(r"!\[\[.*?\]\]")
_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`]+`")
_FRONTMATTER = re.compile(r"^---[\s\S]*?---")

# Characters of text one embedded image is taken to stand for
IMAGE_WEIGHT = 50
MIN_IMAGES_FOR_COLLECTION = 5
LIST_MIN_LINES = 20
LIST_MAX_AVG_LINE = 30


def strip_markup(content: str) -> str:
    """Remove embeds, code and frontmatter, leaving the prose."""
    text = _IMAGE_EMBED.sub("", content)
    text = _CODE_FENCE.sub("", text)
    text = _INLINE_CODE.sub("", text)
    text = _FRONTMATTER.sub("", text)
    return text.strip()


class NoteTypeDetector:
    """Classifies notes and flags the ones extraction should skip."""

    def __init__(self, rules: Optional[SkipRules] = None):
        self.rules = rules or SkipRules()
        self.rules.validate()

    def update_rules(self, rules: SkipRules) -> None:
        rules.validate()
        self.rules = rules

    def detect(
        self,
        path: str,
        content: str,
        tags: Optional[Iterable[str]] = None,
    ) -> NoteTypeDetection:
        rules = self.rules

        for prefix in rules.skip_paths:
            if path.startswith(prefix):
                return NoteTypeDetection(
                    type="template", confidence=1.0, should_skip=True,
                    reason=f"Path matches skip rule: {prefix}",
                )

        skip_tags = {t.lstrip("#") for t in rules.skip_tags}
        for tag in tags or ():
            if tag.lstrip("#") in skip_tags:
                return NoteTypeDetection(
                    type="vocabulary", confidence=1.0, should_skip=True,
                    reason=f"Tag matches skip rule: {tag}",
                )

        text = strip_markup(content)

        image_count = len(_IMAGE_EMBED.findall(content))
        if image_count > MIN_IMAGES_FOR_COLLECTION and content:
            ratio = (image_count * IMAGE_WEIGHT) / len(content)
            if ratio > rules.max_image_ratio:
                return NoteTypeDetection(
                    type="image-collection", confidence=0.9, should_skip=True,
                    reason=f"Image-heavy note ({image_count} images)",
                )

        lines = [line for line in text.split("\n") if line.strip()]
        if len(lines) > LIST_MIN_LINES:
            avg = sum(len(line) for line in lines) / len(lines)
            if avg < LIST_MAX_AVG_LINE:
                return NoteTypeDetection(
                    type="vocabulary", confidence=0.7, should_skip=True,
                    reason=f"List-like note ({len(lines)} short lines)",
                )

        if len(text) < rules.min_text_length:
            return NoteTypeDetection(
                type="normal", confidence=1.0, should_skip=True,
                reason=f"Too short ({len(text)} < {rules.min_text_length} chars)",
            )

        return NoteTypeDetection(
            type="normal", confidence=0.8, should_skip=False,
            reason="Suitable for concept extraction",
        )
