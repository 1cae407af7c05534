"""
Markdown note storage.

Notes are `.md` files under a vault directory, identified by their
vault-relative POSIX path. Concepts confirmed for a note are written back
into its YAML frontmatter as `me_concepts` (a list of `[[prefix/name]]`
links) with the time of indexing in `me_indexed_at`.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from .types import Note, parse_utc_timestamp, utc_now

logger = logging.getLogger(__name__)

CONCEPTS_FIELD = "me_concepts"
INDEXED_AT_FIELD = "me_indexed_at"

REINDEX_SLACK_SECONDS = 2.0

IGNORED_DIRS = frozenset({".memo-echo", ".obsidian", ".git", ".trash"})

_INLINE_TAG = re.compile(r"(?<![\w&/])#([a-zA-Z\u4e00-\u9fa5][a-zA-Z0-9\u4e00-\u9fa5\-_/]*)")
_CONCEPT_LINK = re.compile(r"^\[\[(?:.+/)?(.+?)\]\]$")


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Split a document into its YAML frontmatter and body.

    Unparseable frontmatter is treated as absent.
    """
    if not text.startswith("---"):
        return {}, text
    parts = text.split("\n---", 1)
    if len(parts) < 2:
        return {}, text
    header = parts[0][3:]
    body = parts[1]
    if body.startswith("\n"):
        body = body[1:]
    try:
        data = yaml.safe_load(header) or {}
    except yaml.YAMLError as e:
        logger.warning("Invalid frontmatter ignored: %s", e)
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, body


def join_frontmatter(frontmatter: dict, body: str) -> str:
    if not frontmatter:
        return body
    header = yaml.safe_dump(frontmatter, allow_unicode=True, sort_keys=False)
    return f"---\n{header}---\n{body}"


def concept_name_from_link(value: str) -> str:
    """`[[_me/Docker]]` -> `Docker`; plain names pass through."""
    match = _CONCEPT_LINK.match(value.strip())
    return match.group(1) if match else value.strip()


def _frontmatter_tags(frontmatter: dict) -> list[str]:
    raw = frontmatter.get("tags") or frontmatter.get("tag") or []
    if isinstance(raw, str):
        raw = re.split(r"[,\s]+", raw)
    return [str(t).lstrip("#") for t in raw if t]


class MarkdownNoteStore:
    """
    Notes stored as Markdown files in a vault directory.

    Args:
        vault: Root directory of the notes
        concept_page_prefix: Folder that concept links and pages point into
    """

    def __init__(self, vault: Path | str, concept_page_prefix: str = "_me"):
        self.vault = Path(vault)
        self.concept_page_prefix = concept_page_prefix

    def _path(self, note_id: str) -> Path:
        path = (self.vault / note_id).resolve()
        if not path.is_relative_to(self.vault.resolve()):
            raise ValueError(f"Note id escapes the vault: {note_id}")
        return path

    def list_notes(self) -> list[str]:
        ids = []
        for root, dirs, files in os.walk(self.vault):
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS and not d.startswith("."))
            for name in files:
                if name.endswith(".md"):
                    rel = Path(root, name).relative_to(self.vault)
                    ids.append(rel.as_posix())
        return sorted(ids)

    def exists(self, note_id: str) -> bool:
        return self._path(note_id).is_file()

    def _read(self, note_id: str) -> tuple[dict, str]:
        text = self._path(note_id).read_text(encoding="utf-8")
        return split_frontmatter(text)

    def read_note(self, note_id: str) -> Note:
        frontmatter, body = self._read(note_id)
        tags = _frontmatter_tags(frontmatter)
        for tag in _INLINE_TAG.findall(body):
            if tag not in tags:
                tags.append(tag)
        return Note(
            id=note_id,
            path=note_id,
            title=Path(note_id).stem,
            content=body,
            tags=tags,
        )

    def read_metadata(self, note_id: str) -> dict[str, Any]:
        """Concept names and indexing time recorded in the note."""
        frontmatter, _ = self._read(note_id)
        links = frontmatter.get(CONCEPTS_FIELD) or []
        if isinstance(links, str):
            links = [links]
        indexed_at = frontmatter.get(INDEXED_AT_FIELD)
        return {
            "concepts": [concept_name_from_link(str(v)) for v in links],
            "indexed_at": str(indexed_at) if indexed_at else None,
        }

    def write_metadata(self, note_id: str, updates: dict[str, Any]) -> None:
        """
        Merge `concepts` into the note's concept links and set `indexed_at`.

        Existing concepts are kept; new names are appended.
        """
        path = self._path(note_id)
        frontmatter, body = split_frontmatter(path.read_text(encoding="utf-8"))

        if "concepts" in updates:
            existing = frontmatter.get(CONCEPTS_FIELD) or []
            if isinstance(existing, str):
                existing = [existing]
            names = [concept_name_from_link(str(v)) for v in existing]
            for name in updates["concepts"]:
                if name not in names:
                    names.append(name)
            frontmatter[CONCEPTS_FIELD] = [
                f"[[{self.concept_page_prefix}/{n}]]" for n in names
            ]
        if "indexed_at" in updates:
            frontmatter[INDEXED_AT_FIELD] = updates["indexed_at"] or utc_now()

        path.write_text(join_frontmatter(frontmatter, body), encoding="utf-8")
        logger.debug("Updated frontmatter of %s", note_id)

    def clear_metadata(self, note_id: str) -> bool:
        """Remove the memo-echo fields. Returns True if anything changed."""
        path = self._path(note_id)
        frontmatter, body = split_frontmatter(path.read_text(encoding="utf-8"))
        if CONCEPTS_FIELD not in frontmatter and INDEXED_AT_FIELD not in frontmatter:
            return False
        frontmatter.pop(CONCEPTS_FIELD, None)
        frontmatter.pop(INDEXED_AT_FIELD, None)
        path.write_text(join_frontmatter(frontmatter, body), encoding="utf-8")
        return True

    def needs_reindex(self, note_id: str) -> bool:
        """True if the note was never indexed or changed since."""
        indexed_at: Optional[str] = self.read_metadata(note_id)["indexed_at"]
        if not indexed_at:
            return True
        try:
            indexed = parse_utc_timestamp(str(indexed_at)).timestamp()
        except ValueError:
            return True
        # Writing the frontmatter itself bumps mtime just after indexed_at
        return self._path(note_id).stat().st_mtime > indexed + REINDEX_SLACK_SECONDS

    def create_page(self, note_id: str, content: str) -> bool:
        path = self._path(note_id)
        if path.exists():
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Created concept page %s", note_id)
        return True
