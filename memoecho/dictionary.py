"""
Lightweight concept dictionary: names, aliases and note counts.

Used as the reuse hint for the extractor and as the alias-table matcher
when no vector registry is configured.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .types import ConceptMatch, utc_now

logger = logging.getLogger(__name__)

DICTIONARY_VERSION = "1.0"

EXACT_CONFIDENCE = 1.0
ALIAS_CONFIDENCE = 0.95
NEW_CONFIDENCE = 0.5


@dataclass
class DictionaryEntry:
    aliases: list[str] = field(default_factory=list)
    created_at: str = ""
    note_count: int = 0


@dataclass
class ConceptDictionary:
    version: str = DICTIONARY_VERSION
    last_updated: str = ""
    concepts: dict[str, DictionaryEntry] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "last_updated": self.last_updated,
            "concepts": {
                name: {
                    "aliases": list(entry.aliases),
                    "created_at": entry.created_at,
                    "note_count": entry.note_count,
                }
                for name, entry in self.concepts.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConceptDictionary":
        concepts = {}
        entries = data.get("concepts") or {}
        if not isinstance(entries, dict):
            raise ValueError("concepts is not an object")
        for name, raw in entries.items():
            raw = raw or {}
            if not isinstance(raw, dict):
                raise ValueError(f"entry for {name!r} is not an object")
            concepts[str(name)] = DictionaryEntry(
                aliases=[str(a) for a in raw.get("aliases") or []],
                created_at=str(raw.get("created_at", "")),
                note_count=int(raw.get("note_count", 0)),
            )
        return cls(
            version=str(data.get("version", DICTIONARY_VERSION)),
            last_updated=str(data.get("last_updated", "")),
            concepts=concepts,
        )

    def add_or_count(self, name: str, aliases: Optional[list[str]] = None) -> None:
        """Add a new concept, or count one more note for an existing one."""
        now = utc_now()
        existing = self.concepts.get(name)
        if existing is None:
            self.concepts[name] = DictionaryEntry(
                aliases=list(dict.fromkeys(aliases or [])),
                created_at=now,
                note_count=1,
            )
        else:
            existing.note_count += 1
            if aliases:
                existing.aliases = list(dict.fromkeys(existing.aliases + list(aliases)))
        self.last_updated = now


class ConceptDictionaryStore:
    """
    JSON file holding the concept dictionary.

    A missing file reads as an empty dictionary, and so does a corrupt
    one (after logging), so a bad file never blocks indexing.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> ConceptDictionary:
        if not self.path.exists():
            return ConceptDictionary()
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("dictionary root is not an object")
            return ConceptDictionary.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable concept dictionary %s: %s", self.path, e)
            return ConceptDictionary()

    def save(self, dictionary: ConceptDictionary) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(dictionary.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)


def _normalize(term: str) -> str:
    return term.strip().lower()


class ConceptMatcher:
    """Matches terms against dictionary names, then aliases."""

    def __init__(self, dictionary: ConceptDictionary):
        self._names: dict[str, str] = {}
        self._aliases: dict[str, str] = {}
        for name, entry in dictionary.concepts.items():
            self._names[_normalize(name)] = name
            for alias in entry.aliases:
                self._aliases.setdefault(_normalize(alias), name)

    def match(self, term: str) -> ConceptMatch:
        key = _normalize(term)
        if key in self._names:
            return ConceptMatch(term, self._names[key], "exact", EXACT_CONFIDENCE)
        if key in self._aliases:
            return ConceptMatch(term, self._aliases[key], "alias", ALIAS_CONFIDENCE)
        return ConceptMatch(term, term.strip(), "new", NEW_CONFIDENCE)
