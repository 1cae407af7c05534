"""
Association discovery over the note/concept inverted index.

The engine keeps, per note, its concepts and their confidences, and per
concept, the notes that carry it. Discovery pivots on concepts: only notes
that share at least one concept are ever paired, so the cost follows
concept popularity rather than the square of the note count.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from .config import AssociationConfig, updated
from .types import AssociationStats, ConceptIndexEntry, NoteAssociation, pair_key

logger = logging.getLogger(__name__)

LINKED_CONCEPT_CONFIDENCE = 0.85
DEFAULT_INDEX_CONFIDENCE = 0.75
MISSING_CONFIDENCE = 0.7
MAX_SIZE_BONUS = 0.2

_WIKILINK = re.compile(r"\[\[([^\]]+)\]\]")


def extract_wikilink_concepts(content: str) -> list[str]:
    """
    Concept names from the wikilinks in `content`.

    Aliases (`|...`) and headings (`#...`) are dropped and only the last
    path segment is kept, so `[[_me/Docker|containers]]` yields `Docker`.
    """
    found: dict[str, None] = {}
    for match in _WIKILINK.finditer(content):
        target = match.group(1).split("|")[0].split("#")[0].strip()
        if not target:
            continue
        parts = [p for p in target.split("/") if p]
        concept = parts[-1].strip() if parts else target
        if concept:
            found.setdefault(concept, None)
    return list(found)


class AssociationEngine:
    """
    Maintains the note/concept index and ranks note pairs by shared concepts.

    Args:
        extractor: ConceptExtractor used by index_note(); optional when
            notes are only indexed from known concepts
        config: AssociationConfig; re-injected later with update_config()
    """

    def __init__(self, extractor=None, config: Optional[AssociationConfig] = None):
        self._extractor = extractor
        self.config = config or AssociationConfig()
        self.config.validate()
        self._note_concepts: dict[str, list[str]] = {}
        self._note_confidences: dict[str, list[float]] = {}
        self._concept_index: dict[str, ConceptIndexEntry] = {}

    # -- configuration -----------------------------------------------------

    def update_config(self, **changes) -> AssociationConfig:
        """Apply validated changes; on error the current config stays."""
        self.config = updated(self.config, **changes)
        return self.config

    def set_config(self, config: AssociationConfig) -> None:
        config.validate()
        self.config = config

    def get_config(self) -> AssociationConfig:
        return updated(self.config)

    # -- indexing ----------------------------------------------------------

    def index_note(
        self, note_id: str, content: str, title: Optional[str] = None
    ) -> tuple[bool, list[str]]:
        """
        Extract a note's concepts and index them.

        Wikilink targets count as concepts at 0.85 confidence unless the
        extractor already rated them higher. Returns (indexed, concepts);
        extraction failures are logged and reported as not indexed.
        """
        if self._extractor is None:
            raise RuntimeError("index_note needs an extractor; use index_note_concepts")
        try:
            extraction = self._extractor.extract(content, title)
        except Exception as e:
            logger.error("Failed to index note %s: %s", note_id, e)
            return False, []

        scores: dict[str, float] = {}
        for concept in extraction.concepts:
            scores[concept.name] = max(scores.get(concept.name, 0.0), concept.confidence)
        for concept in extract_wikilink_concepts(content):
            if LINKED_CONCEPT_CONFIDENCE > scores.get(concept, 0.0):
                scores[concept] = LINKED_CONCEPT_CONFIDENCE

        if not scores:
            return False, []
        concepts = list(scores)
        self._replace(note_id, concepts, [scores[c] for c in concepts])
        return True, concepts

    def index_note_concepts(
        self,
        note_id: str,
        concepts: list[str],
        confidences: Optional[list[float]] = None,
    ) -> tuple[bool, list[str]]:
        """
        Index a note from already-known concepts.

        Missing or misaligned confidences default to 0.75 each. Returns
        (indexed, concepts); an empty list indexes nothing.
        """
        if not concepts:
            return False, []
        if confidences is None or len(confidences) != len(concepts):
            confidences = [DEFAULT_INDEX_CONFIDENCE] * len(concepts)

        scores: dict[str, float] = {}
        for concept, confidence in zip(concepts, confidences):
            scores[concept] = max(scores.get(concept, 0.0), confidence)
        names = list(scores)
        self._replace(note_id, names, [scores[c] for c in names])
        return True, names

    def _replace(self, note_id: str, concepts: list[str], confidences: list[float]) -> None:
        self.remove_note(note_id)
        self._note_concepts[note_id] = concepts
        self._note_confidences[note_id] = confidences

        now = datetime.now(timezone.utc)
        for concept, confidence in zip(concepts, confidences):
            entry = self._concept_index.get(concept)
            if entry is None:
                entry = ConceptIndexEntry(concept=concept)
                self._concept_index[concept] = entry
            if note_id in entry.note_ids:
                continue
            entry.note_ids.append(note_id)
            n = len(entry.note_ids)
            entry.avg_confidence = (entry.avg_confidence * (n - 1) + confidence) / n
            entry.last_updated = now

    def remove_note(self, note_id: str) -> None:
        concepts = self._note_concepts.pop(note_id, [])
        self._note_confidences.pop(note_id, None)

        now = datetime.now(timezone.utc)
        for concept in concepts:
            entry = self._concept_index.get(concept)
            if entry is None or note_id not in entry.note_ids:
                continue
            entry.note_ids.remove(note_id)
            if not entry.note_ids:
                del self._concept_index[concept]
                continue
            remaining = [
                c for c in (self._confidence_of(n, concept) for n in entry.note_ids)
                if c > 0
            ]
            entry.avg_confidence = sum(remaining) / len(remaining) if remaining else 0.0
            entry.last_updated = now

    def _confidence_of(self, note_id: str, concept: str) -> float:
        concepts = self._note_concepts.get(note_id, [])
        if concept not in concepts:
            return 0.0
        return self._note_confidences[note_id][concepts.index(concept)]

    def clear_index(self) -> None:
        self._note_concepts.clear()
        self._note_confidences.clear()
        self._concept_index.clear()

    # -- discovery ---------------------------------------------------------

    def discover_associations(self) -> list[NoteAssociation]:
        """
        All note pairs sharing enough concepts, best first.

        Ranked by shared-concept count, then confidence, then discovery
        time (newest first), and capped at max_associations.
        """
        config = self.config
        if len(self._note_concepts) < 2:
            return []

        associations: list[NoteAssociation] = []
        processed: set[str] = set()

        for entry in self._concept_index.values():
            note_ids = entry.note_ids
            if len(note_ids) < 2:
                continue
            for i, source in enumerate(note_ids):
                for target in note_ids[i + 1:]:
                    if config.exclude_self_associations and source == target:
                        continue
                    key = pair_key(source, target)
                    if key in processed:
                        continue
                    processed.add(key)

                    target_concepts = self._note_concepts.get(target, [])
                    shared = [c for c in self._note_concepts.get(source, []) if c in target_concepts]
                    if len(shared) < config.min_shared_concepts:
                        continue
                    confidence = self._pair_confidence(source, target, shared)
                    if confidence >= config.min_confidence:
                        associations.append(NoteAssociation(
                            source_note_id=source,
                            target_note_id=target,
                            shared_concepts=shared,
                            confidence=confidence,
                        ))

        associations.sort(
            key=lambda a: (len(a.shared_concepts), a.confidence, a.discovered_at),
            reverse=True,
        )
        return associations[:config.max_associations]

    def _pair_confidence(self, source: str, target: str, shared: list[str]) -> float:
        total = 0.0
        counted = 0
        for concept in shared:
            source_conf = self._confidence_of(source, concept) or MISSING_CONFIDENCE
            target_conf = self._confidence_of(target, concept) or MISSING_CONFIDENCE
            total += (source_conf + target_conf) / 2
            counted += 1
        if counted == 0:
            return 0.0
        bonus = min(len(shared) / 5, MAX_SIZE_BONUS)
        return min(total / counted + bonus, 1.0)

    def discover_associations_for_note(self, note_id: str) -> list[NoteAssociation]:
        return [
            a for a in self.discover_associations()
            if note_id in (a.source_note_id, a.target_note_id)
        ]

    # -- introspection -----------------------------------------------------

    def get_stats(self) -> AssociationStats:
        """
        Index statistics.

        total_associations is the number of possible note pairs,
        n * (n - 1) / 2, not the number that pass the filters.
        """
        total_notes = len(self._note_concepts)
        total_concepts = len(self._concept_index)
        concept_refs = sum(len(c) for c in self._note_concepts.values())
        note_refs = sum(len(e.note_ids) for e in self._concept_index.values())
        return AssociationStats(
            total_notes=total_notes,
            total_concepts=total_concepts,
            total_associations=total_notes * (total_notes - 1) // 2 if total_notes > 1 else 0,
            avg_concepts_per_note=concept_refs / total_notes if total_notes else 0.0,
            avg_notes_per_concept=note_refs / total_concepts if total_concepts else 0.0,
        )

    def export_concept_index(self) -> list[ConceptIndexEntry]:
        return list(self._concept_index.values())

    def get_note_concepts(self, note_id: str) -> list[str]:
        return list(self._note_concepts.get(note_id, []))

    def get_notes_for_concept(self, concept: str) -> list[str]:
        entry = self._concept_index.get(concept)
        return list(entry.note_ids) if entry else []
