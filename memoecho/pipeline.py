"""
Per-note extraction pipeline.

detector -> dictionary -> extractor -> registry (or dictionary matcher),
then apply() writes the confirmed concepts back to the note, creates
concept pages, and updates the dictionary.
"""

import logging
from typing import Optional

from .config import ConceptCountRule, PipelineConfig, default_count_rules
from .detector import NoteTypeDetector, strip_markup
from .dictionary import ConceptDictionaryStore, ConceptMatcher
from .extractor import ConceptExtractor
from .registry import ConceptRegistry, RegistryConnectionError, RegistryError
from .types import (
    ConceptMatch,
    ConfirmedConcept,
    ExtractedConceptWithMatch,
    ExtractionResult,
    Note,
    utc_now,
)

logger = logging.getLogger(__name__)

FALLBACK_MAX_CONCEPTS = 4


def max_concepts_for_length(length: int, rules: list[ConceptCountRule]) -> int:
    """Concept budget for a note of `length` stripped characters."""
    for rule in rules:
        if length >= rule.min_chars and (rule.max_chars is None or length < rule.max_chars):
            return rule.max_concepts
    return FALLBACK_MAX_CONCEPTS


class ExtractionPipeline:
    """
    Runs one note through gating, extraction and concept resolution.

    When a registry is given, concepts resolve against it; otherwise the
    alias dictionary decides whether each concept is known.
    """

    def __init__(
        self,
        detector: NoteTypeDetector,
        extractor: ConceptExtractor,
        notes,
        dictionary_store: ConceptDictionaryStore,
        config: Optional[PipelineConfig] = None,
        count_rules: Optional[list[ConceptCountRule]] = None,
        registry: Optional[ConceptRegistry] = None,
    ):
        self.detector = detector
        self.extractor = extractor
        self.notes = notes
        self.dictionary_store = dictionary_store
        self.config = config or PipelineConfig()
        self.count_rules = count_rules if count_rules is not None else default_count_rules()
        self.registry = registry

    def update_config(
        self,
        config: PipelineConfig,
        count_rules: Optional[list[ConceptCountRule]] = None,
        dictionary_store: Optional[ConceptDictionaryStore] = None,
    ) -> None:
        config.validate()
        for rule in count_rules or ():
            rule.validate()
        self.config = config
        if count_rules is not None:
            self.count_rules = count_rules
        if dictionary_store is not None:
            self.dictionary_store = dictionary_store

    def extract(self, note: Note) -> ExtractionResult:
        """
        Propose concepts for a note.

        Raises:
            RegistryConnectionError: The concept store is unreachable
        """
        if not self.config.enable_concept_extraction:
            return ExtractionResult(skipped=True, reason="Concept extraction disabled")

        detection = self.detector.detect(note.path, note.content, note.tags)
        logger.debug("Detected %s as %s (skip=%s): %s",
                     note.id, detection.type, detection.should_skip, detection.reason)
        if detection.should_skip:
            return ExtractionResult(
                skipped=True, reason=detection.reason, note_type=detection.type,
            )

        dictionary = self.dictionary_store.load()
        matcher = ConceptMatcher(dictionary)
        max_concepts = max_concepts_for_length(len(strip_markup(note.content)), self.count_rules)

        extraction = self.extractor.extract(
            note.content,
            note.title,
            existing_concepts=list(dictionary.concepts),
            max_concepts=max_concepts,
        )
        logger.debug("Extracted %d concept(s) from %s via %s",
                     len(extraction.concepts), note.id, extraction.source)

        if extraction.skip_reason:
            return ExtractionResult(
                skipped=True, reason=extraction.skip_reason, note_type=extraction.note_type,
            )

        concepts = []
        for concept in extraction.concepts:
            match = self._resolve(concept.name, concept.reason, matcher)
            concepts.append(ExtractedConceptWithMatch(
                name=concept.name,
                confidence=concept.confidence,
                reason=concept.reason,
                match=match,
            ))
        return ExtractionResult(
            skipped=False, note_type=extraction.note_type, concepts=concepts,
        )

    def _resolve(self, name: str, reason: str, matcher: ConceptMatcher) -> ConceptMatch:
        if self.registry is None:
            return matcher.match(name)
        try:
            result = self.registry.register_or_match(name, reason)
        except RegistryConnectionError:
            raise
        except RegistryError as e:
            logger.warning("Registry failed for %r, using dictionary match: %s", name, e)
            return matcher.match(name)
        if result.is_new:
            return ConceptMatch(name, result.concept, "new", 0.5)
        return ConceptMatch(name, result.concept, "exact", result.similarity)

    def apply(self, note: Note, confirmed: list[ConfirmedConcept]) -> None:
        """Persist the concepts the caller accepted for a note."""
        if not confirmed:
            return

        if self.config.inject_to_frontmatter:
            self.notes.write_metadata(note.id, {
                "concepts": [c.name for c in confirmed],
                "indexed_at": utc_now(),
            })

        if self.config.auto_create_concept_page:
            prefix = self.config.concept_page_prefix
            for concept in confirmed:
                if concept.is_new and concept.create_page:
                    self.notes.create_page(f"{prefix}/{concept.name}.md", f"# {concept.name}\n")

        dictionary = self.dictionary_store.load()
        for concept in confirmed:
            dictionary.add_or_count(concept.name, concept.aliases)
        self.dictionary_store.save(dictionary)


def confirm_all(result: ExtractionResult) -> list[ConfirmedConcept]:
    """Accept every proposed concept under its resolved name."""
    confirmed: dict[str, ConfirmedConcept] = {}
    for concept in result.concepts:
        name = concept.match.matched_concept
        if name in confirmed:
            continue
        aliases = [concept.name] if concept.name != name else []
        confirmed[name] = ConfirmedConcept(
            name=name,
            is_new=concept.match.match_type == "new",
            create_page=concept.match.match_type == "new",
            aliases=aliases,
            confidence=concept.confidence,
        )
    return list(confirmed.values())
