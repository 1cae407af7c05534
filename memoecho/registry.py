"""
Concept registry: deduplicates concepts against a vector-indexed store.

Matching runs in two tiers. The strict tier compares concept names alone
at a high threshold and catches near-identical spellings. The loose tier
compares a fusion of name and summary vectors at a configurable threshold
and catches synonyms whose names differ but whose context agrees. Anything
that passes neither becomes a new record.
"""

import logging
from typing import Iterable, Optional

from .config import RegistryOptions, updated
from .providers.base import ConceptStoreUnavailable
from .types import ConceptRecord, RegistryMatch

logger = logging.getLogger(__name__)

SCROLL_PAGE_SIZE = 100


class RegistryError(Exception):
    """A concept could not be registered or matched."""


class RegistryConnectionError(RegistryError):
    """The concept store is unreachable; the caller must act on it."""

    def __init__(self, message: str, location: str = ""):
        super().__init__(message)
        self.location = location


def concept_link(prefix: str, name: str) -> str:
    return f"[[{prefix}/{name}]]"


class ConceptRegistry:
    """
    Resolves concept names to canonical registry entries.

    Args:
        store: ConceptStore backend
        embedder: EmbeddingProvider used for both names and summaries
        options: RegistryOptions (thresholds, page prefix)
    """

    def __init__(self, store, embedder, options: Optional[RegistryOptions] = None):
        self._store = store
        self._embedder = embedder
        self.options = options or RegistryOptions()
        self.options.validate()

    def _unavailable(self, exc: ConceptStoreUnavailable) -> RegistryConnectionError:
        location = exc.location or getattr(self._store, "location", "")
        message = (
            f"Cannot reach the concept store{f' at {location}' if location else ''}.\n"
            "Check that:\n"
            "  1. the store backend is running (or the store directory is readable)\n"
            "  2. [concept_store] in memo-echo.toml points at the right location\n"
            f"Cause: {exc}"
        )
        logger.error("Concept store unreachable: %s", exc)
        return RegistryConnectionError(message, location=location)

    def _embed(self, name: str, reason: str) -> tuple[list[float], list[float]]:
        try:
            vectors = self._embedder.embed_batch([name, reason or name])
        except Exception as e:
            logger.error("Failed to embed concept %r: %s", name, e)
            raise RegistryError(f"Failed to generate embeddings for concept {name!r}: {e}") from e
        return vectors[0], vectors[1]

    def _touch(self, concept: str, reason: str, concept_vec, summary_vec) -> None:
        """Record a match against an existing concept."""
        try:
            if self.options.update_summary and reason:
                existing = self._store.get_concept(concept)
                if existing is not None:
                    self._store.upsert_concept(
                        concept, reason, existing.link, concept_vec, summary_vec,
                    )
            self._store.update_usage_with_vectors(concept, concept_vec, summary_vec)
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e
        except Exception as e:
            logger.warning("Failed to update usage for %r: %s", concept, e)

    def register_or_match(self, name: str, reason: str = "") -> RegistryMatch:
        """
        Match `name` to an existing concept or register it as new.

        Raises:
            RegistryConnectionError: The store cannot be reached
            RegistryError: Embedding failed or the new record could not be stored
        """
        concept_vec, summary_vec = self._embed(name, reason)

        try:
            hits = self._store.search_similar_strict(
                concept_vec, limit=1, threshold=self.options.strict_threshold,
            )
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e
        except Exception as e:
            logger.warning("Strict concept search failed (continuing): %s", e)
            hits = []

        if hits:
            hit = hits[0]
            logger.debug("Strict match %r -> %r (%.3f)", name, hit.record.concept, hit.score)
            self._touch(hit.record.concept, reason, concept_vec, summary_vec)
            return RegistryMatch(
                matched=True, concept=hit.record.concept, summary=hit.record.summary,
                similarity=hit.score, is_new=False,
            )

        try:
            hits = self._store.search_similar_loose(
                concept_vec, summary_vec,
                limit=1, threshold=self.options.similarity_threshold,
            )
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e
        except Exception as e:
            logger.warning("Loose concept search failed (continuing): %s", e)
            hits = []

        if hits:
            hit = hits[0]
            logger.debug("Loose match %r -> %r (%.3f)", name, hit.record.concept, hit.score)
            self._touch(hit.record.concept, reason, concept_vec, summary_vec)
            return RegistryMatch(
                matched=True, concept=hit.record.concept, summary=hit.record.summary,
                similarity=hit.score, is_new=False,
            )

        link = concept_link(self.options.concept_page_prefix, name)
        try:
            self._store.upsert_concept(name, reason, link, concept_vec, summary_vec)
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e
        except Exception as e:
            logger.error("Failed to store concept %r: %s", name, e)
            raise RegistryError(f"Failed to store concept {name!r}: {e}") from e

        logger.info("Registered new concept %r", name)
        return RegistryMatch(
            matched=False, concept=name, summary=reason, similarity=0.0, is_new=True,
        )

    def register_or_match_batch(
        self, items: Iterable[tuple[str, str]]
    ) -> list[RegistryMatch]:
        """Resolve (name, reason) pairs in order."""
        return [self.register_or_match(name, reason) for name, reason in items]

    def get_all_concepts(self) -> list[ConceptRecord]:
        records: list[ConceptRecord] = []
        offset = None
        try:
            while True:
                page, offset = self._store.scroll(limit=SCROLL_PAGE_SIZE, offset=offset)
                records.extend(page)
                if not offset:
                    break
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e
        return records

    def get_concept(self, name: str) -> Optional[ConceptRecord]:
        try:
            return self._store.get_concept(name)
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e

    def update_usage(self, name: str) -> bool:
        """Bump the usage count of an existing concept. Returns False if unknown."""
        existing = self.get_concept(name)
        if existing is None:
            return False
        concept_vec, summary_vec = self._embed(name, existing.summary)
        try:
            self._store.update_usage_with_vectors(name, concept_vec, summary_vec)
        except ConceptStoreUnavailable as e:
            raise self._unavailable(e) from e
        return True

    def update_options(self, **changes) -> RegistryOptions:
        """Apply validated changes; on error the current options stay."""
        self.options = updated(self.options, **changes)
        return self.options

    def set_options(self, options: RegistryOptions) -> None:
        options.validate()
        self.options = options
