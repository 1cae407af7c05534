"""
User overrides layered over discovered associations.

An association can be ignored outright, or have single concepts deleted
from it. The overlay only filters what discovery returns; the engine's
index is never touched. Every change is saved as soon as it is made.
"""

import dataclasses
import json
import logging
import os
from pathlib import Path

from .types import NoteAssociation, PreferenceState, pair_key

logger = logging.getLogger(__name__)


class JsonPreferenceStore:
    """PreferenceState in a JSON file; a missing or corrupt file reads as empty."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> PreferenceState:
        if not self.path.exists():
            return PreferenceState()
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            return PreferenceState.from_dict(data if isinstance(data, dict) else {})
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable preferences %s: %s", self.path, e)
            return PreferenceState()

    def save(self, state: PreferenceState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)


class InMemoryPreferenceStore:
    """PreferenceState held in memory, for ephemeral runs."""

    def __init__(self, state: PreferenceState | None = None):
        self._state = PreferenceState.from_dict((state or PreferenceState()).to_dict())

    def load(self) -> PreferenceState:
        return PreferenceState.from_dict(self._state.to_dict())

    def save(self, state: PreferenceState) -> None:
        self._state = PreferenceState.from_dict(state.to_dict())


class PreferenceOverlay:
    """
    Ignore/delete decisions applied to association results.

    Args:
        store: PreferenceStore with load() and save()
    """

    def __init__(self, store):
        self._store = store

    @staticmethod
    def association_id(source_note_id: str, target_note_id: str) -> str:
        return pair_key(source_note_id, target_note_id)

    def ignored_associations(self) -> set[str]:
        return set(self._store.load().ignored_associations)

    def is_ignored(self, association_id: str) -> bool:
        return association_id in self.ignored_associations()

    def deleted_concepts(self, association_id: str) -> set[str]:
        return set(self._store.load().deleted_concepts.get(association_id, set()))

    def ignore_association(self, association_id: str) -> None:
        state = self._store.load()
        state.ignored_associations.add(association_id)
        self._store.save(state)
        logger.info("Ignored association %s", association_id)

    def unignore_association(self, association_id: str) -> None:
        state = self._store.load()
        state.ignored_associations.discard(association_id)
        self._store.save(state)

    def delete_concept(self, association_id: str, concept: str) -> None:
        state = self._store.load()
        state.deleted_concepts.setdefault(association_id, set()).add(concept)
        self._store.save(state)
        logger.info("Removed concept %r from association %s", concept, association_id)

    def restore_concept(self, association_id: str, concept: str) -> None:
        state = self._store.load()
        deleted = state.deleted_concepts.get(association_id)
        if deleted is not None:
            deleted.discard(concept)
            if not deleted:
                del state.deleted_concepts[association_id]
        self._store.save(state)

    def clear_ignored_associations(self) -> None:
        state = self._store.load()
        state.ignored_associations = set()
        self._store.save(state)

    def clear_deleted_concepts(self) -> None:
        state = self._store.load()
        state.deleted_concepts = {}
        self._store.save(state)

    def filter_associations(self, associations: list[NoteAssociation]) -> list[NoteAssociation]:
        """Apply the overlay; the input list and its items are left untouched."""
        state = self._store.load()
        result = []
        for association in associations:
            key = association.key
            if key in state.ignored_associations:
                continue
            deleted = state.deleted_concepts.get(key)
            if deleted:
                shared = [c for c in association.shared_concepts if c not in deleted]
                if not shared:
                    continue
                association = dataclasses.replace(association, shared_concepts=shared)
            result.append(association)
        return result
