"""
Core API for the concept graph.

MemoEcho wires the pipeline, the association engine and the preference
overlay to a vault of notes, and is the one object callers talk to:

- process_note(): detect -> extract -> resolve -> write back -> index
- index_all(): the same for every note, interruptible between notes
- associations(): discovery filtered through the user's overrides

Consumers that need to react to progress subscribe() a callback instead
of listening on a global event bus.
"""

import dataclasses
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .associations import AssociationEngine
from .config import (
    ConceptCountRule,
    MemoEchoConfig,
    get_store_path,
    load_or_create_config,
    save_config,
    updated,
)
from .detector import NoteTypeDetector
from .dictionary import ConceptDictionaryStore
from .errors import log_exception
from .exporter import build_association_export
from .extractor import ConceptExtractor
from .notes import MarkdownNoteStore
from .pipeline import ExtractionPipeline, confirm_all
from .preferences import JsonPreferenceStore, PreferenceOverlay
from .providers.base import get_registry
from .registry import ConceptRegistry, RegistryConnectionError
from .types import (
    AssociationStats,
    ConfirmedConcept,
    ExtractionResult,
    Note,
    NoteAssociation,
    SyncReport,
    pair_key,
)

logger = logging.getLogger(__name__)

PREFERENCES_FILENAME = "preferences.json"

# Events passed to subscribers as (event, payload)
EVENT_NOTE_INDEXED = "note-indexed"
EVENT_NOTE_SKIPPED = "note-skipped"
EVENT_SYNC_FINISHED = "sync-finished"
EVENT_CONFIG_UPDATED = "config-updated"

# Config sections that update_config() accepts
CONFIG_SECTIONS = ("extraction", "skip_rules", "registry", "associations", "pipeline")

ConfirmCallback = Callable[[Note, ExtractionResult], list[ConfirmedConcept]]
Subscriber = Callable[[str, dict], None]


class MemoEcho:
    """
    Concept graph over a vault of Markdown notes.

    Example:
        with MemoEcho("~/notes") as me:
            me.index_all()
            for assoc in me.associations("kafka.md"):
                print(assoc.target_note_id, assoc.shared_concepts)
    """

    def __init__(
        self,
        vault: str | Path,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[MemoEchoConfig] = None,
        notes=None,
        generation=None,
        embedder=None,
        concept_store=None,
        preference_store=None,
    ) -> None:
        """
        Open the concept graph for a vault.

        Args:
            vault: Directory holding the notes
            store_path: Directory for config, logs and the concept store;
                defaults to MEMOECHO_STORE_PATH or <vault>/.memo-echo
            config: Pre-loaded config (skips reading memo-echo.toml)
            notes: Injected NoteStore (default: Markdown files in the vault)
            generation: Injected GenerationProvider
            embedder: Injected EmbeddingProvider
            concept_store: Injected ConceptStore
            preference_store: Injected PreferenceStore
        """
        self._vault = Path(vault).expanduser()

        # --- Config resolution ---
        if config is not None:
            self._config = config
            self._store_path = Path(store_path) if store_path else config.path
        else:
            self._store_path = (
                Path(store_path).expanduser() if store_path else get_store_path(self._vault)
            )
            self._config = load_or_create_config(self._store_path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Collaborators (injected or built from config) ---
        cfg = self._config
        self._notes = notes or MarkdownNoteStore(self._vault, cfg.pipeline.concept_page_prefix)
        self._generation = generation
        self._generation_resolved = generation is not None
        self._embedder = embedder
        self._concept_store = concept_store
        self._concept_registry: Optional[ConceptRegistry] = None

        self._detector = NoteTypeDetector(cfg.skip_rules)
        self._extractor = ConceptExtractor(generation, cfg.extraction)
        self._pipeline = ExtractionPipeline(
            self._detector,
            self._extractor,
            self._notes,
            self._dictionary_store(),
            cfg.pipeline,
            cfg.concept_count_rules,
        )
        self._engine = AssociationEngine(self._extractor, cfg.associations)
        self._overlay = PreferenceOverlay(
            preference_store or JsonPreferenceStore(self._store_path / PREFERENCES_FILENAME)
        )
        self._subscribers: list[Subscriber] = []

        self._load_index()

    # -- wiring ------------------------------------------------------------

    def _dictionary_store(self) -> ConceptDictionaryStore:
        return ConceptDictionaryStore(self._vault / self._config.pipeline.dictionary_path)

    def _registry_enabled(self) -> bool:
        return self._concept_store is not None or self._config.concept_store.name != "none"

    def _get_concept_registry(self) -> Optional[ConceptRegistry]:
        """Build the concept registry on first use, or None if disabled."""
        if self._concept_registry is not None:
            return self._concept_registry
        if not self._registry_enabled():
            return None

        registry = get_registry()
        if self._embedder is None:
            self._embedder = registry.create_embedding(
                self._config.embedding.name, self._config.embedding.params,
            )
        if self._concept_store is None:
            params = dict(self._config.concept_store.params)
            if self._config.concept_store.name == "chroma" and "host" not in params:
                params.setdefault("path", str(self._store_path))
            self._concept_store = registry.create_concept_store(
                self._config.concept_store.name, params,
            )
        self._concept_registry = ConceptRegistry(
            self._concept_store, self._embedder, self._config.registry,
        )
        return self._concept_registry

    def _get_generation(self):
        """
        Build the generation provider on first use.

        A provider that cannot be created (e.g. Ollama not running) is
        logged once and extraction runs on the rules for this session.
        """
        if self._generation_resolved:
            return self._generation
        self._generation_resolved = True
        try:
            self._generation = get_registry().create_generation(
                self._config.generation.name, self._config.generation.params,
            )
        except Exception as e:
            logger.warning(
                "Generation provider %r unavailable, using rule-based extraction: %s",
                self._config.generation.name, e,
            )
            self._generation = None
        return self._generation

    def _load_index(self) -> None:
        """Rebuild the association index from concepts recorded in the notes."""
        loaded = 0
        for note_id in self._notes.list_notes():
            try:
                concepts = self._notes.read_metadata(note_id).get("concepts") or []
            except (OSError, ValueError) as e:
                logger.warning("Cannot read metadata of %s: %s", note_id, e)
                continue
            if concepts:
                self._engine.index_note_concepts(note_id, concepts)
                loaded += 1
        logger.debug("Loaded %d indexed note(s) from %s", loaded, self._vault)

    # -- events ------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback(event, payload)`. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: str, payload: dict) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, payload)
            except Exception as e:
                logger.warning("Subscriber failed on %s: %s", event, e)

    # -- indexing ----------------------------------------------------------

    def process_note(
        self,
        note_id: str,
        confirm: Optional[ConfirmCallback] = None,
    ) -> ExtractionResult:
        """
        Extract, confirm, persist and index one note.

        `confirm(note, result)` chooses which proposed concepts to keep;
        by default every concept is kept under its resolved name.

        Raises:
            RegistryConnectionError: The concept store is unreachable
        """
        note = self._notes.read_note(note_id)
        self._pipeline.registry = self._get_concept_registry()
        self._extractor.set_provider(self._get_generation())
        result = self._pipeline.extract(note)

        if result.skipped:
            logger.info("Skipped %s: %s", note_id, result.reason)
            self._emit(EVENT_NOTE_SKIPPED, {
                "note_id": note_id, "reason": result.reason, "note_type": result.note_type,
            })
            return result

        confirmed = confirm(note, result) if confirm else confirm_all(result)
        self._pipeline.apply(note, confirmed)

        confidences = {c.name: c.confidence for c in confirmed}
        if self._pipeline.config.inject_to_frontmatter:
            names = self._notes.read_metadata(note_id).get("concepts") or []
        else:
            names = list(confidences)
        if names:
            self._engine.index_note_concepts(
                note_id, names, [confidences.get(n, 0.75) for n in names],
            )
        logger.info("Indexed %s with %d concept(s)", note_id, len(names))
        self._emit(EVENT_NOTE_INDEXED, {"note_id": note_id, "concepts": names})
        return result

    def index_all(self, stop=None, only_changed: bool = False) -> SyncReport:
        """
        Process every note in the vault, one at a time.

        Args:
            stop: Object with is_set() (e.g. threading.Event), checked
                between notes; when set the pass ends early
            only_changed: Skip notes not modified since they were indexed

        A failing note is logged and counted; the pass continues. An
        unreachable concept store aborts the pass.
        """
        report = SyncReport()
        for note_id in self._notes.list_notes():
            if stop is not None and stop.is_set():
                report.stopped = True
                logger.info("Indexing stopped after %d note(s)", report.processed)
                break
            try:
                if only_changed and hasattr(self._notes, "needs_reindex") \
                        and not self._notes.needs_reindex(note_id):
                    report.skipped += 1
                    continue
                result = self.process_note(note_id)
            except RegistryConnectionError:
                raise
            except Exception as e:
                log_exception(e, "index", note_id=note_id, store_path=self._store_path)
                logger.warning("Failed to index %s: %s", note_id, e)
                report.failed += 1
                report.failures[note_id] = str(e)
                continue
            if result.skipped:
                report.skipped += 1
            else:
                report.processed += 1

        self._emit(EVENT_SYNC_FINISHED, dataclasses.asdict(report))
        return report

    def remove_note(self, note_id: str) -> None:
        """Drop a note from the index and clear its stored concepts."""
        self._engine.remove_note(note_id)
        if self._notes.exists(note_id):
            self._notes.clear_metadata(note_id)

    # -- queries -----------------------------------------------------------

    def associations(self, note_id: Optional[str] = None) -> list[NoteAssociation]:
        """Discovered associations (for one note if given), minus user overrides."""
        if note_id is None:
            found = self._engine.discover_associations()
        else:
            found = self._engine.discover_associations_for_note(note_id)
        return self._overlay.filter_associations(found)

    def note_concepts(self, note_id: str) -> list[str]:
        return self._engine.get_note_concepts(note_id)

    def stats(self) -> AssociationStats:
        return self._engine.get_stats()

    def export(self, note_id: Optional[str] = None) -> dict:
        return build_association_export(self.associations(note_id), self.stats(), note_id)

    # -- overrides ---------------------------------------------------------

    def ignore(self, note_a: str, note_b: str) -> None:
        self._overlay.ignore_association(pair_key(note_a, note_b))

    def unignore(self, note_a: str, note_b: str) -> None:
        self._overlay.unignore_association(pair_key(note_a, note_b))

    def delete_concept(self, note_a: str, note_b: str, concept: str) -> None:
        self._overlay.delete_concept(pair_key(note_a, note_b), concept)

    def restore_concept(self, note_a: str, note_b: str, concept: str) -> None:
        self._overlay.restore_concept(pair_key(note_a, note_b), concept)

    # -- configuration -----------------------------------------------------

    @property
    def config(self) -> MemoEchoConfig:
        return self._config

    def update_config(self, section: str, *, save: bool = True, **changes: Any) -> Any:
        """
        Change one config section and push it to the components using it.

        Raises:
            ValueError: Unknown section or field, or an invalid value; the
                current configuration is left as it was
        """
        if section not in CONFIG_SECTIONS:
            raise ValueError(
                f"Unknown config section: {section!r}. Available: {', '.join(CONFIG_SECTIONS)}"
            )
        new_section = updated(getattr(self._config, section), **changes)
        self._config = dataclasses.replace(self._config, **{section: new_section})
        self._apply_config()
        if save:
            save_config(self._config)
        self._emit(EVENT_CONFIG_UPDATED, {"section": section, "changes": dict(changes)})
        return new_section

    def set_count_rules(self, rules: list[ConceptCountRule], *, save: bool = True) -> None:
        for rule in rules:
            rule.validate()
        self._config = dataclasses.replace(self._config, concept_count_rules=list(rules))
        self._apply_config()
        if save:
            save_config(self._config)
        self._emit(EVENT_CONFIG_UPDATED, {"section": "concept_count_rules", "changes": {}})

    def _apply_config(self) -> None:
        cfg = self._config
        self._detector.update_rules(cfg.skip_rules)
        self._extractor.set_config(cfg.extraction)
        self._engine.set_config(cfg.associations)
        self._pipeline.update_config(cfg.pipeline, cfg.concept_count_rules, self._dictionary_store())
        if hasattr(self._notes, "concept_page_prefix"):
            self._notes.concept_page_prefix = cfg.pipeline.concept_page_prefix
        if self._concept_registry is not None:
            self._concept_registry.set_options(cfg.registry)

    # -- lifecycle ---------------------------------------------------------

    def close(self) -> None:
        """Detach the operations log handler."""
        if self._ops_log_handler is not None:
            logging.getLogger("memoecho").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
