"""
memo-echo: a concept graph over a vault of Markdown notes.

Extracts abstract concepts from notes, deduplicates them against a
vector-indexed registry, and discovers associations between notes that
share concepts.

Quick start:
    from memoecho import MemoEcho

    with MemoEcho("~/notes") as me:
        me.index_all()
        for assoc in me.associations():
            print(assoc.source_note_id, assoc.target_note_id, assoc.shared_concepts)
"""

# Configure quiet mode early (before any library imports)
from .logging_config import configure_quiet_mode
configure_quiet_mode()

from .api import MemoEcho
from .associations import AssociationEngine
from .config import MemoEchoConfig
from .detector import NoteTypeDetector
from .extractor import ConceptExtractor
from .pipeline import ExtractionPipeline
from .preferences import PreferenceOverlay
from .registry import ConceptRegistry, RegistryConnectionError, RegistryError
from .types import (
    AssociationStats,
    ConceptExtraction,
    ExtractedConcept,
    Note,
    NoteAssociation,
    SyncReport,
)

__version__ = "0.1.0"
__all__ = [
    "AssociationEngine",
    "AssociationStats",
    "ConceptExtraction",
    "ConceptExtractor",
    "ConceptRegistry",
    "ExtractedConcept",
    "ExtractionPipeline",
    "MemoEcho",
    "MemoEchoConfig",
    "Note",
    "NoteAssociation",
    "NoteTypeDetector",
    "PreferenceOverlay",
    "RegistryConnectionError",
    "RegistryError",
    "SyncReport",
]
