"""
Provider interfaces and the registry that builds providers from config.
"""

from .base import (
    ConceptStore,
    ConceptStoreUnavailable,
    EmbeddingProvider,
    GenerationProvider,
    NoteStore,
    PreferenceStore,
    ProviderRegistry,
    get_registry,
)

__all__ = [
    "ConceptStore",
    "ConceptStoreUnavailable",
    "EmbeddingProvider",
    "GenerationProvider",
    "NoteStore",
    "PreferenceStore",
    "ProviderRegistry",
    "get_registry",
]
