"""
Base provider protocols.

These define the interfaces that concrete providers and storage backends
must implement. Using Protocol for structural subtyping - no explicit
inheritance required.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from ..types import ConceptRecord, Note, PreferenceState, ScoredConcept


class ConceptStoreUnavailable(ConnectionError):
    """The concept store backend cannot be reached."""

    def __init__(self, message: str, *, location: str = ""):
        super().__init__(message)
        self.location = location


# -----------------------------------------------------------------------------
# Text Generation (LLM)
# -----------------------------------------------------------------------------

@runtime_checkable
class GenerationProvider(Protocol):
    """
    Sends a system+user prompt to an LLM and returns raw text.

    No format guarantees: consumers must assume the output may be
    malformed, truncated, or wrapped in code fences.

    Example implementation:
        class OpenAIGeneration:
            def generate(self, system, user, *, max_tokens=1024, timeout=120.0):
                response = self._client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "system", "content": system},
                              {"role": "user", "content": user}],
                    max_tokens=max_tokens,
                    timeout=timeout,
                )
                return response.choices[0].message.content
    """

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
        timeout: float = 120.0,
    ) -> Optional[str]:
        """
        Generate text for the prompt.

        Args:
            system: System prompt
            user: User prompt
            max_tokens: Maximum tokens in response
            timeout: Seconds before the call is abandoned

        Returns:
            Generated text, or None if the provider has no LLM capability

        Raises:
            Any transport error; callers are expected to recover.
        """
        ...


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for registering and matching
    concepts so vectors stay comparable.
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """Generate an embedding vector for the given text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        ...


# -----------------------------------------------------------------------------
# Concept Store (vector backend for the registry)
# -----------------------------------------------------------------------------

@runtime_checkable
class ConceptStore(Protocol):
    """
    Vector-indexed storage of concept records.

    Each record carries two vectors: one for the concept name and one for
    its summary (the reason it was extracted). Scores are cosine
    similarities in [0, 1] (higher is closer).

    Implementations raise ConceptStoreUnavailable when the backend cannot
    be reached.
    """

    def upsert_concept(
        self,
        concept: str,
        summary: str,
        link: str,
        concept_vector: list[float],
        summary_vector: list[float],
    ) -> None:
        """Create the record, or refresh vectors and summary if it exists."""
        ...

    def search_similar_strict(
        self,
        concept_vector: list[float],
        *,
        limit: int = 1,
        threshold: float = 0.90,
    ) -> list[ScoredConcept]:
        """Search by the concept-name vector only."""
        ...

    def search_similar_loose(
        self,
        concept_vector: list[float],
        summary_vector: list[float],
        *,
        limit: int = 1,
        threshold: float = 0.85,
    ) -> list[ScoredConcept]:
        """Search by a fusion of the name and summary vectors."""
        ...

    def scroll(
        self,
        *,
        limit: int = 100,
        offset: Optional[str] = None,
    ) -> tuple[list[ConceptRecord], Optional[str]]:
        """Return one page of records and the offset of the next page (None at end)."""
        ...

    def get_concept(self, concept: str) -> Optional[ConceptRecord]:
        """Look up a record by exact concept name."""
        ...

    def update_usage_with_vectors(
        self,
        concept: str,
        concept_vector: list[float],
        summary_vector: list[float],
    ) -> None:
        """Increment usage of an existing record and store the matching vectors."""
        ...

    def count(self) -> int:
        """Number of stored concepts."""
        ...


# -----------------------------------------------------------------------------
# Preference and note storage
# -----------------------------------------------------------------------------

@runtime_checkable
class PreferenceStore(Protocol):
    """Loads and saves the association preference overlay."""

    def load(self) -> PreferenceState:
        ...

    def save(self, state: PreferenceState) -> None:
        ...


@runtime_checkable
class NoteStore(Protocol):
    """
    Reads notes and their small structured metadata block.

    Metadata holds the note's confirmed concepts (as links) and the time
    it was last indexed.
    """

    def list_notes(self) -> list[str]:
        ...

    def read_note(self, note_id: str) -> Note:
        ...

    def read_metadata(self, note_id: str) -> dict[str, Any]:
        ...

    def write_metadata(self, note_id: str, updates: dict[str, Any]) -> None:
        ...

    def clear_metadata(self, note_id: str) -> bool:
        ...

    def exists(self, note_id: str) -> bool:
        ...

    def create_page(self, note_id: str, content: str) -> bool:
        """Create a page if missing. Returns True if it was created."""
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from
    configuration, so the store's TOML file selects providers by name
    rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)

        # Later, from config:
        provider = registry.create_embedding("sentence-transformers", {"model": "all-MiniLM-L6-v2"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._generation_providers: dict[str, type] = {}
        self._concept_stores: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load all provider modules."""
        if self._lazy_loaded:
            return

        self._lazy_loaded = True

        # Import provider modules to trigger registration
        # These imports only register classes, they don't instantiate
        from . import embeddings  # noqa: F401
        from . import llm  # noqa: F401
        from .. import store  # noqa: F401

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def register_generation(self, name: str, provider_class: type) -> None:
        """Register a text generation provider class."""
        self._generation_providers[name] = provider_class

    def register_concept_store(self, name: str, store_class: type) -> None:
        """Register a concept store backend class."""
        self._concept_stores[name] = store_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}. "
                f"Install missing dependencies or check provider name."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_generation(self, name: str, params: dict | None = None) -> GenerationProvider:
        """Create a text generation provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("generation", name, self._generation_providers, params)

    def create_concept_store(self, name: str, params: dict | None = None) -> ConceptStore:
        """Create a concept store backend instance."""
        self._ensure_providers_loaded()
        return self._create_provider("concept store", name, self._concept_stores, params)

    # Introspection

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider names."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())

    def list_generation_providers(self) -> list[str]:
        """List registered generation provider names."""
        self._ensure_providers_loaded()
        return list(self._generation_providers.keys())

    def list_concept_stores(self) -> list[str]:
        """List registered concept store names."""
        self._ensure_providers_loaded()
        return list(self._concept_stores.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
