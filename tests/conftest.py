"""
Pytest fixtures for memo-echo tests.

Provides fake providers so tests run without ML models, an LLM, or a
Chroma database.
"""

import hashlib
import math
from collections import Counter
from pathlib import Path

import pytest

from memoecho.api import MemoEcho
from memoecho.config import MemoEchoConfig, ProviderConfig
from memoecho.preferences import InMemoryPreferenceStore
from memoecho.providers.base import ConceptStoreUnavailable
from memoecho.store import InMemoryConceptStore


class MockEmbeddingProvider:
    """
    Deterministic embeddings from character trigrams.

    Strings with similar spelling get similar vectors, so near-identical
    concept names and summaries match the way a real model would place
    them close together. Vectors are L2-normalized.
    """

    def __init__(self, dimension: int = 512):
        self._dimension = dimension
        self.embed_calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        text = f" {text.lower().strip()} "
        grams = Counter(text[i:i + 3] for i in range(len(text) - 2))
        vector = [0.0] * self._dimension
        for gram, count in grams.items():
            bucket = int(hashlib.md5(gram.encode("utf-8")).hexdigest(), 16) % self._dimension
            vector[bucket] += count
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class FailingEmbeddingProvider:
    """Embedding provider that always raises."""

    dimension = 8

    def embed(self, text: str) -> list[float]:
        raise RuntimeError("embedding backend down")

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding backend down")


class UnreachableStore(InMemoryConceptStore):
    """Concept store whose backend is down."""

    location = "http://chroma.invalid:8000"

    def search_similar_strict(self, *args, **kwargs):
        raise ConceptStoreUnavailable("connection refused", location=self.location)


class ScriptedGeneration:
    """
    Generation provider replaying canned responses.

    Each call pops the next response; an Exception instance is raised
    instead of returned. When the script runs out, `default` is returned.
    """

    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[dict] = []

    def generate(self, system, user, *, max_tokens=1024, timeout=120.0):
        self.calls.append({
            "system": system, "user": user, "max_tokens": max_tokens, "timeout": timeout,
        })
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


def concepts_json(*names, confidence: float = 0.9) -> str:
    """A well-formed extraction response naming `names`."""
    items = ",".join(
        f'{{"name":"{n}","confidence":{confidence},"reason":"{n} is central to the note"}}'
        for n in names
    )
    return f'{{"concepts":[{items}],"noteType":"article","skipReason":null}}'


LONG_BODY = (
    "This note walks through how the system behaves under load, why the design "
    "holds up when parts of it fail, and which trade-offs were made along the way. "
    "It is long enough to pass the minimum length check."
)


def write_note(vault: Path, note_id: str, body: str = LONG_BODY, frontmatter: str = "") -> Path:
    path = vault / note_id
    path.parent.mkdir(parents=True, exist_ok=True)
    header = f"---\n{frontmatter}---\n" if frontmatter else ""
    path.write_text(header + body, encoding="utf-8")
    return path


@pytest.fixture
def mock_embedder():
    return MockEmbeddingProvider()


@pytest.fixture
def concept_store():
    return InMemoryConceptStore()


@pytest.fixture
def vault(tmp_path):
    path = tmp_path / "vault"
    path.mkdir()
    return path


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def memo_config(store_path):
    """Config that never reaches for real providers."""
    return MemoEchoConfig(
        path=store_path,
        embedding=ProviderConfig("sentence-transformers"),
        generation=ProviderConfig("none"),
        concept_store=ProviderConfig("none"),
    )


@pytest.fixture
def make_memo(vault, store_path, memo_config, mock_embedder):
    """
    Factory for MemoEcho instances over the `vault` fixture.

    Pass `generation=` to script the LLM and `concept_store=` to enable
    the registry. Instances are closed at teardown.
    """
    opened = []

    def factory(generation=None, concept_store=None, config=None, **kwargs):
        me = MemoEcho(
            vault,
            store_path,
            config=config or memo_config,
            generation=generation or ScriptedGeneration(),
            embedder=mock_embedder,
            concept_store=concept_store,
            preference_store=kwargs.pop("preference_store", InMemoryPreferenceStore()),
            **kwargs,
        )
        opened.append(me)
        return me

    yield factory
    for me in opened:
        me.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (loading real ML models or databases)"
    )
