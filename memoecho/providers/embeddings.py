"""
Embedding providers.

Concept registration embeds short strings (a concept name and a one-line
reason), so any sentence-level model works. The same provider must be used
for every call against one concept store.
"""

import os

from .base import get_registry


class SentenceTransformerEmbedding:
    """
    Local embeddings via sentence-transformers.

    The default model is multilingual so Chinese and English concept
    names land in one space.
    """

    def __init__(
        self,
        model: str = "paraphrase-multilingual-MiniLM-L12-v2",
        device: str | None = None,
    ):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise RuntimeError(
                "SentenceTransformerEmbedding requires 'sentence-transformers' library"
            )

        self.model_name = model
        self._model = SentenceTransformer(model, device=device)

    @property
    def dimension(self) -> int:
        return self._model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> list[float]:
        return self._model.encode(text, normalize_embeddings=True).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._model.encode(texts, normalize_embeddings=True).tolist()


class OllamaEmbedding:
    """
    Embeddings from a local Ollama server.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
        timeout: float = 60.0,
        ensure_model: bool = True,
    ):
        from .ollama_utils import ollama_base_url, ollama_ensure_model

        self.model_name = model
        self.timeout = timeout
        self.base_url = ollama_base_url(base_url)
        if ensure_model:
            ollama_ensure_model(self.base_url, self.model_name)
        self._dimension: int | None = None

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        import requests

        if not texts:
            return []
        response = requests.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model_name, "input": texts},
            timeout=(10, self.timeout),
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama embedding failed (model={self.model_name}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        vectors = response.json()["embeddings"]
        if vectors:
            self._dimension = len(vectors[0])
        return vectors


class OpenAIEmbedding:
    """
    Embeddings via OpenAI's API.

    Requires: MEMOECHO_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    _DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIEmbedding requires 'openai' library")

        key = api_key or os.environ.get("MEMOECHO_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set MEMOECHO_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self.model_name = model
        self.timeout = timeout
        self._client = OpenAI(api_key=key, base_url=base_url)
        self._dimension = self._DIMENSIONS.get(model)

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self._client.embeddings.create(
            model=self.model_name,
            input=texts,
            timeout=self.timeout,
        )
        return [item.embedding for item in response.data]


# Register providers
_registry = get_registry()
_registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_embedding("openai", OpenAIEmbedding)
