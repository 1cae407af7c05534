"""
Tests for provider construction and request shaping.

Network clients are patched; nothing here talks to a real service.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from memoecho.providers.base import (
    ConceptStore,
    EmbeddingProvider,
    GenerationProvider,
    get_registry,
)
from memoecho.providers.llm import AnthropicGeneration, NoGeneration, OllamaGeneration, OpenAIGeneration
from memoecho.providers.ollama_utils import ollama_base_url, ollama_ensure_model
from memoecho.store import InMemoryConceptStore

from conftest import MockEmbeddingProvider, ScriptedGeneration


class TestRegistry:

    def test_builtin_names(self):
        registry = get_registry()
        assert {"anthropic", "openai", "ollama", "none"} <= set(registry.list_generation_providers())
        assert {"sentence-transformers", "ollama", "openai"} <= set(registry.list_embedding_providers())
        assert {"chroma", "memory"} <= set(registry.list_concept_stores())

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown generation provider"):
            get_registry().create_generation("nope")

    def test_constructor_errors_wrapped(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("CLAUDE_CODE_OAUTH_TOKEN", raising=False)
        with pytest.raises(RuntimeError, match="anthropic"):
            get_registry().create_generation("anthropic")

    def test_memory_store(self):
        store = get_registry().create_concept_store("memory")
        assert isinstance(store, InMemoryConceptStore)

    def test_protocols(self):
        assert isinstance(MockEmbeddingProvider(), EmbeddingProvider)
        assert isinstance(ScriptedGeneration(), GenerationProvider)
        assert isinstance(NoGeneration(), GenerationProvider)
        assert isinstance(InMemoryConceptStore(), ConceptStore)


class TestAnthropic:

    def test_generate(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
        with patch("anthropic.Anthropic") as client_cls:
            client = client_cls.return_value
            client.messages.create.return_value = MagicMock(content=[MagicMock(text='{"concepts":[]}')])
            provider = AnthropicGeneration()
            result = provider.generate("sys", "user", max_tokens=300, timeout=9.0)

        assert result == '{"concepts":[]}'
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["max_tokens"] == 300
        assert kwargs["timeout"] == 9.0

    def test_empty_content(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
        with patch("anthropic.Anthropic") as client_cls:
            client_cls.return_value.messages.create.return_value = MagicMock(content=[])
            assert AnthropicGeneration().generate("s", "u") is None


class TestOpenAI:

    def test_json_mode_and_token_limit(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("openai.OpenAI") as client_cls:
            client = client_cls.return_value
            message = MagicMock()
            message.content = "{}"
            client.chat.completions.create.return_value = MagicMock(choices=[MagicMock(message=message)])
            result = OpenAIGeneration().generate("s", "u", max_tokens=100)

        assert result == "{}"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["max_tokens"] == 100

    def test_reasoning_models_use_completion_tokens(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with patch("openai.OpenAI"):
            provider = OpenAIGeneration(model="gpt-5-mini")
        assert provider._completion_kwargs(50) == {"max_completion_tokens": 50}

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("MEMOECHO_OPENAI_API_KEY", raising=False)
        with patch("openai.OpenAI"), pytest.raises(ValueError):
            OpenAIGeneration()


class TestOllama:

    def test_base_url(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434/")
        assert ollama_base_url() == "http://gpu-box:11434"
        assert ollama_base_url("https://example.com/") == "https://example.com"

    def test_generate(self):
        response = MagicMock(ok=True)
        response.json.return_value = {"message": {"content": '  {"concepts":[]}\n'}}
        with patch("requests.post", return_value=response) as post:
            provider = OllamaGeneration(base_url="http://localhost:11434", ensure_model=False)
            assert provider.generate("s", "u", max_tokens=64, timeout=5.0) == '{"concepts":[]}'
        body = post.call_args.kwargs["json"]
        assert body["options"]["num_predict"] == 64
        assert post.call_args.kwargs["timeout"] == (10, 5.0)

    def test_http_error(self):
        response = MagicMock(ok=False, status_code=500, text="boom")
        with patch("requests.post", return_value=response):
            provider = OllamaGeneration(base_url="http://localhost:11434", ensure_model=False)
            with pytest.raises(RuntimeError, match="HTTP 500"):
                provider.generate("s", "u")

    def test_ensure_model_present(self):
        response = MagicMock()
        response.json.return_value = {"models": [{"name": "qwen2.5:7b"}]}
        with patch("requests.get", return_value=response), patch("requests.post") as post:
            ollama_ensure_model("http://localhost:11434", "qwen2.5:7b")
        post.assert_not_called()

    def test_ensure_model_unreachable(self):
        with patch("requests.get", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(RuntimeError, match="Cannot reach Ollama"):
                ollama_ensure_model("http://localhost:11434", "qwen2.5:7b")

    def test_embeddings(self):
        from memoecho.providers.embeddings import OllamaEmbedding

        response = MagicMock(ok=True)
        response.json.return_value = {"embeddings": [[0.1, 0.2], [0.3, 0.4]]}
        with patch("requests.post", return_value=response):
            provider = OllamaEmbedding(base_url="http://localhost:11434", ensure_model=False)
            assert provider.embed_batch(["a", "b"]) == [[0.1, 0.2], [0.3, 0.4]]
        assert provider.dimension == 2
