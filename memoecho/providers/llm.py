"""
Text generation providers using LLMs.

Each provider exposes generate(system, user) and honours a per-call
timeout. Errors propagate; the concept extractor owns recovery.
"""

import os

from .base import get_registry


class AnthropicGeneration:
    """
    Generation provider using Anthropic's Claude API.

    Authentication (checked in priority order):
    1. api_key parameter (if provided)
    2. ANTHROPIC_API_KEY (API key from console.anthropic.com)
    3. CLAUDE_CODE_OAUTH_TOKEN (OAuth token from 'claude setup-token')
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        temperature: float = 0.1,
    ):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise RuntimeError("AnthropicGeneration requires 'anthropic' library")

        self.model = model
        self.temperature = temperature

        key = (
            api_key or
            os.environ.get("ANTHROPIC_API_KEY") or
            os.environ.get("CLAUDE_CODE_OAUTH_TOKEN")
        )
        if not key:
            raise ValueError(
                "Anthropic authentication required. Set one of:\n"
                "  ANTHROPIC_API_KEY (API key from console.anthropic.com)\n"
                "  CLAUDE_CODE_OAUTH_TOKEN (OAuth token from 'claude setup-token')"
            )

        self._client = Anthropic(api_key=key)

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
        timeout: float = 120.0,
    ) -> str | None:
        """Send a raw prompt to Anthropic and return generated text."""
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
            timeout=timeout,
        )
        if response.content:
            return response.content[0].text
        return None


class OpenAIGeneration:
    """
    Generation provider using OpenAI's chat API (or any compatible server
    via base_url).

    Requires: MEMOECHO_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    Requests JSON-object output, which suits concept extraction.
    """

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
        base_url: str | None = None,
        json_mode: bool = True,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIGeneration requires 'openai' library")

        self.model = model
        self.json_mode = json_mode

        key = api_key or os.environ.get("MEMOECHO_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set MEMOECHO_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self._client = OpenAI(api_key=key, base_url=base_url)

        # GPT-5+ and reasoning models use a different API surface:
        # - max_completion_tokens instead of max_tokens
        # - temperature must be omitted (only default=1 supported)
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self, max_tokens: int) -> dict:
        """Return model-appropriate kwargs for token limit and temperature."""
        if self._new_api:
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens, "temperature": 0.1}

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
        timeout: float = 120.0,
    ) -> str | None:
        """Send a raw prompt to OpenAI and return generated text."""
        kwargs = self._completion_kwargs(max_tokens)
        if self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            timeout=timeout,
            **kwargs,
        )
        if response.choices:
            return response.choices[0].message.content
        return None


class OllamaGeneration:
    """
    Generation provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "qwen2.5:7b",
        base_url: str | None = None,
        num_ctx: int = 8192,
        temperature: float = 0.1,
        ensure_model: bool = True,
    ):
        from .ollama_utils import ollama_base_url, ollama_ensure_model

        self.model = model
        self.num_ctx = num_ctx
        self.temperature = temperature
        self.base_url = ollama_base_url(base_url)
        if ensure_model:
            ollama_ensure_model(self.base_url, self.model)

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
        timeout: float = 120.0,
    ) -> str | None:
        """Send a raw prompt to Ollama and return generated text."""
        import requests

        response = requests.post(
            f"{self.base_url}/api/chat",
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                "stream": False,
                "options": {
                    "temperature": self.temperature,
                    "num_ctx": self.num_ctx,
                    "num_predict": max_tokens,
                },
            },
            timeout=(10, timeout),  # (connect, read)
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama generate failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        return response.json()["message"]["content"].strip()


class NoGeneration:
    """
    Provider with no LLM behind it.

    Returns None so the extractor always takes the rule-based path.
    """

    def generate(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 1024,
        timeout: float = 120.0,
    ) -> str | None:
        return None


# Register providers
_registry = get_registry()
_registry.register_generation("anthropic", AnthropicGeneration)
_registry.register_generation("openai", OpenAIGeneration)
_registry.register_generation("ollama", OllamaGeneration)
_registry.register_generation("none", NoGeneration)
