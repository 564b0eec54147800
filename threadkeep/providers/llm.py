"""
Summarizers: three LLM backends and a model-free fallback.

Each LLM summarizer sends the shared system prompt plus one user turn
holding the previous summary and the new messages. Provider errors are
not caught here; the summarization pipeline turns them into retries.
"""

import os
from collections.abc import Sequence

from ..types import Message
from .base import (
    SUMMARY_SYSTEM_PROMPT,
    build_summary_prompt,
    format_transcript,
    get_registry,
    strip_summary_preamble,
)

DEFAULT_MAX_TOKENS = 400


def _chat(messages: Sequence[Message], previous: str | None) -> list[dict]:
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": build_summary_prompt(messages, previous)},
    ]


class AnthropicSummarization:
    """Claude via the Anthropic SDK. Needs ``api_key`` or ANTHROPIC_API_KEY."""

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = 0.2,
    ):
        from anthropic import Anthropic

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("Anthropic summarization needs ANTHROPIC_API_KEY (or api_key in threadkeep.toml)")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = Anthropic(api_key=key)

    def summarize(self, messages: Sequence[Message], *, previous: str | None = None) -> str:
        # Anthropic takes the system prompt separately from the turns
        system, user = _chat(messages, previous)
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system["content"],
            messages=[user],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        return strip_summary_preamble(text)


class OpenAISummarization:
    """
    OpenAI chat completions.

    The key comes from ``api_key``, THREADKEEP_OPENAI_API_KEY or
    OPENAI_API_KEY, in that order.
    """

    # Reasoning models reject temperature and use max_completion_tokens
    REASONING_PREFIXES = ("gpt-5", "o3", "o4")

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        from openai import OpenAI

        key = api_key or os.environ.get("THREADKEEP_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError("OpenAI summarization needs THREADKEEP_OPENAI_API_KEY or OPENAI_API_KEY")
        self.model = model
        self.max_tokens = max_tokens
        self._client = OpenAI(api_key=key)

    def _limits(self) -> dict:
        if self.model.startswith(self.REASONING_PREFIXES):
            return {"max_completion_tokens": self.max_tokens}
        return {"max_tokens": self.max_tokens, "temperature": 0.2}

    def summarize(self, messages: Sequence[Message], *, previous: str | None = None) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=_chat(messages, previous),
            **self._limits(),
        )
        return strip_summary_preamble(response.choices[0].message.content or "")


class OllamaSummarization:
    """
    A local model served by Ollama (``/api/chat``).

    The server is OLLAMA_HOST or localhost:11434; a missing model is
    pulled when the provider is created.
    """

    def __init__(self, model: str = "llama3.2", base_url: str | None = None, timeout: float = 120):
        from .ollama_utils import ollama_base_url, ollama_ensure_model

        self.model = model
        self.timeout = timeout
        self.base_url = ollama_base_url(base_url)
        ollama_ensure_model(self.base_url, self.model)

    def summarize(self, messages: Sequence[Message], *, previous: str | None = None) -> str:
        import requests

        response = requests.post(
            f"{self.base_url}/api/chat",
            json={"model": self.model, "messages": _chat(messages, previous), "stream": False},
            timeout=(10, self.timeout),
        )
        if not response.ok:
            raise RuntimeError(
                f"Ollama {self.model} at {self.base_url} returned HTTP {response.status_code}: "
                f"{(response.text or '')[:200]}"
            )
        return strip_summary_preamble(response.json()["message"]["content"])


class PassthroughSummarization:
    """
    No model: the previous summary followed by the new transcript, cut at
    a word boundary to ``max_chars``. The default when no LLM is set up.
    """

    def __init__(self, max_chars: int = 1000):
        self.max_chars = max_chars

    def summarize(self, messages: Sequence[Message], *, previous: str | None = None) -> str:
        content = "\n\n".join(p for p in (previous, format_transcript(messages)) if p)
        if len(content) <= self.max_chars:
            return content
        return content[:self.max_chars].rsplit(" ", 1)[0] + "..."


_registry = get_registry()
for _name, _cls in (
    ("anthropic", AnthropicSummarization),
    ("openai", OpenAISummarization),
    ("ollama", OllamaSummarization),
    ("passthrough", PassthroughSummarization),
):
    _registry.register_summarization(_name, _cls)
