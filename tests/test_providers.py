"""Tests for provider helpers, the registry and the HTTP providers."""

from unittest.mock import MagicMock, patch

import pytest

from threadkeep.providers.base import (
    EmbeddingProvider,
    ProviderRegistry,
    SummarizationProvider,
    build_summary_prompt,
    embedding_model_name,
    format_transcript,
    get_registry,
    strip_summary_preamble,
)
from threadkeep.providers.llm import PassthroughSummarization
from threadkeep.providers.ollama_utils import ollama_base_url
from threadkeep.types import Message

from tests.conftest import MockEmbeddingProvider, MockSummarizationProvider


def _msg(seq, role, content):
    return Message(
        id=f"m{seq}", thread_id="t1", role=role, content=content, seq=seq,
        created_at="2026-01-01T00:00:00+00:00", updated_at="2026-01-01T00:00:00+00:00",
    )


class TestPrompts:
    """Prompt construction for LLM summarizers."""

    def test_transcript_in_sequence_order(self):
        """Roles are capitalized and messages separated."""
        text = format_transcript([_msg(1, "user", " hi "), _msg(2, "assistant", "hello")])
        assert text == "User: hi\n\nAssistant: hello"

    def test_first_summary_prompt(self):
        """Without a previous summary the whole conversation is sent."""
        prompt = build_summary_prompt([_msg(1, "user", "refund please")])
        assert "<conversation>" in prompt
        assert "refund please" in prompt
        assert "<current_summary>" not in prompt

    def test_incremental_prompt(self):
        """With a previous summary only the new messages are added."""
        prompt = build_summary_prompt([_msg(4, "user", "new point")], previous="Old summary.")
        assert "<current_summary>\nOld summary.\n</current_summary>" in prompt
        assert "<new_messages>" in prompt
        assert "new point" in prompt

    def test_long_transcript_keeps_tail(self):
        """Oversized transcripts keep the most recent text."""
        messages = [_msg(1, "user", "a" * 60000), _msg(2, "user", "the end")]
        prompt = build_summary_prompt(messages)
        assert "the end" in prompt
        assert len(prompt) < 51000

    @pytest.mark.parametrize("raw,expected", [
        ("Here is a summary of the conversation: Refunds take 5 days.", "Refunds take 5 days."),
        ("Summary: Refunds take 5 days.", "Refunds take 5 days."),
        ("This conversation is about refunds.", "refunds."),
        ("  Refunds take 5 days.  ", "Refunds take 5 days."),
    ])
    def test_strip_preamble(self, raw, expected):
        """Common model preambles are removed."""
        assert strip_summary_preamble(raw) == expected


class TestPassthrough:
    """Model-free summarization."""

    def test_appends_transcript(self):
        """The previous text is kept and new messages appended."""
        provider = PassthroughSummarization()
        first = provider.summarize([_msg(1, "user", "hi")])
        assert first == "User: hi"
        second = provider.summarize([_msg(2, "assistant", "hello")], previous=first)
        assert second == "User: hi\n\nAssistant: hello"

    def test_truncates(self):
        """Output is cut at a word boundary."""
        provider = PassthroughSummarization(max_chars=20)
        text = provider.summarize([_msg(1, "user", "one two three four five six seven")])
        assert text.endswith("...")
        assert len(text) <= 23


class TestRegistry:
    """Provider lookup by name."""

    def test_builtin_providers_registered(self):
        """The global registry knows the bundled providers."""
        registry = get_registry()
        assert {"sentence-transformers", "openai", "ollama"} <= set(registry.list_embedding_providers())
        assert "passthrough" in registry.list_summarization_providers()

    def test_unknown_provider(self):
        """Unknown names list what is available."""
        with pytest.raises(ValueError, match="Available providers"):
            get_registry().create_embedding("no-such-model")

    def test_constructor_failure_is_runtime_error(self):
        """Provider construction errors surface as RuntimeError."""
        registry = ProviderRegistry()
        registry._lazy_loaded = True

        class Broken:
            def __init__(self):
                raise ImportError("No module named 'torch'")

        registry.register_embedding("broken", Broken)
        with pytest.raises(RuntimeError, match="Install required dependencies"):
            registry.create_embedding("broken")

    def test_params_passed_to_constructor(self):
        """Config params become constructor keyword arguments."""
        provider = get_registry().create_summarization("passthrough", {"max_chars": 42})
        assert provider.max_chars == 42

    def test_mocks_satisfy_protocols(self):
        """Structural typing accepts the test doubles."""
        assert isinstance(MockEmbeddingProvider(), EmbeddingProvider)
        assert isinstance(MockSummarizationProvider(), SummarizationProvider)


class TestModelName:
    """Identifier stored with vectors."""

    def test_with_model_name(self):
        assert embedding_model_name(MockEmbeddingProvider()) == "MockEmbeddingProvider:mock-model"

    def test_without_model(self):
        assert embedding_model_name(object()) == "object"


class TestOllama:
    """Ollama providers over mocked HTTP."""

    def test_base_url(self, monkeypatch):
        """Explicit URL, then OLLAMA_HOST, then localhost."""
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        assert ollama_base_url() == "http://localhost:11434"
        monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434/")
        assert ollama_base_url() == "http://gpu-box:11434"
        assert ollama_base_url("https://example.test") == "https://example.test"

    def test_embedding(self, monkeypatch):
        """Embeddings come from /api/embed; the dimension is learned once."""
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        tags = MagicMock()
        tags.json.return_value = {"models": [{"name": "nomic-embed-text:latest"}]}
        embed = MagicMock(ok=True)
        embed.json.return_value = {"embeddings": [[0.1, 0.2, 0.3]]}

        with patch("threadkeep.providers.ollama_utils.requests.get", return_value=tags), \
                patch("requests.post", return_value=embed) as post:
            from threadkeep.providers.embeddings import OllamaEmbedding

            provider = OllamaEmbedding()
            assert provider.embed("hello") == [0.1, 0.2, 0.3]
            assert provider.dimension == 3
            assert provider.dimension == 3

        assert post.call_count == 2
        url = post.call_args[0][0]
        assert url == "http://localhost:11434/api/embed"

    def test_embedding_http_error(self, monkeypatch):
        """Server errors become RuntimeError with the status code."""
        tags = MagicMock()
        tags.json.return_value = {"models": [{"name": "nomic-embed-text"}]}
        failed = MagicMock(ok=False, status_code=500, text="model crashed")

        with patch("threadkeep.providers.ollama_utils.requests.get", return_value=tags), \
                patch("requests.post", return_value=failed):
            from threadkeep.providers.embeddings import OllamaEmbedding

            provider = OllamaEmbedding()
            with pytest.raises(RuntimeError, match="HTTP 500"):
                provider.embed("hello")

    def test_unreachable_server(self):
        """A dead server fails at construction with a hint."""
        import requests

        with patch(
            "threadkeep.providers.ollama_utils.requests.get",
            side_effect=requests.ConnectionError("refused"),
        ):
            from threadkeep.providers.llm import OllamaSummarization

            with pytest.raises(RuntimeError, match="ollama serve"):
                OllamaSummarization()
