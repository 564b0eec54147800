"""
Shared pytest fixtures for threadkeep tests.

Provides mock providers to avoid loading heavy ML models during testing.
"""

import hashlib
import re
import threading
from unittest.mock import MagicMock, patch

import pytest

from threadkeep.config import IndexConfig, ProviderConfig, StoreConfig, SummaryConfig, WorkerConfig


# Words that map to the same axis embed close together
CONCEPTS = {
    "cat": 0, "cats": 0, "feline": 0, "kitten": 0, "kittens": 0,
    "dog": 1, "dogs": 1, "canine": 1, "puppy": 1, "puppies": 1,
    "refund": 2, "refunds": 2, "payment": 2, "money": 2, "invoice": 2,
    "rain": 3, "weather": 3, "sunny": 3, "forecast": 3,
    "python": 4, "code": 4, "programming": 4, "bug": 4,
    "pizza": 5, "food": 5, "dinner": 5, "recipe": 5,
}
CONCEPT_AXES = 8
NOISE_AXES = 8
NOISE_WEIGHT = 0.1


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Known concept words land on a shared axis so "cats" and "feline"
    are near neighbours; other words add a small hash-derived component.
    """

    dimension = CONCEPT_AXES + NOISE_AXES
    model_name = "mock-model"

    def __init__(self):
        self.embed_calls = 0
        self.texts: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        self.texts.append(text)
        vector = [0.0] * self.dimension
        for word in re.findall(r"[a-z]+", text.lower()):
            axis = CONCEPTS.get(word)
            if axis is not None:
                vector[axis] += 1.0
            else:
                h = int(hashlib.md5(word.encode()).hexdigest(), 16)
                vector[CONCEPT_AXES + h % NOISE_AXES] += NOISE_WEIGHT
        if not any(vector):
            vector[-1] = NOISE_WEIGHT
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]


class WideEmbeddingProvider(MockEmbeddingProvider):
    """Same vectors padded to a different dimension."""

    dimension = 24

    def embed(self, text: str) -> list[float]:
        return super().embed(text) + [0.0] * 8


class BlockingEmbeddingProvider(MockEmbeddingProvider):
    """Embeds only after ``release`` is set; ``started`` fires on entry."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def embed(self, text: str) -> list[float]:
        self.started.set()
        self.release.wait(10)
        return super().embed(text)


class FailingEmbeddingProvider(MockEmbeddingProvider):
    """Always raises, as an unreachable model server would."""

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        raise ConnectionError("embedding service unreachable")


class MockSummarizationProvider:
    """Mock summarization provider - folds new messages into the previous text."""

    def __init__(self):
        self.calls: list[tuple[list, str | None]] = []

    def summarize(self, messages, *, previous: str | None = None) -> str:
        self.calls.append((list(messages), previous))
        text = " | ".join(f"{m.role}: {m.text}" for m in messages)
        return f"{previous} || {text}" if previous else text


class FailingSummarizationProvider(MockSummarizationProvider):
    """Always raises."""

    def summarize(self, messages, *, previous: str | None = None) -> str:
        self.calls.append((list(messages), previous))
        raise RuntimeError("summarization model overloaded")


class BlockingSummarizationProvider(MockSummarizationProvider):
    """Summarizes only after ``release`` is set; ``started`` fires on entry."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def summarize(self, messages, *, previous: str | None = None) -> str:
        self.started.set()
        self.release.wait(10)
        return super().summarize(messages, previous=previous)


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def mock_providers():
    """
    Fixture that patches the provider registry to return mocks.

    This avoids loading real ML models or calling model APIs. Tests can
    swap ``registry.create_embedding.return_value`` (or the summarization
    one) before the keeper first asks for a provider.

    Usage:
        def test_something(mock_providers, tmp_path):
            tk = ThreadKeeper(tmp_path, background=False)
    """
    mock_embed = MockEmbeddingProvider()
    mock_summ = MockSummarizationProvider()

    mock_reg = MagicMock()
    mock_reg.create_embedding.return_value = mock_embed
    mock_reg.create_summarization.return_value = mock_summ

    with patch("threadkeep.api.get_registry", return_value=mock_reg):
        yield {
            "embedding": mock_embed,
            "summarization": mock_summ,
            "registry": mock_reg,
        }


def make_config(store_path, *, threshold: int = 3, max_age_seconds: float = 0.0,
                max_attempts: int = 3, embed_max_attempts: int = 3) -> StoreConfig:
    """Store config for tests: no background worker, immediate retries."""
    return StoreConfig(
        path=store_path,
        embedding=ProviderConfig("mock"),
        summarization=ProviderConfig("mock"),
        index=IndexConfig(),
        summary=SummaryConfig(
            threshold=threshold,
            max_age_seconds=max_age_seconds,
            max_attempts=max_attempts,
        ),
        workers=WorkerConfig(
            enabled=False,
            embed_max_attempts=embed_max_attempts,
            retry_backoff_base=0.0,
            retry_backoff_max=0.0,
            embed_timeout=5.0,
            summarize_timeout=5.0,
        ),
    )


@pytest.fixture
def make_keeper(mock_providers, tmp_path):
    """
    Factory for ThreadKeeper instances on a temp store.

    Keepers are closed at teardown.
    """
    from threadkeep.api import ThreadKeeper

    created = []

    def factory(store_path=None, **config_overrides):
        config = make_config(store_path or tmp_path / "store", **config_overrides)
        tk = ThreadKeeper(config=config, background=False)
        created.append(tk)
        return tk

    yield factory
    for tk in created:
        tk.close()


@pytest.fixture
def keeper(make_keeper):
    """A ThreadKeeper with summary threshold 3 and no background worker."""
    return make_keeper()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (real threads and timeouts)"
    )
    config.addinivalue_line(
        "markers", "e2e: marks tests as end-to-end (require real providers)"
    )
