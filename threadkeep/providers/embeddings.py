"""
Embedding providers.

Model libraries are imported inside each provider's constructor so that
installing threadkeep does not pull in every backend.
"""

import logging
import os

from .base import get_registry

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedding:
    """
    Local embeddings with sentence-transformers (the default).

    ``query_prompt`` is prepended to query text only, for models trained
    with asymmetric query/document prefixes (e.g. "query: " for e5).
    """

    def __init__(
        self,
        model: str = "all-MiniLM-L6-v2",
        device: str | None = None,
        query_prompt: str | None = None,
        document_prompt: str | None = None,
    ):
        from sentence_transformers import SentenceTransformer

        self.model_name = model
        self.query_prompt = query_prompt or ""
        self.document_prompt = document_prompt or ""
        logger.info("Loading sentence-transformers model %s", model)
        self._model = SentenceTransformer(model, device=device)
        self._dimension = int(self._model.get_sentence_embedding_dimension())

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        return self._model.encode(self.document_prompt + text).tolist()

    def embed_query(self, text: str) -> list[float]:
        return self._model.encode(self.query_prompt + text).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self._model.encode([self.document_prompt + t for t in texts]).tolist()


class OpenAIEmbedding:
    """
    OpenAI embeddings API. ``dimensions`` asks the API for shortened
    vectors (text-embedding-3 models only).
    """

    # Native dimensions of known models (the API can shorten them)
    DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        dimensions: int | None = None,
    ):
        from openai import OpenAI

        key = api_key or os.environ.get("THREADKEEP_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError("OpenAI embeddings need THREADKEEP_OPENAI_API_KEY or OPENAI_API_KEY")
        self.model_name = model
        self._requested_dimensions = dimensions
        self._dimension = dimensions or self.DIMENSIONS.get(model)
        self._client = OpenAI(api_key=key)

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            # Unknown model: ask once
            self._dimension = len(self.embed("dimension check"))
        return self._dimension

    def _create(self, inputs: list[str]) -> list[list[float]]:
        kwargs: dict = {"model": self.model_name, "input": inputs}
        if self._requested_dimensions:
            kwargs["dimensions"] = self._requested_dimensions
        response = self._client.embeddings.create(**kwargs)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    def embed(self, text: str) -> list[float]:
        return self._create([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return self._create(texts)


class OllamaEmbedding:
    """
    A local embedding model served by Ollama (``/api/embed``). The
    dimension is learned from the first vector.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
    ):
        from .ollama_utils import ollama_base_url, ollama_ensure_model
        self.model_name = model
        self.base_url = ollama_base_url(base_url)
        ollama_ensure_model(self.base_url, self.model_name)
        self._dimension: int | None = None

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension check"))
        return self._dimension

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        import requests

        if not texts:
            return []
        response = requests.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model_name, "input": texts},
            timeout=(10, 120),  # (connect, read)
        )
        if not response.ok:
            raise RuntimeError(
                f"Ollama {self.model_name} at {self.base_url} returned HTTP {response.status_code}: "
                f"{(response.text or '')[:200]}"
            )
        return response.json()["embeddings"]

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]


_registry = get_registry()
for _name, _cls in (
    ("sentence-transformers", SentenceTransformerEmbedding),
    ("openai", OpenAIEmbedding),
    ("ollama", OllamaEmbedding),
):
    _registry.register_embedding(_name, _cls)
