"""
Capability interfaces for embedding and summarization.

threadkeep never runs a model itself. It asks an ``EmbeddingProvider`` for
one vector per message and a ``SummarizationProvider`` for each new summary
version. Both are structural protocols: any object with the right methods
qualifies.
"""

import re
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from ..types import Message


# -----------------------------------------------------------------------------
# Embeddings
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Turns message text into a fixed-length vector.

    Every vector in a store comes from one provider; switching models
    means re-embedding (``ThreadKeeper.reindex``). Models that encode
    queries differently from passages may also define ``embed_query``,
    which search uses for query text.
    """

    @property
    def dimension(self) -> int:
        """Length of every vector this provider returns."""
        ...

    def embed(self, text: str) -> list[float]:
        """Vector for one message body."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Vectors for several texts, in input order."""
        ...


def embedding_model_name(provider) -> str:
    """Identifier recorded with each stored vector."""
    model = getattr(provider, "model_name", None) or getattr(provider, "model", None)
    name = type(provider).__name__
    return f"{name}:{model}" if isinstance(model, str) else name


# -----------------------------------------------------------------------------
# Summarization
# -----------------------------------------------------------------------------

# System prompt sent by every LLM summarizer
SUMMARY_SYSTEM_PROMPT = """You summarize conversations. Produce a concise but complete summary that captures the main points, decisions, and overall context of the discussion.

Guidelines:
- Be clear, concise, and objective.
- Keep the most important information and key takeaways.
- Preserve specific dates, names, numbers, and facts stated by the participants.
- Preserve the chronological order of events.
- Use neutral language; do not editorialize.
- The summary must stand alone without the full conversation.

Begin with the topic discussed, not "This conversation is about..."."""

MAX_TRANSCRIPT_CHARS = 50000


def format_transcript(messages: Sequence[Message]) -> str:
    """Render messages as a role-prefixed transcript in sequence order."""
    return "\n\n".join(
        f"{m.role.capitalize()}: {m.text.strip()}" for m in messages
    )


def build_summary_prompt(messages: Sequence[Message], previous: str | None = None) -> str:
    """
    Build the incremental summarization prompt.

    The previous summary already accounts for everything up to its
    watermark, so only the new messages are sent alongside it.

    Args:
        messages: New messages since the previous summary, ascending
        previous: Text of the current summary, if any

    Returns:
        The user prompt for the LLM
    """
    transcript = format_transcript(messages)
    if len(transcript) > MAX_TRANSCRIPT_CHARS:
        # Keep the most recent part of the transcript
        transcript = transcript[-MAX_TRANSCRIPT_CHARS:]
    if not previous:
        return f"""Summarize this conversation.

<conversation>
{transcript}
</conversation>"""
    return f"""Update the summary of this conversation to incorporate the new messages.

<current_summary>
{previous}
</current_summary>

<new_messages>
{transcript}
</new_messages>"""


_PREAMBLE = re.compile(
    r"^(?:"
    r"here(?: is|'s) (?:a|the|an updated|the updated) (?:concise )?summary[^:]*[:.]"
    r"|(?:updated )?summary:"
    r"|(?:this|the) conversation (?:is about|covers|discusses)"
    r"|in this conversation,?"
    r"|the user (?:discusses|talks about|mentions)"
    r")\s*",
    re.IGNORECASE,
)


def strip_summary_preamble(text: str) -> str:
    """Drop lead-ins like "Here is a summary:" that models add anyway."""
    result = text.strip()
    while True:
        stripped = _PREAMBLE.sub("", result, count=1)
        if stripped == result:
            return stripped
        result = stripped


@runtime_checkable
class SummarizationProvider(Protocol):
    """
    Folds new messages into a thread's running summary.

    Called with the previous summary text and only the messages after its
    watermark, so each refresh costs time proportional to what is new.
    See ``threadkeep.providers.llm`` for the bundled implementations.
    """

    def summarize(
        self,
        messages: Sequence[Message],
        *,
        previous: str | None = None,
    ) -> str:
        """
        Summarize a thread.

        Args:
            messages: Messages not yet covered by ``previous``, in sequence order
            previous: Text of the current summary (None for the first one)

        Returns:
            The new summary text, covering ``previous`` plus ``messages``
        """
        ...


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

EMBEDDING = "embedding"
SUMMARIZATION = "summarization"


class ProviderRegistry:
    """
    Maps the provider names used in threadkeep.toml to classes.

    The bundled providers are registered the first time a name is looked
    up. Their model libraries are imported only when one is constructed,
    so listing providers never loads torch or an API client.

        registry = get_registry()
        embedder = registry.create_embedding("ollama", {"model": "nomic-embed-text"})
    """

    def __init__(self):
        self._classes: dict[str, dict[str, type]] = {EMBEDDING: {}, SUMMARIZATION: {}}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import embeddings  # noqa: F401
        from . import llm  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        self._classes[EMBEDDING][name] = provider_class

    def register_summarization(self, name: str, provider_class: type) -> None:
        self._classes[SUMMARIZATION][name] = provider_class

    def _names(self, kind: str) -> list[str]:
        self._ensure_providers_loaded()
        return sorted(self._classes[kind])

    def _build(self, kind: str, name: str, params: dict | None):
        self._ensure_providers_loaded()
        cls = self._classes[kind].get(name)
        if cls is None:
            choices = ", ".join(sorted(self._classes[kind])) or "none"
            raise ValueError(f"No {kind} provider named {name!r}. Available providers: {choices}.")
        try:
            return cls(**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"{kind} provider {name!r} is not usable: {e}. "
                f"Install required dependencies (e.g. pip install 'threadkeep[local]')."
            ) from e
        except Exception as e:
            raise RuntimeError(f"{kind} provider {name!r} failed to start: {e}") from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        return self._build(EMBEDDING, name, params)

    def create_summarization(self, name: str, params: dict | None = None) -> SummarizationProvider:
        return self._build(SUMMARIZATION, name, params)

    def list_embedding_providers(self) -> list[str]:
        return self._names(EMBEDDING)

    def list_summarization_providers(self) -> list[str]:
        return self._names(SUMMARIZATION)


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """The process-wide registry that bundled providers register into."""
    return _registry
