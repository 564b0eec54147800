"""
threadkeep

Conversation threads with semantic search and rolling summaries.

Quick Start:
    from threadkeep import ThreadKeeper

    tk = ThreadKeeper()  # uses ~/.threadkeep/
    thread = tk.create_thread({"project": "alpha"})
    tk.add_message(thread.id, "user", "How do refunds work?")
    results = tk.search_by_text("refund policy")
    view = tk.get_summary(thread.id)

CLI Usage:
    threadkeep new -m project=alpha
    threadkeep add <thread> "How do refunds work?"
    threadkeep find "refund policy"

Default Store:
    ~/.threadkeep/ (created automatically).
    Override with THREADKEEP_STORE_PATH or an explicit path argument.

Environment Variables:
    THREADKEEP_STORE_PATH       - Override default store location
    THREADKEEP_VERBOSE          - Debug logging (1) and model library output
    THREADKEEP_OPENAI_API_KEY   - API key for OpenAI providers
    ANTHROPIC_API_KEY           - API key for Anthropic summarization

Embedding and summarization run in a background worker; messages become
searchable, and summaries catch up, shortly after they are written.
"""

# Configure quiet mode early (before any library imports)
import os
if not os.environ.get("THREADKEEP_VERBOSE"):
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("TRANSFORMERS_VERBOSITY", "error")
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
    os.environ.setdefault("HF_HUB_DISABLE_TELEMETRY", "1")

from .api import ThreadKeeper
from .errors import (
    CapabilityUnavailable,
    Conflict,
    Corruption,
    DimensionMismatch,
    EmbeddingNotReady,
    NotFound,
    ThreadKeepError,
)
from .types import (
    Message,
    SearchResult,
    SearchScope,
    Summary,
    SummaryView,
    Thread,
    ThreadFilter,
    ThreadSearchResult,
)

__version__ = "0.1.0"
__all__ = [
    "ThreadKeeper",
    "Thread",
    "Message",
    "Summary",
    "SummaryView",
    "ThreadFilter",
    "SearchScope",
    "SearchResult",
    "ThreadSearchResult",
    "ThreadKeepError",
    "NotFound",
    "EmbeddingNotReady",
    "Conflict",
    "DimensionMismatch",
    "CapabilityUnavailable",
    "Corruption",
]
