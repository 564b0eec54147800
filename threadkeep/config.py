"""
Store configuration: threadkeep.toml in the store directory.

One table names each provider ([embedding], [summarization]; every key
besides ``name`` is passed to the provider) and one table each tunes
the index, the summary policy, the background worker and search.
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "threadkeep.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = ".threadkeep"


@dataclass
class ProviderConfig:
    """A registry name plus constructor keyword arguments."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_section(cls, section: dict) -> "ProviderConfig":
        params = dict(section)
        return cls(name=params.pop("name", ""), params=params)

    def to_section(self) -> dict:
        return {"name": self.name, **self.params}


@dataclass
class IndexConfig:
    """
    Embedding index tunables.

    metric is fixed per store: scores from different metrics aren't comparable.
    """
    metric: str = "cosine"           # "cosine" or "dot"
    train_threshold: int = 2048      # vectors before partitioning kicks in
    nprobe: int = 8                  # partitions scanned by global queries
    max_partitions: int = 256


@dataclass
class SummaryConfig:
    """Summarization trigger policy."""
    threshold: int = 10              # new messages since watermark
    max_age_seconds: float = 0.0     # 0 disables the age trigger
    max_attempts: int = 5


@dataclass
class WorkerConfig:
    """Background processing."""
    enabled: bool = True
    poll_interval: float = 2.0
    batch_size: int = 10
    embed_timeout: float = 30.0
    summarize_timeout: float = 120.0
    embed_max_attempts: int = 5
    retry_backoff_base: float = 30.0
    retry_backoff_max: float = 3600.0


@dataclass
class SearchConfig:
    """Search result shaping."""
    snippet_chars: int = 200
    min_score: float | None = None
    query_timeout: float = 15.0


@dataclass
class StoreConfig:
    """Everything read from one threadkeep.toml."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    backend: str = "local"

    embedding: ProviderConfig = field(default_factory=lambda: ProviderConfig("sentence-transformers"))
    summarization: ProviderConfig = field(default_factory=lambda: ProviderConfig("passthrough"))

    index: IndexConfig = field(default_factory=IndexConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store path from THREADKEEP_STORE_PATH, else ~/.threadkeep."""
    env = os.environ.get("THREADKEEP_STORE_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIR


def detect_default_providers() -> dict[str, ProviderConfig]:
    """
    Providers for a new store, chosen from the environment.

    Embeddings stay local (sentence-transformers). Summarization uses
    Anthropic or OpenAI when a key is present, else passthrough.
    """
    providers = {"embedding": ProviderConfig("sentence-transformers")}

    if os.environ.get("ANTHROPIC_API_KEY"):
        providers["summarization"] = ProviderConfig("anthropic")
    elif os.environ.get("THREADKEEP_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY"):
        providers["summarization"] = ProviderConfig("openai")
    else:
        providers["summarization"] = ProviderConfig("passthrough")

    return providers


def create_default_config(store_path: Path) -> StoreConfig:
    """Defaults plus whatever providers the environment supports."""
    providers = detect_default_providers()
    return StoreConfig(
        path=store_path,
        embedding=providers["embedding"],
        summarization=providers["summarization"],
    )


def _parse_section(cls, section: dict):
    """Build a dataclass from a TOML section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in section.items() if k in known})


def load_config(store_path: Path) -> StoreConfig:
    """
    Read and validate {store_path}/threadkeep.toml.

    Raises:
        FileNotFoundError: No config file
        ValueError: Written by a newer version, or a value out of range
    """
    config_path = store_path / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"No {CONFIG_FILENAME} in {store_path}")
    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(
            f"{config_path} is format {version}, newer than this threadkeep understands ({CONFIG_VERSION})"
        )

    search = dict(data.get("search", {}))
    # TOML has no null; a missing key means "no minimum"
    search.setdefault("min_score", None)

    config = StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        backend=store.get("backend", "local"),
        embedding=ProviderConfig.from_section(data.get("embedding", {"name": "sentence-transformers"})),
        summarization=ProviderConfig.from_section(data.get("summarization", {"name": "passthrough"})),
        index=_parse_section(IndexConfig, data.get("index", {})),
        summary=_parse_section(SummaryConfig, data.get("summary", {})),
        workers=_parse_section(WorkerConfig, data.get("workers", {})),
        search=_parse_section(SearchConfig, search),
    )
    validate_config(config)
    return config


def validate_config(config: StoreConfig) -> None:
    """Reject values that would break the index or the summary policy."""
    if config.index.metric not in ("cosine", "dot"):
        raise ValueError(f"Unknown index metric: {config.index.metric!r} (expected cosine or dot)")
    if config.index.nprobe < 1:
        raise ValueError("index.nprobe must be >= 1")
    if config.summary.threshold < 1:
        raise ValueError("summary.threshold must be >= 1")
    if config.summary.max_age_seconds < 0:
        raise ValueError("summary.max_age_seconds must be >= 0")
    if config.workers.embed_timeout <= 0 or config.workers.summarize_timeout <= 0:
        raise ValueError("worker timeouts must be positive")


def save_config(config: StoreConfig) -> None:
    """Write threadkeep.toml, creating the store directory if needed."""
    config.path.mkdir(parents=True, exist_ok=True)

    def section(obj) -> dict:
        return {f.name: getattr(obj, f.name) for f in fields(obj)
                if getattr(obj, f.name) is not None}

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
        },
        "embedding": config.embedding.to_section(),
        "summarization": config.summarization.to_section(),
        "index": section(config.index),
        "summary": section(config.summary),
        "workers": section(config.workers),
        "search": section(config.search),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """The store's config, writing a default one on first use."""
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
