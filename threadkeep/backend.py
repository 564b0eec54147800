"""
Where threads, vectors and queued jobs live.

``[store] backend = "local"`` (the default) keeps threads.db and
pending_work.db in the store directory and the vector index in memory.
Any other name is looked up in the ``threadkeep.backends`` entry-point
group; a package supplying one exposes a factory::

    def create_stores(config: StoreConfig) -> StoreBundle:
        ...

registered in its own pyproject.toml::

    [project.entry-points."threadkeep.backends"]
    my-backend = "my_package.backend:create_stores"
"""

from typing import NamedTuple

from .config import StoreConfig
from .protocol import ThreadStoreProtocol, VectorIndexProtocol, WorkQueueProtocol

THREADS_DB = "threads.db"
QUEUE_DB = "pending_work.db"


class StoreBundle(NamedTuple):
    """The three stores a ThreadKeeper runs on."""
    thread_store: ThreadStoreProtocol
    vector_index: VectorIndexProtocol
    work_queue: WorkQueueProtocol
    is_local: bool


def create_stores(config: StoreConfig) -> StoreBundle:
    """
    Build the stores named by ``config.backend``.

    The returned index is empty; ThreadKeeper fills it from the stored
    vectors on startup.

    Raises:
        ValueError: No backend of that name is installed
    """
    if config.backend == "local":
        return _create_local_stores(config)
    return _load_backend(config.backend, config)


def create_index(config: StoreConfig):
    """An empty in-process index tuned from ``config.index``."""
    from .vector_index import VectorIndex

    return VectorIndex(
        metric=config.index.metric,
        train_threshold=config.index.train_threshold,
        nprobe=config.index.nprobe,
        max_partitions=config.index.max_partitions,
    )


def _create_local_stores(config: StoreConfig) -> StoreBundle:
    """SQLite files under config.path plus a fresh in-memory index."""
    from .thread_store import ThreadStore
    from .work_queue import PendingWorkQueue

    return StoreBundle(
        thread_store=ThreadStore(config.path / THREADS_DB),
        vector_index=create_index(config),
        work_queue=PendingWorkQueue(
            config.path / QUEUE_DB,
            backoff_base=config.workers.retry_backoff_base,
            backoff_max=config.workers.retry_backoff_max,
        ),
        is_local=True,
    )


def _load_backend(name: str, config: StoreConfig) -> StoreBundle:
    """Find and call a factory from the threadkeep.backends group."""
    from importlib.metadata import entry_points

    found = {ep.name: ep for ep in entry_points(group="threadkeep.backends")}
    if name not in found:
        installed = ", ".join(sorted(found)) or "none installed"
        raise ValueError(f"Unknown backend: {name!r} (available: local, {installed})")
    factory = found[name].load()
    return factory(config)
