"""
Provider interfaces and implementations.

Concrete providers register themselves with the global registry when
their module is imported; the registry imports them on first use.
"""

from .base import (
    EmbeddingProvider,
    ProviderRegistry,
    SummarizationProvider,
    get_registry,
)

__all__ = [
    "EmbeddingProvider",
    "SummarizationProvider",
    "ProviderRegistry",
    "get_registry",
]
