"""coinvalue.sources - Source registry and reliability weights."""

from coinvalue.sources.registry import SourceRegistry

__all__ = ["SourceRegistry"]
