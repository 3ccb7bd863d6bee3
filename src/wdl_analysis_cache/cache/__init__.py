"""In-memory caching for analysis results."""

from .memory import BoundedCache, CacheEntry, estimate_size

__all__ = ["BoundedCache", "CacheEntry", "estimate_size"]
