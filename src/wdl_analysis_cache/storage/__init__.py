"""Durable storage for cached analysis results.

This package provides the checksummed on-disk store, integrity validation and
repair, and version migration of the cache files.
"""

from .integrity import CacheIntegrityValidator, ValidationOptions, ValidationResult, classify_health
from .migration import CacheMigrationManager, MigrationStep
from .models import CACHE_FORMAT_VERSION, CachedImport, SymbolTable, TaskInfo, TaskSymbol
from .persistent import PersistentCacheStore

__all__ = [
    "CACHE_FORMAT_VERSION",
    "CacheIntegrityValidator",
    "CacheMigrationManager",
    "CachedImport",
    "MigrationStep",
    "PersistentCacheStore",
    "SymbolTable",
    "TaskInfo",
    "TaskSymbol",
    "ValidationOptions",
    "ValidationResult",
    "classify_health",
]
