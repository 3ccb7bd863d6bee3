"""Analysis caching and import resolution for WDL language tooling.

This package keeps derived symbol and import information for WDL documents in
a bounded in-memory cache and a checksummed on-disk store, and keeps both
consistent as files change.
"""

__version__ = "1.1.0"

from .cache.memory import BoundedCache
from .config import CacheSettings, configure_logging
from .hooks.filesystem import FileChangeNotifier
from .resolver.imports import ImportResolver, ImportResult
from .storage.integrity import CacheIntegrityValidator
from .storage.migration import CacheMigrationManager
from .storage.persistent import PersistentCacheStore
from .symbols import SymbolProvider

__all__ = [
    "BoundedCache",
    "CacheIntegrityValidator",
    "CacheMigrationManager",
    "CacheSettings",
    "FileChangeNotifier",
    "ImportResolver",
    "ImportResult",
    "PersistentCacheStore",
    "SymbolProvider",
    "configure_logging",
]
