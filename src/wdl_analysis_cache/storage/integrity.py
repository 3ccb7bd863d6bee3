"""Integrity checking, repair and health reporting for the persistent caches.

The validator inspects the store files of the symbol and import caches as
they are on disk, after flushing any unsaved changes. Entries quarantined by
a store at load are written back unchanged, so corruption that predates the
process is still reported here and removed by repair.
"""

import json
import os
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field, ValidationError

from ..errors import CacheStoreError
from .models import CacheFile, now_ms, validate_payload
from .persistent import META_FILE, STORE_FILES, PersistentCacheStore, find_store_file

LARGE_CACHE_BYTES = 500 * 1024 * 1024
INVALID_RATIO_THRESHOLD = 0.1
COMPRESSION_RATIO_THRESHOLD = 0.8
MAX_ENTRY_AGE_MS = 7 * 24 * 60 * 60 * 1000


class CacheOwner(Protocol):
    """Anything that owns a persistent store and can report cache statistics."""

    def get_persistent_cache(self) -> PersistentCacheStore: ...

    def get_cache_stats(self) -> dict[str, Any]: ...


class ValidationOptions(BaseModel):
    check_checksums: bool = True
    check_schema: bool = True
    check_directory: bool = True


class ValidationStats(BaseModel):
    total_entries: int = 0
    valid_entries: int = 0
    invalid_entries: int = 0
    corrupted_entries: int = 0
    missing_files: int = 0

    def merge(self, other: "ValidationStats") -> None:
        self.total_entries += other.total_entries
        self.valid_entries += other.valid_entries
        self.invalid_entries += other.invalid_entries
        self.corrupted_entries += other.corrupted_entries
        self.missing_files += other.missing_files


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    stats: ValidationStats = Field(default_factory=ValidationStats)

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.stats.merge(other.stats)


def classify_health(
    validation: ValidationResult,
    performance: dict[str, Any],
    compression_active: bool = False,
) -> tuple[str, list[str]]:
    """Derive the overall health status and recommendations.

    Args:
        validation: Result of a cache validation run
        performance: Performance figures with ``total_cache_size`` and ``compression_ratio``
        compression_active: Whether compression is enabled and data has been written

    Returns:
        ``("healthy" | "warning" | "critical", recommendations)``
    """
    stats = validation.stats
    recommendations: list[str] = []
    overall = "healthy"

    if stats.corrupted_entries > 0:
        overall = "critical"
        recommendations.append("Corrupted cache entries found - run cache repair")

    if stats.total_entries and stats.invalid_entries / stats.total_entries > INVALID_RATIO_THRESHOLD:
        recommendations.append("More than 10% of cache entries are invalid - consider clearing the cache")
        if overall == "healthy":
            overall = "warning"

    if performance.get("total_cache_size", 0) > LARGE_CACHE_BYTES:
        recommendations.append("Cache size exceeds 500MB - run cache optimization")
        if overall == "healthy":
            overall = "warning"

    if compression_active and performance.get("compression_ratio", 1.0) > COMPRESSION_RATIO_THRESHOLD:
        recommendations.append("Compression is ineffective for this cache - check the stored payloads")
        if overall == "healthy":
            overall = "warning"

    if validation.warnings and overall == "healthy":
        overall = "warning"

    if validation.errors and not stats.corrupted_entries:
        recommendations.append("Cache validation reported errors - check cache directory permissions")

    return overall, recommendations


class CacheIntegrityValidator:
    """Validates, repairs and optimizes the symbol and import caches."""

    def __init__(self, symbol_owner: CacheOwner, import_owner: CacheOwner, logger: Any = None):
        self.owners = {"symbols": symbol_owner, "imports": import_owner}
        self._logger = logger or structlog.get_logger(__name__)

    def _stores(self) -> dict[str, PersistentCacheStore]:
        return {name: owner.get_persistent_cache() for name, owner in self.owners.items()}

    async def validate_cache(self, options: ValidationOptions | None = None) -> ValidationResult:
        """Validate both caches and their directories.

        Args:
            options: Which checks to run (all by default)

        Returns:
            Merged validation result
        """
        options = options or ValidationOptions()
        result = ValidationResult()

        for name, store in self._stores().items():
            result.merge(await self._validate_store(name, store, options))
            if options.check_directory:
                result.merge(self._validate_directory(name, store))

        result.is_valid = not result.errors and result.stats.corrupted_entries == 0

        self._logger.info(
            "Cache validation completed",
            is_valid=result.is_valid,
            total=result.stats.total_entries,
            corrupted=result.stats.corrupted_entries,
            invalid=result.stats.invalid_entries,
        )
        return result

    async def _read_files(self, name: str, store: PersistentCacheStore, result: ValidationResult) -> list[CacheFile]:
        try:
            await store.save()
        except CacheStoreError as e:
            result.errors.append(f"{name}: {e}")

        files = []
        for file_name in STORE_FILES:
            try:
                cache_file = await store.read_store_file(file_name)
            except CacheStoreError as e:
                result.errors.append(f"{name}: {e}")
                continue
            if cache_file is not None:
                files.append(cache_file)
        return files

    def _count_missing_files(self, store: PersistentCacheStore) -> int:
        meta_path = store.cache_dir / META_FILE
        if not meta_path.exists():
            return 0
        try:
            meta = json.loads(meta_path.read_text())
        except (OSError, ValueError):
            return 0
        return sum(1 for file_name in meta.get("files", []) if find_store_file(store.cache_dir, file_name) is None)

    async def _validate_store(self, name: str, store: PersistentCacheStore, options: ValidationOptions) -> ValidationResult:
        result = ValidationResult()
        stats = result.stats

        for cache_file in await self._read_files(name, store, result):
            for entry in cache_file.entries:
                stats.total_entries += 1

                if options.check_checksums and not entry.checksum_matches():
                    stats.corrupted_entries += 1
                    stats.invalid_entries += 1
                    result.errors.append(f"{name}: checksum mismatch for entry {entry.key}")
                    continue

                if options.check_schema:
                    try:
                        validate_payload(entry.key, entry.payload)
                    except ValidationError:
                        stats.invalid_entries += 1
                        result.warnings.append(f"{name}: entry {entry.key} does not match its schema")
                        continue

                stats.valid_entries += 1

        stats.missing_files = self._count_missing_files(store)
        if stats.missing_files:
            result.warnings.append(f"{name}: {stats.missing_files} cache file(s) listed in {META_FILE} are missing")
        return result

    def _validate_directory(self, name: str, store: PersistentCacheStore) -> ValidationResult:
        result = ValidationResult()
        if not store.cache_dir.exists():
            result.warnings.append(f"{name}: cache directory does not exist: {store.cache_dir}")
        elif not os.access(store.cache_dir, os.R_OK | os.W_OK):
            result.errors.append(f"{name}: cache directory is not readable and writable: {store.cache_dir}")
        return result

    async def repair_cache(self) -> dict[str, Any]:
        """Drop entries that fail checksum or schema checks and rewrite the stores.

        Returns:
            ``{"repaired": stores rewritten, "removed": entries dropped, "errors": [...]}``
        """
        repair_result: dict[str, Any] = {"repaired": 0, "removed": 0, "errors": []}

        for name, store in self._stores().items():
            try:
                read_result = ValidationResult()
                files = await self._read_files(name, store, read_result)
                repair_result["errors"].extend(read_result.errors)

                kept = []
                removed = 0
                for cache_file in files:
                    for entry in cache_file.entries:
                        if not entry.checksum_matches():
                            removed += 1
                            continue
                        try:
                            validate_payload(entry.key, entry.payload)
                        except ValidationError:
                            removed += 1
                            continue
                        kept.append(entry)

                if removed or read_result.errors:
                    store.replace_entries(kept)
                    await store.save(force=True)
                    repair_result["repaired"] += 1
                    repair_result["removed"] += removed
                    self._logger.info("Cache store repaired", store=name, removed=removed, kept=len(kept))

            except Exception as e:
                repair_result["errors"].append(f"{name}: {e}")
                self._logger.error(f"Cache repair failed for {name}: {e}")

        return repair_result

    def _performance(self) -> tuple[dict[str, Any], bool]:
        stores = self._stores()
        raw = sum(store.stats["raw_bytes"] for store in stores.values() if store.options.compression_enabled)
        written = sum(store.stats["written_bytes"] for store in stores.values() if store.options.compression_enabled)

        def hit_rate(owner: CacheOwner) -> float:
            return owner.get_cache_stats().get("memory", {}).get("hit_rate", 0.0)

        performance = {
            "symbol_cache_hit_rate": hit_rate(self.owners["symbols"]),
            "import_cache_hit_rate": hit_rate(self.owners["imports"]),
            "total_cache_size": sum(store.disk_size() for store in stores.values()),
            "compression_ratio": written / raw if raw else 1.0,
        }
        return performance, raw > 0

    async def generate_health_report(self) -> dict[str, Any]:
        """Validate the caches and summarize their health.

        Returns:
            Report with ``overall``, ``validation``, ``recommendations`` and ``performance``
        """
        validation = await self.validate_cache()
        performance, compression_active = self._performance()
        overall, recommendations = classify_health(validation, performance, compression_active)

        self._logger.info("Cache health report generated", overall=overall, recommendations=len(recommendations))
        return {
            "overall": overall,
            "validation": validation,
            "recommendations": recommendations,
            "performance": performance,
        }

    async def optimize_cache(self) -> dict[str, Any]:
        """Drop entries older than seven days and rewrite both stores."""
        stores = self._stores()
        result: dict[str, Any] = {
            "optimized": False,
            "actions": [],
            "size_before": sum(store.disk_size() for store in stores.values()),
            "size_after": 0,
        }

        cutoff = now_ms() - MAX_ENTRY_AGE_MS
        try:
            for name, store in stores.items():
                removed = store.invalidate_older_than(cutoff)
                if removed:
                    result["actions"].append(f"Removed {removed} stale {name} entries")
                await store.save(force=True)
                result["actions"].append(f"Rewrote {name} cache files")
            result["optimized"] = True
        except CacheStoreError as e:
            result["actions"].append(f"Optimization failed: {e}")
            self._logger.error(f"Cache optimization failed: {e}")

        result["size_after"] = sum(store.disk_size() for store in stores.values())
        return result
