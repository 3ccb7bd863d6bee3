"""Disk-backed cache store for symbol tables and resolved imports.

Each store directory holds two domain files (``symbols.cache`` and
``imports.cache``, gzip-compressed with a ``.gz`` suffix when compression is
enabled) plus a ``cache.meta`` summary. Every entry carries a sha256 checksum
of its payload which is recomputed whenever the entry is read back.
"""

import asyncio
import gzip
import json
import os
import shutil
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import ValidationError

from ..config import PersistentStoreOptions
from ..errors import BackupError, CacheStoreError
from .models import (
    CACHE_FORMAT_VERSION,
    IMPORT_KEY_PREFIX,
    IMPORTS_GLOBAL_KEY,
    SYMBOLS_KEY_PREFIX,
    CachedImport,
    CacheFile,
    PersistedEntry,
    StoreMetadata,
    SymbolTable,
    canonical_json,
    compute_checksum,
    dump_import_map,
    is_compatible_version,
    now_ms,
    validate_payload,
)

SYMBOLS_FILE = "symbols.cache"
IMPORTS_FILE = "imports.cache"
META_FILE = "cache.meta"
BACKUP_DIR = "backups"
DEFAULT_BACKUP_LABEL = "backup"

STORE_FILES = (SYMBOLS_FILE, IMPORTS_FILE)


def store_file_candidates(cache_dir: Path, name: str) -> list[Path]:
    """Possible on-disk paths of a domain file, compressed variant first."""
    return [cache_dir / f"{name}.gz", cache_dir / name]


def find_store_file(cache_dir: Path, name: str) -> Path | None:
    for candidate in store_file_candidates(cache_dir, name):
        if candidate.exists():
            return candidate
    return None


def read_store_bytes(path: Path, data: bytes) -> Any:
    """Decode raw file bytes (gunzipping ``.gz`` files) into JSON."""
    if path.suffix == ".gz":
        data = gzip.decompress(data)
    return json.loads(data.decode("utf-8"))


def encode_store_bytes(document: Any, compress: bool) -> tuple[bytes, int]:
    """Encode a JSON document, returning the bytes to write and the raw length."""
    raw = json.dumps(document).encode("utf-8")
    return (gzip.compress(raw) if compress else raw), len(raw)


async def write_atomic(path: Path, data: bytes) -> None:
    """Write to a sibling temp file and rename it over ``path``."""
    tmp_path = path.with_name(path.name + ".tmp")
    async with aiofiles.open(tmp_path, "wb") as f:
        await f.write(data)
    os.replace(tmp_path, path)


class PersistentCacheStore:
    """Durable, checksummed store for one cache domain directory."""

    def __init__(self, options: PersistentStoreOptions, logger: Any = None):
        self.options = options
        self.cache_dir = Path(options.cache_dir)
        self.backup_dir = self.cache_dir / BACKUP_DIR
        self._logger = (logger or structlog.get_logger(__name__)).bind(cache_dir=str(self.cache_dir))

        self._domains: dict[str, dict[str, PersistedEntry]] = {
            SYMBOLS_FILE: {},
            IMPORTS_FILE: {},
        }
        # Entries that failed verification at load; never served, kept on disk until repaired
        self._quarantine: dict[str, dict[str, PersistedEntry]] = {
            SYMBOLS_FILE: {},
            IMPORTS_FILE: {},
        }
        self._dirty = False
        self._mutations = 0
        self._lock = asyncio.Lock()
        self._save_task: asyncio.Task | None = None
        self._initialized = False

        self.stats: dict[str, Any] = {
            "last_save": None,
            "last_load": None,
            "save_count": 0,
            "load_count": 0,
            "error_count": 0,
            "raw_bytes": 0,
            "written_bytes": 0,
        }

    # Lifecycle

    async def initialize(self) -> None:
        """Create the cache directory and load existing files. Never raises."""
        if self._initialized:
            return

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            await self.load()
        except Exception as e:
            self.stats["error_count"] += 1
            for entries in (*self._domains.values(), *self._quarantine.values()):
                entries.clear()
            self._logger.error(f"Failed to load persistent cache: {e}")

        if self.options.auto_save and self.options.save_interval > 0:
            self._save_task = asyncio.create_task(self._auto_save_loop())

        self._initialized = True
        self._logger.info(
            "Persistent cache initialized",
            entries=self.entry_count(),
            compression=self.options.compression_enabled,
        )

    async def _auto_save_loop(self) -> None:
        """Background flush task."""
        while True:
            try:
                await asyncio.sleep(self.options.save_interval)
                await self.save()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.stats["error_count"] += 1
                self._logger.error("Auto-save failed", error=str(e))

    async def destroy(self) -> None:
        """Stop auto-saving and flush pending changes."""
        if self._save_task:
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
            self._save_task = None

        try:
            await self.save()
        except CacheStoreError as e:
            self._logger.error("Final cache flush failed", error=str(e))
        self._initialized = False

    # Entry access

    @staticmethod
    def _file_for(key: str) -> str:
        return SYMBOLS_FILE if key.startswith(SYMBOLS_KEY_PREFIX) else IMPORTS_FILE

    def _domain_for(self, key: str) -> dict[str, PersistedEntry]:
        return self._domains[self._file_for(key)]

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._mutations += 1

    def _put(self, key: str, payload: Any) -> None:
        self._domain_for(key)[key] = PersistedEntry.create(
            key, payload, compressed=self.options.compression_enabled,
        )
        self._quarantine[self._file_for(key)].pop(key, None)
        self._mark_dirty()

    def _get(self, key: str) -> Any | None:
        """Return a verified payload, dropping the entry when it fails checks."""
        domain = self._domain_for(key)
        entry = domain.get(key)
        if entry is None:
            return None

        if self.options.checksum_validation and not entry.checksum_matches():
            self._logger.warning("Checksum mismatch, dropping cache entry", key=key)
            self.stats["error_count"] += 1
            del domain[key]
            self._mark_dirty()
            return None

        try:
            return validate_payload(key, entry.payload)
        except ValidationError as e:
            self._logger.warning("Invalid cache entry payload, dropping", key=key, error=str(e))
            self.stats["error_count"] += 1
            del domain[key]
            self._mark_dirty()
            return None

    async def save_symbol_table(self, table: SymbolTable, uri: str) -> None:
        self._put(f"{SYMBOLS_KEY_PREFIX}{uri}", table.model_dump(mode="json"))

    async def load_symbol_table(self, uri: str) -> SymbolTable | None:
        return self._get(f"{SYMBOLS_KEY_PREFIX}{uri}")

    async def save_import_cache(self, imports: dict[str, CachedImport]) -> None:
        self._put(IMPORTS_GLOBAL_KEY, dump_import_map(imports))

    async def load_import_cache(self) -> dict[str, CachedImport]:
        return self._get(IMPORTS_GLOBAL_KEY) or {}

    async def save_cached_import(self, key: str, entry: CachedImport) -> None:
        self._put(f"{IMPORT_KEY_PREFIX}{key}", entry.model_dump(mode="json"))

    async def load_cached_import(self, key: str) -> CachedImport | None:
        return self._get(f"{IMPORT_KEY_PREFIX}{key}")

    def entries(self) -> list[PersistedEntry]:
        return [entry for domain in self._domains.values() for entry in domain.values()]

    def entry_count(self) -> int:
        return sum(len(domain) for domain in self._domains.values())

    def quarantined_entries(self) -> list[PersistedEntry]:
        """Entries rejected at load because their checksum did not verify."""
        return [entry for domain in self._quarantine.values() for entry in domain.values()]

    def remove_entry(self, key: str) -> bool:
        found = self._domain_for(key).pop(key, None) is not None
        found = self._quarantine[self._file_for(key)].pop(key, None) is not None or found
        if found:
            self._mark_dirty()
        return found

    def replace_entries(self, entries: list[PersistedEntry]) -> None:
        """Replace the in-memory contents with already verified entries."""
        for domain in (*self._domains.values(), *self._quarantine.values()):
            domain.clear()
        for entry in entries:
            self._domain_for(entry.key)[entry.key] = entry
        self._mark_dirty()

    # Invalidation

    def invalidate_entries(self, predicate: Callable[[str, PersistedEntry], bool]) -> int:
        """Remove every entry for which ``predicate(key, entry)`` is true."""
        removed = 0
        for domain in (*self._domains.values(), *self._quarantine.values()):
            for key in [key for key, entry in domain.items() if predicate(key, entry)]:
                del domain[key]
                removed += 1
        if removed:
            self._mark_dirty()
            self._logger.debug("Persistent entries invalidated", removed=removed)
        return removed

    def invalidate_older_than(self, timestamp: int) -> int:
        """Remove entries written before ``timestamp`` (epoch milliseconds)."""
        return self.invalidate_entries(lambda _key, entry: entry.written_at < timestamp)

    def invalidate_by_uri(self, uri: str) -> int:
        """Remove the symbol table of ``uri`` and every import that depends on it."""

        def depends_on(payload: Any) -> bool:
            if not isinstance(payload, dict):
                return False
            return payload.get("resolved_uri") == uri or uri in payload.get("dependencies", [])

        removed = self.invalidate_entries(
            lambda key, entry: key == f"{SYMBOLS_KEY_PREFIX}{uri}"
            or (key.startswith(IMPORT_KEY_PREFIX) and depends_on(entry.payload)),
        )

        global_entry = self._domains[IMPORTS_FILE].get(IMPORTS_GLOBAL_KEY)
        if global_entry is not None and isinstance(global_entry.payload, dict):
            kept = {
                key: value for key, value in global_entry.payload.items()
                if not depends_on(value)
            }
            dropped = len(global_entry.payload) - len(kept)
            if dropped:
                self._put(IMPORTS_GLOBAL_KEY, kept)
                removed += dropped

        if removed:
            self._logger.info("Invalidated cache entries for file", uri=uri, removed=removed)
        return removed

    # Disk I/O

    async def save(self, force: bool = False) -> bool:
        """Write all domain files when there are unsaved changes.

        Returns:
            True if files were written

        Raises:
            CacheStoreError: When a file cannot be written
        """
        if not self._dirty and not force:
            return False

        async with self._lock:
            snapshot = self._mutations
            try:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                raw_total = 0
                written_total = 0
                for name in STORE_FILES:
                    # Quarantined entries are written back unchanged so validation still sees them
                    entries = {**self._quarantine[name], **self._domains[name]}
                    raw, written = await self._write_store_file(name, entries)
                    raw_total += raw
                    written_total += written

                await self._write_meta(raw_total, written_total)
            except OSError as e:
                self.stats["error_count"] += 1
                raise CacheStoreError(f"Failed to save cache to {self.cache_dir}: {e}") from e

            # Changes made while the files were being written need another save
            if self._mutations == snapshot:
                self._dirty = False
            self.stats["save_count"] += 1
            self.stats["last_save"] = now_ms()
            self.stats["raw_bytes"] = raw_total
            self.stats["written_bytes"] = written_total

        self._logger.debug("Persistent cache saved", entries=self.entry_count(), bytes=written_total)
        return True

    async def _write_store_file(self, name: str, entries: dict[str, PersistedEntry]) -> tuple[int, int]:
        compress = self.options.compression_enabled
        dumped = [entry.model_dump(mode="json") for entry in entries.values()]
        document = CacheFile(
            metadata=StoreMetadata(
                format_version=CACHE_FORMAT_VERSION,
                checksum=compute_checksum(dumped),
                compression_kind="gzip" if compress else "none",
                entry_count=len(dumped),
                total_bytes=len(canonical_json(dumped)),
            ),
            entries=list(entries.values()),
        ).model_dump(mode="json")

        data, raw_length = encode_store_bytes(document, compress)
        target, stale = store_file_candidates(self.cache_dir, name)
        if not compress:
            target, stale = stale, target

        await write_atomic(target, data)
        if stale.exists():
            stale.unlink()
        return raw_length, len(data)

    async def _write_meta(self, raw_total: int, written_total: int) -> None:
        meta = {
            "format_version": CACHE_FORMAT_VERSION,
            "written_at": now_ms(),
            "compression_kind": "gzip" if self.options.compression_enabled else "none",
            "entry_count": self.entry_count(),
            "raw_bytes": raw_total,
            "written_bytes": written_total,
            "files": list(STORE_FILES),
        }
        await write_atomic(self.cache_dir / META_FILE, json.dumps(meta, indent=2).encode("utf-8"))

    async def read_store_file(self, name: str) -> CacheFile | None:
        """Parse one domain file without checksum filtering.

        Raises:
            CacheStoreError: When the file is unreadable, malformed or from an
                incompatible format version
        """
        path = find_store_file(self.cache_dir, name)
        if path is None:
            return None

        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
            document = read_store_bytes(path, data)
        except (OSError, ValueError) as e:
            raise CacheStoreError(f"Cannot read cache file {path.name}: {e}") from e

        metadata = document.get("metadata") if isinstance(document, dict) else None
        version = metadata.get("format_version") if isinstance(metadata, dict) else None
        if not version or not is_compatible_version(version):
            raise CacheStoreError(
                f"Incompatible cache format version in {path.name}: {version} "
                f"(current {CACHE_FORMAT_VERSION})",
            )

        try:
            return CacheFile.model_validate(document)
        except ValidationError as e:
            raise CacheStoreError(f"Malformed cache file {path.name}: {e}") from e

    async def load(self) -> None:
        """Load both domain files, quarantining entries whose checksum fails."""
        async with self._lock:
            self._dirty = False
            for name in STORE_FILES:
                domain = self._domains[name]
                quarantine = self._quarantine[name]
                domain.clear()
                quarantine.clear()
                cache_file = await self.read_store_file(name)
                if cache_file is None:
                    continue

                rejected = 0
                for entry in cache_file.entries:
                    if self.options.checksum_validation and not entry.checksum_matches():
                        quarantine[entry.key] = entry
                        rejected += 1
                        continue
                    domain[entry.key] = entry

                if rejected:
                    self.stats["error_count"] += rejected
                    self._logger.warning("Quarantined corrupted cache entries", file=name, rejected=rejected)

            self.stats["load_count"] += 1
            self.stats["last_load"] = now_ms()

    async def verify_cache_integrity(self) -> dict[str, Any]:
        """Check every in-memory entry checksum and that the store files are readable."""
        report: dict[str, Any] = {"is_valid": True, "errors": [], "checked": 0}

        for entry in [*self.entries(), *self.quarantined_entries()]:
            report["checked"] += 1
            if not entry.checksum_matches():
                report["errors"].append(f"Checksum mismatch for entry {entry.key}")

        for name in STORE_FILES:
            try:
                await self.read_store_file(name)
            except CacheStoreError as e:
                report["errors"].append(str(e))

        report["is_valid"] = not report["errors"]
        return report

    def disk_size(self) -> int:
        total = 0
        for name in (*STORE_FILES, META_FILE):
            for path in store_file_candidates(self.cache_dir, name):
                if path.exists():
                    total += path.stat().st_size
        return total

    def compression_ratio(self) -> float:
        """Bytes written divided by raw serialized bytes for the last save."""
        if not self.options.compression_enabled or not self.stats["raw_bytes"]:
            return 1.0
        return self.stats["written_bytes"] / self.stats["raw_bytes"]

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_entries": self.entry_count(),
            "quarantined_entries": len(self.quarantined_entries()),
            "total_size": self.disk_size(),
            "compression_ratio": self.compression_ratio(),
            "last_save": self.stats["last_save"],
            "last_load": self.stats["last_load"],
            "save_count": self.stats["save_count"],
            "load_count": self.stats["load_count"],
            "error_count": self.stats["error_count"],
        }

    # Backups

    def _existing_files(self) -> list[Path]:
        files = [
            path
            for name in STORE_FILES
            for path in store_file_candidates(self.cache_dir, name)
            if path.exists()
        ]
        if (self.cache_dir / META_FILE).exists():
            files.append(self.cache_dir / META_FILE)
        return files

    async def create_backup(self, label: str | None = None) -> Path:
        """Copy the current store files into ``backups/<label>-<timestamp>``.

        Raises:
            BackupError: When the files cannot be copied
        """
        try:
            await self.save()
        except CacheStoreError as e:
            raise BackupError(f"Cannot flush cache before backup: {e}") from e

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        backup_path = self.backup_dir / f"{label or DEFAULT_BACKUP_LABEL}-{timestamp}"

        try:
            backup_path.mkdir(parents=True, exist_ok=False)
            for path in self._existing_files():
                shutil.copy2(path, backup_path / path.name)
        except OSError as e:
            raise BackupError(f"Failed to create backup {backup_path.name}: {e}") from e

        self._logger.info("Cache backup created", backup=str(backup_path))

        if label is None:
            self._cleanup_old_backups()
        return backup_path

    def _cleanup_old_backups(self) -> int:
        """Keep only the newest ``max_backups`` unlabelled backups."""
        backups = sorted(
            (path for path in self.backup_dir.glob(f"{DEFAULT_BACKUP_LABEL}-*") if path.is_dir()),
            key=lambda path: path.name,
            reverse=True,
        )

        cleaned = 0
        for path in backups[self.options.max_backups:]:
            try:
                shutil.rmtree(path)
                cleaned += 1
            except OSError as e:
                self._logger.error(f"Failed to remove backup {path}: {e}")
        return cleaned

    def list_backups(self) -> list[Path]:
        if not self.backup_dir.exists():
            return []
        return sorted((path for path in self.backup_dir.iterdir() if path.is_dir()), key=lambda p: p.name)

    async def restore_from_backup(self, backup_path: Path) -> None:
        """Replace the store files with a backup and reload them.

        Raises:
            BackupError: When the backup is missing or cannot be copied or loaded
        """
        backup_path = Path(backup_path)
        if not backup_path.is_dir():
            raise BackupError(f"Backup not found: {backup_path}")

        async with self._lock:
            try:
                for path in self._existing_files():
                    path.unlink()
                for path in backup_path.iterdir():
                    if path.is_file():
                        shutil.copy2(path, self.cache_dir / path.name)
            except OSError as e:
                raise BackupError(f"Failed to restore backup {backup_path.name}: {e}") from e

        try:
            await self.load()
        except CacheStoreError as e:
            raise BackupError(f"Restored backup {backup_path.name} is unreadable: {e}") from e

        self._logger.info("Cache restored from backup", backup=str(backup_path), entries=self.entry_count())

    async def clear_cache(self) -> None:
        """Drop all entries and delete the store files."""
        async with self._lock:
            for domain in (*self._domains.values(), *self._quarantine.values()):
                domain.clear()
            for path in self._existing_files():
                path.unlink()
            self._dirty = False
        self._logger.info("Persistent cache cleared")
