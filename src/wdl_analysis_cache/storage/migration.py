"""Version migration for persistent cache files.

Every historical on-disk layout has its own schema model. A migration step
validates a file against the schema of its source version and produces a
document in the schema of its target version, so structurally invalid files
are rejected before anything is written.
"""

import json
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import aiofiles
import structlog
from pydantic import BaseModel, ValidationError

from ..errors import CacheStoreError, MigrationError
from .models import (
    CACHE_FORMAT_VERSION,
    SYMBOLS_KEY_PREFIX,
    CacheFile,
    EntryMetadata,
    canonical_json,
    compare_versions,
    compute_checksum,
    is_valid_version,
    now_ms,
)
from .persistent import (
    BACKUP_DIR,
    META_FILE,
    STORE_FILES,
    encode_store_bytes,
    find_store_file,
    read_store_bytes,
    store_file_candidates,
    write_atomic,
)

HISTORY_FILE = "migration-history.json"
MAX_HISTORY_ENTRIES = 10


# Historical layouts

class EntryV0_9(BaseModel):
    key: str
    payload: Any
    written_at: int
    checksum: str


class MetadataV0_9(BaseModel):
    format_version: str
    written_at: int
    checksum: str = ""


class CacheFileV0_9(BaseModel):
    metadata: MetadataV0_9
    entries: list[EntryV0_9]


class EntryV1_0(EntryV0_9):
    metadata: EntryMetadata


class MetadataV1_0(MetadataV0_9):
    compression_kind: Literal["gzip", "none"]
    entry_count: int


class CacheFileV1_0(BaseModel):
    metadata: MetadataV1_0
    entries: list[EntryV1_0]


CacheFileV1_1 = CacheFile


def _parse(model: type[BaseModel], document: Any, version: str) -> Any:
    try:
        parsed = model.model_validate(document)
    except ValidationError as e:
        raise MigrationError(f"Cache file does not match the {version} layout: {e}") from e
    if parsed.metadata.format_version != version:
        raise MigrationError(
            f"Expected cache format {version}, found {parsed.metadata.format_version}",
        )
    return parsed


def add_metadata_fields(document: Any, compressed: bool) -> dict[str, Any]:
    """0.9.0 -> 1.0.0: per-entry size metadata and file compression info."""
    source: CacheFileV0_9 = _parse(CacheFileV0_9, document, "0.9.0")

    entries = [
        EntryV1_0(
            **entry.model_dump(),
            metadata=EntryMetadata(
                size=len(canonical_json(entry.payload)),
                compressed=compressed,
                migrated=True,
            ),
        )
        for entry in source.entries
    ]
    migrated = CacheFileV1_0(
        metadata=MetadataV1_0(
            format_version="1.0.0",
            written_at=source.metadata.written_at,
            checksum=source.metadata.checksum,
            compression_kind="gzip" if compressed else "none",
            entry_count=len(entries),
        ),
        entries=entries,
    )
    return migrated.model_dump(mode="json")


def _enrich_task(task: Any, written_at: int) -> dict[str, Any]:
    if not isinstance(task, dict) or "name" not in task or "source_file" not in task:
        raise MigrationError("Task symbol is missing its name or source file")
    enriched = dict(task)
    enriched.setdefault("source", {"type": "local", "source_file": task["source_file"]})
    enriched.setdefault("original_name", task["name"])
    enriched.setdefault("fully_qualified_name", task.get("qualified_name") or task["name"])
    enriched.setdefault("cache_timestamp", written_at)
    return enriched


def add_task_symbol_fields(document: Any, compressed: bool) -> dict[str, Any]:
    """1.0.0 -> 1.1.0: task symbols record their source and qualified names."""
    source: CacheFileV1_0 = _parse(CacheFileV1_0, document, "1.0.0")

    entries = []
    for entry in source.entries:
        payload = entry.payload
        checksum = entry.checksum

        if entry.key.startswith(SYMBOLS_KEY_PREFIX):
            if not isinstance(payload, dict) or not isinstance(payload.get("tasks", {}), dict):
                raise MigrationError(f"Symbol table entry {entry.key} has no task mapping")
            intact = compute_checksum(payload) == checksum
            payload = dict(payload)
            payload["tasks"] = {
                name: _enrich_task(task, entry.written_at)
                for name, task in payload.get("tasks", {}).items()
            }
            # Corrupted entries keep their stale checksum and are quarantined on load
            if intact:
                checksum = compute_checksum(payload)

        entries.append({
            "key": entry.key,
            "payload": payload,
            "written_at": entry.written_at,
            "checksum": checksum,
            "metadata": entry.metadata.model_dump(),
        })

    migrated = CacheFileV1_1.model_validate({
        "metadata": {
            "format_version": "1.1.0",
            "written_at": source.metadata.written_at,
            "checksum": compute_checksum(entries),
            "compression_kind": source.metadata.compression_kind,
            "entry_count": len(entries),
            "total_bytes": len(canonical_json(entries)),
        },
        "entries": entries,
    })
    return migrated.model_dump(mode="json")


@dataclass(frozen=True)
class MigrationStep:
    from_version: str
    to_version: str
    description: str
    transform: Callable[[Any, bool], dict[str, Any]]


MIGRATION_STEPS = [
    MigrationStep("0.9.0", "1.0.0", "Add metadata fields and compression support", add_metadata_fields),
    MigrationStep("1.0.0", "1.1.0", "Add enhanced task symbol fields", add_task_symbol_fields),
]


class CacheMigrationManager:
    """Upgrades the cache files of one store directory between format versions."""

    def __init__(self, cache_dir: Path, steps: list[MigrationStep] | None = None, logger: Any = None):
        """Initialize migration manager.

        Args:
            cache_dir: Store directory holding the cache files
            steps: Migration steps (defaults to the built-in chain)
            logger: structlog logger to use
        """
        self.cache_dir = Path(cache_dir)
        self.steps = sorted(
            steps or MIGRATION_STEPS,
            key=lambda step: tuple(int(part) for part in step.from_version.split(".")),
        )
        self.history_path = self.cache_dir / HISTORY_FILE
        self._logger = (logger or structlog.get_logger(__name__)).bind(cache_dir=str(self.cache_dir))

    def get_migration_steps(self, from_version: str, to_version: str) -> list[MigrationStep]:
        """Steps whose source version lies in ``[from_version, to_version)``."""
        return [
            step for step in self.steps
            if compare_versions(step.from_version, from_version) >= 0
            and compare_versions(step.from_version, to_version) < 0
            and compare_versions(step.to_version, to_version) <= 0
        ]

    def _is_contiguous(self, steps: list[MigrationStep], from_version: str, to_version: str) -> bool:
        current = from_version
        for step in steps:
            if step.from_version != current:
                return False
            current = step.to_version
        return current == to_version

    def needs_migration(self, from_version: str, to_version: str = CACHE_FORMAT_VERSION) -> bool:
        if not (is_valid_version(from_version) and is_valid_version(to_version)):
            return False
        return compare_versions(from_version, to_version) < 0 and bool(
            self.get_migration_steps(from_version, to_version),
        )

    def validate_migration(self, from_version: str, to_version: str) -> dict[str, Any]:
        """Check a migration request without touching any files."""
        result: dict[str, Any] = {"is_valid": True, "issues": [], "recommendations": []}

        if not is_valid_version(from_version):
            result["issues"].append(f"Invalid source version format: {from_version}")
        if not is_valid_version(to_version):
            result["issues"].append(f"Invalid target version format: {to_version}")

        if not result["issues"]:
            if compare_versions(from_version, to_version) > 0:
                result["issues"].append("Downgrade migrations are not supported")
            elif compare_versions(to_version, CACHE_FORMAT_VERSION) > 0:
                result["issues"].append(
                    f"Target version {to_version} is newer than the supported format {CACHE_FORMAT_VERSION}",
                )
            elif compare_versions(from_version, to_version) < 0:
                steps = self.get_migration_steps(from_version, to_version)
                if not self._is_contiguous(steps, from_version, to_version):
                    result["issues"].append(f"No migration path from {from_version} to {to_version}")
                else:
                    result["recommendations"].append(
                        f"A backup is created before applying {len(steps)} migration step(s)",
                    )

        if not any(find_store_file(self.cache_dir, name) for name in STORE_FILES):
            result["recommendations"].append("No cache files found, nothing will be rewritten")

        result["is_valid"] = not result["issues"]
        return result

    def detect_version(self) -> str | None:
        """Format version recorded in the first store file found, if any."""
        for name in STORE_FILES:
            path = find_store_file(self.cache_dir, name)
            if path is None:
                continue
            try:
                document = read_store_bytes(path, path.read_bytes())
            except (OSError, ValueError):
                continue
            metadata = document.get("metadata") if isinstance(document, dict) else None
            if isinstance(metadata, dict) and metadata.get("format_version"):
                return metadata["format_version"]
        return None

    async def migrate(self, from_version: str, to_version: str = CACHE_FORMAT_VERSION) -> dict[str, Any]:
        """Apply the migration chain to every store file in the directory.

        Args:
            from_version: Format version the files are currently in
            to_version: Format version to migrate to

        Returns:
            Migration result with success flag, executed steps, errors and warnings

        Raises:
            MigrationError: When the request itself is invalid (nothing is touched)
        """
        validation = self.validate_migration(from_version, to_version)
        if not validation["is_valid"]:
            raise MigrationError(
                f"Invalid migration from {from_version} to {to_version}",
                issues=validation["issues"],
            )

        result: dict[str, Any] = {
            "success": False,
            "from_version": from_version,
            "to_version": to_version,
            "steps_executed": [],
            "errors": [],
            "warnings": [],
            "backup_path": None,
            "timestamp": now_ms(),
        }

        steps = self.get_migration_steps(from_version, to_version)
        if not steps:
            result["success"] = True
            result["warnings"].append("No migration steps required")
            return result

        try:
            backup_path = self._create_backup(from_version, to_version)
        except OSError as e:
            result["errors"].append(f"Failed to create migration backup: {e}")
            self._logger.error("Migration aborted, backup failed", error=str(e))
            await self.record_migration(result)
            return result
        result["backup_path"] = str(backup_path)

        try:
            for name in STORE_FILES:
                path = find_store_file(self.cache_dir, name)
                if path is None:
                    continue
                await self._migrate_file(path, steps)

            await self._update_meta(to_version)
            result["steps_executed"] = [
                f"{step.from_version} -> {step.to_version}: {step.description}" for step in steps
            ]
            result["success"] = True
            self._logger.info(
                "Cache migration completed",
                from_version=from_version,
                to_version=to_version,
                steps=len(steps),
            )

        except (MigrationError, CacheStoreError, OSError) as e:
            result["errors"].append(str(e))
            self._logger.error("Cache migration failed", error=str(e))
            try:
                self._restore_backup(backup_path)
                result["warnings"].append("Restored from backup due to migration failure")
            except OSError as restore_error:
                result["errors"].append(f"Failed to restore backup {backup_path}: {restore_error}")
                self._logger.critical(
                    "Migration rollback failed, cache files may be inconsistent",
                    backup=str(backup_path),
                    error=str(restore_error),
                )

        await self.record_migration(result)
        return result

    async def _migrate_file(self, path: Path, steps: list[MigrationStep]) -> None:
        compressed = path.suffix == ".gz"
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        try:
            document = read_store_bytes(path, data)
        except ValueError as e:
            raise CacheStoreError(f"Invalid cache file {path.name}: {e}") from e

        # Each intermediate version is written before the next step runs
        for step in steps:
            document = step.transform(document, compressed)
            encoded, _ = encode_store_bytes(document, compressed)
            await write_atomic(path, encoded)
            self._logger.debug("Migration step written", file=path.name, to_version=step.to_version)

    async def _update_meta(self, to_version: str) -> None:
        meta_path = self.cache_dir / META_FILE
        if not meta_path.exists():
            return
        try:
            meta = json.loads(meta_path.read_text())
        except ValueError as e:
            raise CacheStoreError(f"Invalid {META_FILE}: {e}") from e
        meta["format_version"] = to_version
        await write_atomic(meta_path, json.dumps(meta, indent=2).encode("utf-8"))

    def _migration_files(self) -> list[Path]:
        files = [
            path
            for name in STORE_FILES
            for path in store_file_candidates(self.cache_dir, name)
            if path.exists()
        ]
        if (self.cache_dir / META_FILE).exists():
            files.append(self.cache_dir / META_FILE)
        return files

    def _create_backup(self, from_version: str, to_version: str) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        backup_path = self.cache_dir / BACKUP_DIR / f"migration-{from_version}-to-{to_version}-{timestamp}"
        backup_path.mkdir(parents=True)
        for path in self._migration_files():
            shutil.copy2(path, backup_path / path.name)
        self._logger.info("Migration backup created", backup=str(backup_path))
        return backup_path

    def _restore_backup(self, backup_path: Path) -> None:
        for path in self._migration_files():
            path.unlink()
        for path in backup_path.iterdir():
            shutil.copy2(path, self.cache_dir / path.name)
        self._logger.warning("Cache files restored from migration backup", backup=str(backup_path))

    async def get_migration_history(self) -> list[dict[str, Any]]:
        if not self.history_path.exists():
            return []
        try:
            async with aiofiles.open(self.history_path) as f:
                history = json.loads(await f.read())
        except (OSError, ValueError) as e:
            self._logger.warning("Unreadable migration history", error=str(e))
            return []
        return history if isinstance(history, list) else []

    async def record_migration(self, result: dict[str, Any]) -> None:
        """Append a migration result, keeping the most recent entries only."""
        history = await self.get_migration_history()
        history.append({
            "from_version": result.get("from_version"),
            "to_version": result.get("to_version"),
            "success": result.get("success", False),
            "timestamp": result.get("timestamp", now_ms()),
            "steps_executed": result.get("steps_executed", []),
            "errors": result.get("errors", []),
        })
        history = history[-MAX_HISTORY_ENTRIES:]

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        await write_atomic(self.history_path, json.dumps(history, indent=2).encode("utf-8"))
