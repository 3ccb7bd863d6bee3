"""Import resolution with transitive dependency tracking.

Resolving an import reads the imported document, collects its tasks (prefixed
with the import alias) and recursively resolves its own imports. Every file
visited along the way is recorded as a dependency of the result, so a change
to any of them invalidates the cached import.
"""

import asyncio
import os
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import aiofiles
import structlog
from pydantic import BaseModel, Field

from ..cache.memory import BoundedCache
from ..config import CacheSettings
from ..storage.models import IMPORT_KEY_PREFIX, CachedImport, TaskInfo, now_ms
from ..storage.persistent import PersistentCacheStore
from .parser import DocumentParser, WdlOutlineParser, to_task_info

MAX_RECURSION_DEPTH = 10
WDL_SUFFIX = ".wdl"


class ImportResult(BaseModel):
    success: bool
    tasks: list[TaskInfo] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    last_modified: int = 0
    dependencies: set[str] = Field(default_factory=set)


def uri_to_path(uri: str) -> Path:
    """Convert a ``file://`` URI or a plain path to a filesystem path."""
    if uri.startswith("file://"):
        return Path(unquote(urlparse(uri).path))
    return Path(uri)


def normalize_uri(uri: str) -> str:
    """Canonical form used for cache keys and dependency sets."""
    return str(uri_to_path(uri).resolve())


def file_mtime_ms(path: str) -> int | None:
    try:
        return os.stat(path).st_mtime_ns // 1_000_000
    except OSError:
        return None


def qualify_task_name(name: str, alias: str | None, nested_alias: str | None) -> str:
    """Re-prefix a task coming from a nested import with the enclosing aliases.

    Without any alias the name is kept as it is, namespace included.
    """
    if not alias and not nested_alias:
        return name
    base = name.rsplit(".", 1)[-1]
    return ".".join(part for part in (alias, nested_alias, base) if part)


class ImportResolver:
    """Resolves WDL imports with in-memory and persistent caching."""

    def __init__(
        self,
        workspace_root: Path,
        settings: CacheSettings | None = None,
        parser: DocumentParser | None = None,
        notifier: Any = None,
        logger: Any = None,
    ):
        """Initialize the import resolver.

        Args:
            workspace_root: Workspace directory; the cache lives below it
            settings: Cache settings (defaults when omitted)
            parser: Document outline parser
            notifier: Optional file change notifier to subscribe to
            logger: structlog logger to use
        """
        self.workspace_root = Path(workspace_root)
        self.settings = settings or CacheSettings()
        self.parser = parser or WdlOutlineParser()
        self.max_depth = self.settings.max_recursion_depth
        self._logger = logger or structlog.get_logger(__name__)

        self._cache: BoundedCache[CachedImport] = BoundedCache(
            self.settings.memory_options("imports"), name="imports", logger=self._logger,
        )
        self._store = PersistentCacheStore(
            self.settings.store_options(self.workspace_root, "imports"), logger=self._logger,
        )
        self._pending_writes: set[asyncio.Task] = set()

        self.notifier = notifier
        if notifier is not None:
            notifier.register_callback("change", self._on_file_change)

    async def initialize(self) -> None:
        """Load persisted imports that are still fresh and start the sweep task."""
        await self._store.initialize()

        loaded = 0
        for key, entry in (await self._store.load_import_cache()).items():
            if self._is_fresh(entry):
                self._cache.set(key, entry)
                loaded += 1

        self._cache.start()
        self._logger.info("Import resolver initialized", cached_imports=loaded)

    def resolve_import_path(self, import_path: str, base_uri: str) -> str | None:
        """Resolve an import path relative to the importing document."""
        if import_path.startswith("file://"):
            candidate = uri_to_path(import_path)
        else:
            candidate = Path(import_path)
            if not candidate.is_absolute():
                candidate = uri_to_path(base_uri).parent / candidate

        candidate = candidate.resolve()
        if candidate.is_file():
            return str(candidate)

        if candidate.suffix != WDL_SUFFIX:
            with_suffix = candidate.with_name(candidate.name + WDL_SUFFIX)
            if with_suffix.is_file():
                return str(with_suffix)
        return None

    def _is_fresh(self, entry: CachedImport) -> bool:
        """An entry is valid while no file it depends on changed after it was cached."""
        mtime = file_mtime_ms(entry.resolved_uri)
        if mtime is None or mtime > entry.source_mtime:
            return False
        for dependency in entry.dependencies:
            if dependency == entry.resolved_uri:
                continue
            dependency_mtime = file_mtime_ms(dependency)
            if dependency_mtime is None or dependency_mtime > entry.cached_at:
                return False
        return True

    async def _lookup(self, cache_key: str) -> CachedImport | None:
        entry = self._cache.get(cache_key)
        if entry is not None:
            if self._is_fresh(entry):
                return entry
            self._cache.delete(cache_key)

        entry = await self._store.load_cached_import(cache_key)
        if entry is not None:
            if self._is_fresh(entry):
                self._cache.set(cache_key, entry)
                return entry
            self._store.remove_entry(f"{IMPORT_KEY_PREFIX}{cache_key}")
        return None

    async def resolve_import(self, import_path: str, base_uri: str, alias: str | None = None) -> ImportResult:
        """Resolve an import and every import it pulls in.

        Args:
            import_path: Path as written in the import statement
            base_uri: URI of the importing document
            alias: Alias from ``import ... as <alias>``

        Returns:
            Import result; failures are reported in ``errors``, never raised
        """
        resolved = self.resolve_import_path(import_path, base_uri)
        if resolved is None:
            return ImportResult(success=False, errors=[f"Cannot resolve import path: {import_path}"])

        cache_key = f"{resolved}#{alias or ''}"
        cached = await self._lookup(cache_key)
        if cached is not None:
            self._logger.debug("Import cache hit", path=resolved, alias=alias)
            return ImportResult(
                success=True,
                tasks=cached.tasks,
                last_modified=cached.source_mtime,
                dependencies=set(cached.dependencies),
            )

        result = await self._resolve_from_file(resolved, alias, frozenset(), 0)
        if result.success:
            entry = CachedImport(
                resolved_uri=resolved,
                original_path=import_path,
                alias=alias,
                tasks=result.tasks,
                source_mtime=result.last_modified,
                dependencies=result.dependencies,
                cached_at=now_ms(),
            )
            self._cache.set(cache_key, entry)
            self._schedule_persist(cache_key, entry)
        else:
            self._logger.info("Import resolution failed", path=resolved, errors=result.errors)

        return result

    async def _resolve_from_file(
        self,
        path: str,
        alias: str | None,
        visited: frozenset[str],
        depth: int,
    ) -> ImportResult:
        if path in visited:
            return ImportResult(success=False, errors=[f"Circular dependency detected: {path}"])
        if depth > self.max_depth:
            return ImportResult(success=False, errors=[f"Maximum recursion depth exceeded: {path}"])

        visited = visited | {path}
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            return ImportResult(success=False, errors=[f"Failed to read import file {path}: {e}"])

        last_modified = file_mtime_ms(path) or 0
        outline = self.parser.parse(text)

        tasks = []
        for declaration in outline.tasks:
            task = to_task_info(declaration, path)
            name = f"{alias}.{task.name}" if alias else task.name
            tasks.append(task.model_copy(update={"name": name, "qualified_name": name}))

        dependencies = {path}
        errors: list[str] = []
        for nested_import in outline.imports:
            nested_path = self.resolve_import_path(nested_import.path, path)
            if nested_path is None:
                errors.append(f"Cannot resolve nested import: {nested_import.path} from {path}")
                continue

            nested = await self._resolve_from_file(nested_path, nested_import.alias, visited, depth + 1)
            dependencies |= nested.dependencies
            if not nested.success:
                errors.extend(nested.errors)
                continue

            for task in nested.tasks:
                name = qualify_task_name(task.name, alias, nested_import.alias)
                tasks.append(task.model_copy(update={"name": name, "qualified_name": name}))

        return ImportResult(
            success=not errors,
            tasks=tasks,
            errors=errors,
            last_modified=last_modified,
            dependencies=dependencies,
        )

    def _schedule_persist(self, cache_key: str, entry: CachedImport) -> None:
        task = asyncio.create_task(self._store.save_cached_import(cache_key, entry))
        self._pending_writes.add(task)
        task.add_done_callback(self._persist_done)

    def _persist_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.warning("Failed to persist cached import", error=str(task.exception()))

    def get_imported_tasks(self, uri: str) -> list[TaskInfo]:
        """Tasks of every cached import that resolved to ``uri``."""
        path = normalize_uri(uri)
        tasks: list[TaskInfo] = []
        for entry in self._cache.values():
            if entry.resolved_uri == path:
                tasks.extend(entry.tasks)
        return tasks

    async def handle_import_file_change(self, uri: str) -> int:
        """Invalidate every cached import whose dependencies include ``uri``."""
        path = normalize_uri(uri)
        await self._drain_pending_writes()
        removed = self._cache.invalidate(
            lambda _key, entry: entry.resolved_uri == path or path in entry.dependencies,
        )
        removed_persistent = self._store.invalidate_by_uri(path)

        if removed or removed_persistent:
            self._logger.info(
                "Imports invalidated after file change",
                uri=path,
                memory=removed,
                persistent=removed_persistent,
            )
        return removed

    async def _on_file_change(self, uri: str, **_: Any) -> None:
        await self.handle_import_file_change(uri)

    def cleanup_cache(self) -> int:
        return self._cache.cleanup()

    def get_cache_stats(self) -> dict[str, Any]:
        return {
            "memory": self._cache.get_stats(),
            "persistent": self._store.get_stats(),
        }

    async def _drain_pending_writes(self) -> None:
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

    async def clear_cache(self) -> None:
        await self._drain_pending_writes()
        self._cache.clear()
        await self._store.clear_cache()

    def get_persistent_cache(self) -> PersistentCacheStore:
        return self._store

    async def destroy(self) -> None:
        """Flush pending writes and the import map, then release resources."""
        await self._drain_pending_writes()

        await self._store.save_import_cache(dict(self._cache.items()))
        await self._store.destroy()
        await self._cache.destroy()

        if self.notifier is not None:
            self.notifier.unregister_callback("change", self._on_file_change)
