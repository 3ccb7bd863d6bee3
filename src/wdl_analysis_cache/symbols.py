"""Workspace symbol table backed by the persistent cache."""

import hashlib
from pathlib import Path
from typing import Any

import structlog

from .cache.memory import BoundedCache
from .config import CacheSettings
from .resolver.imports import ImportResolver, file_mtime_ms, normalize_uri
from .resolver.parser import DocumentOutline, DocumentParser, WdlOutlineParser, to_task_info, to_workflow_symbol
from .storage.models import SymbolTable, TaskSource, TaskSymbol, now_ms
from .storage.persistent import PersistentCacheStore


class SymbolProvider:
    """Keeps the symbol table of one workspace up to date and persisted."""

    def __init__(
        self,
        workspace_root: Path,
        settings: CacheSettings | None = None,
        parser: DocumentParser | None = None,
        import_resolver: ImportResolver | None = None,
        logger: Any = None,
    ):
        self.workspace_root = Path(workspace_root)
        self.workspace_uri = normalize_uri(str(self.workspace_root))
        self.settings = settings or CacheSettings()
        self.parser = parser or WdlOutlineParser()
        self.import_resolver = import_resolver
        self._logger = logger or structlog.get_logger(__name__)

        self.table = SymbolTable()
        # Parsed outlines keyed by document content hash
        self._outlines: BoundedCache[DocumentOutline] = BoundedCache(
            self.settings.memory_options("symbols"), name="symbols", logger=self._logger,
        )
        self._store = PersistentCacheStore(
            self.settings.store_options(self.workspace_root, "symbols"), logger=self._logger,
        )

    async def initialize(self) -> None:
        """Load the persisted symbol table, dropping documents changed since. Never raises."""
        await self._store.initialize()

        try:
            table = await self._store.load_symbol_table(self.workspace_uri)
        except Exception as e:
            self._logger.error(f"Failed to load symbol table: {e}")
            table = None

        if table is not None:
            self.table = table
            for uri, modified in list(table.last_modified.items()):
                mtime = file_mtime_ms(uri)
                if mtime is None or mtime > modified:
                    self._drop_document(uri)

        self._outlines.start()
        self._logger.info(
            "Symbol provider initialized",
            tasks=len(self.table.tasks),
            workflows=len(self.table.workflows),
        )

    def _parse(self, content: str) -> DocumentOutline:
        key = hashlib.sha256(content.encode("utf-8")).hexdigest()
        outline = self._outlines.get(key)
        if outline is None:
            outline = self.parser.parse(content)
            self._outlines.set(key, outline)
        return outline

    def _drop_document(self, uri: str) -> int:
        names = self.table.documents.pop(uri, [])
        for name in names:
            self.table.tasks.pop(name, None)
            self.table.workflows.pop(name, None)
        self.table.last_modified.pop(uri, None)
        return len(names)

    async def update_document(self, content: str, uri: str) -> list[TaskSymbol]:
        """Re-analyze a document and replace its symbols.

        Args:
            content: Current document text
            uri: Document URI or path

        Returns:
            Task symbols now provided by the document, including imported ones
        """
        path = normalize_uri(uri)
        self._drop_document(path)

        outline = self._parse(content)
        timestamp = now_ms()
        names: list[str] = []
        symbols: list[TaskSymbol] = []

        for declaration in outline.tasks:
            info = to_task_info(declaration, path)
            symbol = TaskSymbol(
                **info.model_dump(),
                source=TaskSource(type="local", source_file=path),
                original_name=info.name,
                fully_qualified_name=info.name,
                cache_timestamp=timestamp,
            )
            self.table.tasks[symbol.name] = symbol
            names.append(symbol.name)
            symbols.append(symbol)

        for declaration in outline.workflows:
            self.table.workflows[declaration.name] = to_workflow_symbol(declaration, path)
            names.append(declaration.name)

        if self.import_resolver is not None:
            for declaration in outline.imports:
                result = await self.import_resolver.resolve_import(declaration.path, path, declaration.alias)
                if not result.success:
                    self._logger.debug("Unresolved import", uri=path, errors=result.errors)
                    continue
                for task in result.tasks:
                    symbol = TaskSymbol(
                        **task.model_dump(),
                        source=TaskSource(
                            type="imported",
                            source_file=task.source_file,
                            import_path=declaration.path,
                            alias=declaration.alias,
                        ),
                        original_name=task.name.rsplit(".", 1)[-1],
                        fully_qualified_name=task.name,
                        cache_timestamp=timestamp,
                    )
                    self.table.tasks[symbol.name] = symbol
                    names.append(symbol.name)
                    symbols.append(symbol)

        self.table.documents[path] = names
        self.table.last_modified[path] = file_mtime_ms(path) or timestamp
        await self._store.save_symbol_table(self.table, self.workspace_uri)
        return symbols

    async def remove_document(self, uri: str) -> None:
        path = normalize_uri(uri)
        removed = self._drop_document(path)
        await self._store.save_symbol_table(self.table, self.workspace_uri)
        self._logger.debug("Document symbols removed", uri=path, removed=removed)

    def get_task_symbol(self, name: str) -> TaskSymbol | None:
        return self.table.tasks.get(name)

    def get_all_tasks(self) -> list[TaskSymbol]:
        return list(self.table.tasks.values())

    async def clear_all(self) -> None:
        self.table = SymbolTable()
        self._outlines.clear()
        await self._store.clear_cache()

    def get_statistics(self) -> dict[str, int]:
        return {
            "task_count": len(self.table.tasks),
            "workflow_count": len(self.table.workflows),
            "document_count": len(self.table.documents),
        }

    def get_cache_stats(self) -> dict[str, Any]:
        return {
            "memory": self._outlines.get_stats(),
            "persistent": self._store.get_stats(),
        }

    def get_persistent_cache(self) -> PersistentCacheStore:
        return self._store

    async def destroy(self) -> None:
        await self._store.save_symbol_table(self.table, self.workspace_uri)
        await self._store.destroy()
        await self._outlines.destroy()
