"""Unit tests for the persistent cache store."""

import asyncio

import pytest

from wdl_analysis_cache.config import PersistentStoreOptions
from wdl_analysis_cache.errors import BackupError
from wdl_analysis_cache.storage.models import CachedImport, SymbolTable, TaskSymbol
from wdl_analysis_cache.storage import persistent
from wdl_analysis_cache.storage.persistent import META_FILE, PersistentCacheStore

from ..helpers import read_store_document, write_store_document


def make_table(*names: str) -> SymbolTable:
    return SymbolTable(
        tasks={name: TaskSymbol(name=name, source_file="/ws/main.wdl") for name in names},
        last_modified={"/ws/main.wdl": 1000},
    )


def make_import(uri: str, dependencies: set[str], cached_at: int = 5000) -> CachedImport:
    return CachedImport(
        resolved_uri=uri,
        original_path=uri,
        source_mtime=1000,
        dependencies=dependencies | {uri},
        cached_at=cached_at,
    )


async def open_store(options: PersistentStoreOptions) -> PersistentCacheStore:
    store = PersistentCacheStore(options)
    await store.initialize()
    return store


class TestPersistentRoundTrip:
    """Saving and reloading through the filesystem."""

    @pytest.mark.asyncio
    async def test_symbol_table_survives_restart(self, store_options):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("align", "sort"), "/ws")
        await store.destroy()

        reopened = await open_store(store_options)
        table = await reopened.load_symbol_table("/ws")

        assert table is not None
        assert sorted(table.tasks) == ["align", "sort"]
        assert reopened.get_stats()["load_count"] == 1

    @pytest.mark.asyncio
    async def test_import_cache_and_single_imports_survive_restart(self, store_options):
        store = await open_store(store_options)
        entry = make_import("/ws/lib.wdl", {"/ws/util.wdl"})
        await store.save_import_cache({"/ws/lib.wdl#": entry})
        await store.save_cached_import("/ws/lib.wdl#lib", entry)
        await store.save()

        reopened = await open_store(store_options)

        imports = await reopened.load_import_cache()
        assert imports["/ws/lib.wdl#"].dependencies == {"/ws/lib.wdl", "/ws/util.wdl"}
        single = await reopened.load_cached_import("/ws/lib.wdl#lib")
        assert single == entry

    @pytest.mark.asyncio
    async def test_missing_entries_load_as_none(self, store_options):
        store = await open_store(store_options)

        assert await store.load_symbol_table("/nowhere") is None
        assert await store.load_cached_import("nothing") is None
        assert await store.load_import_cache() == {}

    @pytest.mark.asyncio
    async def test_save_only_writes_when_dirty(self, store_options):
        store = await open_store(store_options)

        assert await store.save() is False
        await store.save_symbol_table(make_table("a"), "/ws")
        assert await store.save() is True
        assert await store.save() is False
        assert await store.save(force=True) is True

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, store_options, cache_dir):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("a"), "/ws")
        await store.save()

        assert not list(cache_dir.glob("*.tmp"))
        assert (cache_dir / "symbols.cache").exists()
        assert (cache_dir / META_FILE).exists()

    @pytest.mark.asyncio
    async def test_change_during_save_is_not_lost(self, store_options, monkeypatch):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("a"), "/ws/a")

        first_write_started = asyncio.Event()
        release = asyncio.Event()
        original_write = persistent.write_atomic
        calls = []

        async def held_write(path, data):
            calls.append(path)
            if len(calls) == 1:
                first_write_started.set()
                await release.wait()
            await original_write(path, data)

        monkeypatch.setattr(persistent, "write_atomic", held_write)

        save_task = asyncio.create_task(store.save())
        await first_write_started.wait()
        await store.save_symbol_table(make_table("b"), "/ws/b")
        release.set()

        assert await save_task is True
        assert await store.save() is True
        await store.destroy()

        reopened = await open_store(store_options)
        assert await reopened.load_symbol_table("/ws/b") is not None


class TestCompression:
    """gzip handling and the compression ratio."""

    @pytest.mark.asyncio
    async def test_compressed_files_use_gz_suffix(self, cache_dir):
        options = PersistentStoreOptions(cache_dir=cache_dir, auto_save=False, compression_enabled=True)
        store = await open_store(options)
        await store.save_symbol_table(make_table(*[f"task_{i}" for i in range(50)]), "/ws")
        await store.save()

        assert (cache_dir / "symbols.cache.gz").exists()
        assert not (cache_dir / "symbols.cache").exists()
        assert store.get_stats()["compression_ratio"] < 0.5

        reopened = await open_store(options)
        assert len((await reopened.load_symbol_table("/ws")).tasks) == 50

    @pytest.mark.asyncio
    async def test_ratio_is_one_without_compression(self, store_options):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("a"), "/ws")
        await store.save()

        assert store.get_stats()["compression_ratio"] == 1.0

    @pytest.mark.asyncio
    async def test_switching_compression_removes_stale_variant(self, cache_dir):
        compressed = PersistentStoreOptions(cache_dir=cache_dir, auto_save=False, compression_enabled=True)
        store = await open_store(compressed)
        await store.save_symbol_table(make_table("a"), "/ws")
        await store.save()

        plain = PersistentStoreOptions(cache_dir=cache_dir, auto_save=False, compression_enabled=False)
        store = await open_store(plain)
        await store.save(force=True)

        assert (cache_dir / "symbols.cache").exists()
        assert not (cache_dir / "symbols.cache.gz").exists()


class TestCorruptionHandling:
    """Checksums and incompatible files."""

    @pytest.mark.asyncio
    async def test_tampered_entry_is_never_returned(self, store_options, cache_dir):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("align"), "/ws")
        await store.save_cached_import("k", make_import("/ws/lib.wdl", set()))
        await store.save()

        path = cache_dir / "symbols.cache"
        document = read_store_document(path)
        document["entries"][0]["payload"]["tasks"]["align"]["name"] = "tampered"
        write_store_document(path, document)

        reopened = await open_store(store_options)

        assert await reopened.load_symbol_table("/ws") is None
        assert await reopened.load_cached_import("k") is not None
        assert reopened.get_stats()["error_count"] >= 1

    @pytest.mark.asyncio
    async def test_corrupted_entries_are_quarantined_on_disk(self, store_options, cache_dir):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("align"), "/ws")
        await store.save_symbol_table(make_table("sort"), "/ws/other")
        await store.save()

        path = cache_dir / "symbols.cache"
        document = read_store_document(path)
        document["entries"][0]["checksum"] = "0" * 64
        write_store_document(path, document)

        reopened = await open_store(store_options)

        assert await reopened.load_symbol_table("/ws") is None
        assert [entry.key for entry in reopened.quarantined_entries()] == ["symbols:/ws"]
        assert reopened.get_stats()["quarantined_entries"] == 1
        assert await reopened.save() is False

        await reopened.save(force=True)
        on_disk = {entry["key"]: entry["checksum"] for entry in read_store_document(path)["entries"]}
        assert on_disk["symbols:/ws"] == "0" * 64
        assert "symbols:/ws/other" in on_disk

        report = await reopened.verify_cache_integrity()
        assert report["is_valid"] is False

    @pytest.mark.asyncio
    async def test_new_value_replaces_quarantined_entry(self, store_options, cache_dir):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("align"), "/ws")
        await store.save()

        path = cache_dir / "symbols.cache"
        document = read_store_document(path)
        document["entries"][0]["checksum"] = "0" * 64
        write_store_document(path, document)

        reopened = await open_store(store_options)
        await reopened.save_symbol_table(make_table("sort"), "/ws")
        await reopened.save()

        assert reopened.quarantined_entries() == []
        entries = read_store_document(path)["entries"]
        assert len(entries) == 1
        assert "sort" in entries[0]["payload"]["tasks"]

    @pytest.mark.asyncio
    async def test_in_memory_tampering_is_detected_on_read(self, store_options):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("align"), "/ws")
        store.entries()[0].payload["tasks"]["align"]["name"] = "changed"

        report = await store.verify_cache_integrity()
        assert report["is_valid"] is False

        assert await store.load_symbol_table("/ws") is None

    @pytest.mark.asyncio
    async def test_incompatible_version_leaves_store_empty(self, store_options, cache_dir):
        write_store_document(cache_dir / "symbols.cache", {
            "metadata": {"format_version": "2.0.0", "written_at": 0},
            "entries": [],
        })

        store = await open_store(store_options)

        assert store.entry_count() == 0
        assert store.get_stats()["error_count"] == 1

    @pytest.mark.asyncio
    async def test_unreadable_file_does_not_raise_on_initialize(self, store_options, cache_dir):
        cache_dir.mkdir(parents=True)
        (cache_dir / "imports.cache").write_text("{not json")

        store = await open_store(store_options)

        assert store.entry_count() == 0
        report = await store.verify_cache_integrity()
        assert report["is_valid"] is False
        assert any("imports.cache" in error for error in report["errors"])


class TestInvalidation:
    """Predicate, age and URI based invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_by_uri_follows_dependencies(self, store_options):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("a"), "/ws/util.wdl")
        await store.save_cached_import("lib", make_import("/ws/lib.wdl", {"/ws/util.wdl"}))
        await store.save_cached_import("other", make_import("/ws/other.wdl", set()))
        await store.save_import_cache({
            "lib": make_import("/ws/lib.wdl", {"/ws/util.wdl"}),
            "other": make_import("/ws/other.wdl", set()),
        })

        removed = store.invalidate_by_uri("/ws/util.wdl")

        assert removed == 3
        assert await store.load_symbol_table("/ws/util.wdl") is None
        assert await store.load_cached_import("lib") is None
        assert await store.load_cached_import("other") is not None
        assert list(await store.load_import_cache()) == ["other"]

    @pytest.mark.asyncio
    async def test_invalidate_older_than(self, store_options):
        store = await open_store(store_options)
        await store.save_cached_import("old", make_import("/ws/old.wdl", set()))
        await store.save_cached_import("new", make_import("/ws/new.wdl", set()))
        for entry in store.entries():
            entry.written_at = 100 if entry.key == "import:old" else 10_000

        assert store.invalidate_older_than(5_000) == 1
        assert await store.load_cached_import("old") is None
        assert await store.load_cached_import("new") is not None

    @pytest.mark.asyncio
    async def test_invalidate_entries_with_predicate(self, store_options):
        store = await open_store(store_options)
        for name in ("a", "b", "c"):
            await store.save_cached_import(name, make_import(f"/ws/{name}.wdl", set()))

        removed = store.invalidate_entries(lambda key, entry: key.endswith("b"))

        assert removed == 1
        assert store.entry_count() == 2


class TestBackups:
    """Backup creation, retention and restore."""

    @pytest.mark.asyncio
    async def test_restore_returns_previous_state(self, store_options):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("before"), "/ws")
        backup_path = await store.create_backup()

        await store.save_symbol_table(make_table("after"), "/ws")
        await store.save()
        await store.restore_from_backup(backup_path)

        table = await store.load_symbol_table("/ws")
        assert list(table.tasks) == ["before"]

    @pytest.mark.asyncio
    async def test_only_newest_backups_are_kept(self, cache_dir):
        options = PersistentStoreOptions(cache_dir=cache_dir, auto_save=False, max_backups=3)
        store = await open_store(options)
        await store.save_symbol_table(make_table("a"), "/ws")

        created = [await store.create_backup() for _ in range(5)]
        labelled = await store.create_backup("manual")

        remaining = store.list_backups()
        assert labelled in remaining
        assert [path for path in remaining if path != labelled] == created[-3:]

    @pytest.mark.asyncio
    async def test_restore_missing_backup_raises(self, store_options, cache_dir):
        store = await open_store(store_options)

        with pytest.raises(BackupError):
            await store.restore_from_backup(cache_dir / "backups" / "does-not-exist")

    @pytest.mark.asyncio
    async def test_clear_cache_removes_files(self, store_options, cache_dir):
        store = await open_store(store_options)
        await store.save_symbol_table(make_table("a"), "/ws")
        await store.save()

        await store.clear_cache()

        assert store.entry_count() == 0
        assert not (cache_dir / "symbols.cache").exists()
        assert not (cache_dir / META_FILE).exists()
