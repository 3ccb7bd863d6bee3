"""Unit tests for the workspace symbol provider."""

from unittest.mock import Mock

import pytest

from wdl_analysis_cache.resolver.imports import ImportResolver
from wdl_analysis_cache.resolver.parser import WdlOutlineParser
from wdl_analysis_cache.symbols import SymbolProvider

from ..helpers import touch_later

MAIN_WDL = """version 1.0

import "lib.wdl" as lib

task prepare {
    input {
        String sample
    }
    command <<< echo ~{sample} >>>
}

workflow main {
    input {
        File reads
    }
    call lib.align { input: reads = reads }
}
"""


class TestSymbolProvider:
    """Document updates and lookups."""

    @pytest.mark.asyncio
    async def test_local_tasks_and_workflows(self, workspace, settings, write_wdl):
        main = write_wdl("main.wdl", MAIN_WDL)
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()

        symbols = await provider.update_document(MAIN_WDL, str(main))

        assert [s.name for s in symbols] == ["prepare"]
        prepare = provider.get_task_symbol("prepare")
        assert prepare.source.type == "local"
        assert prepare.source.source_file == str(main)
        assert prepare.original_name == "prepare"
        assert prepare.fully_qualified_name == "prepare"
        assert prepare.cache_timestamp is not None
        assert provider.get_statistics() == {"task_count": 1, "workflow_count": 1, "document_count": 1}
        await provider.destroy()

    @pytest.mark.asyncio
    async def test_imported_tasks_are_added(self, workspace, settings, write_wdl, lib_wdl):
        write_wdl("lib.wdl", lib_wdl)
        main = write_wdl("main.wdl", MAIN_WDL)
        resolver = ImportResolver(workspace, settings=settings)
        await resolver.initialize()
        provider = SymbolProvider(workspace, settings=settings, import_resolver=resolver)
        await provider.initialize()

        await provider.update_document(MAIN_WDL, main.as_uri())

        align = provider.get_task_symbol("lib.align")
        assert align is not None
        assert align.source.type == "imported"
        assert align.source.import_path == "lib.wdl"
        assert align.source.alias == "lib"
        assert align.original_name == "align"
        assert align.fully_qualified_name == "lib.align"
        assert sorted(t.name for t in provider.get_all_tasks()) == ["lib.align", "prepare"]
        await provider.destroy()
        await resolver.destroy()

    @pytest.mark.asyncio
    async def test_update_replaces_previous_symbols(self, workspace, settings):
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()
        uri = str(workspace / "doc.wdl")

        await provider.update_document("version 1.0\ntask first {\n}\n", uri)
        await provider.update_document("version 1.0\ntask second {\n}\n", uri)

        assert provider.get_task_symbol("first") is None
        assert provider.get_task_symbol("second") is not None
        await provider.destroy()

    @pytest.mark.asyncio
    async def test_remove_document(self, workspace, settings):
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()
        uri = str(workspace / "doc.wdl")
        await provider.update_document("version 1.0\ntask first {\n}\n", uri)

        await provider.remove_document(uri)

        assert provider.get_all_tasks() == []
        assert provider.get_statistics()["document_count"] == 0
        await provider.destroy()

    @pytest.mark.asyncio
    async def test_identical_content_is_parsed_once(self, workspace, settings):
        parser = Mock(wraps=WdlOutlineParser())
        provider = SymbolProvider(workspace, settings=settings, parser=parser)
        await provider.initialize()

        await provider.update_document(MAIN_WDL, str(workspace / "a.wdl"))
        await provider.update_document(MAIN_WDL, str(workspace / "b.wdl"))

        assert parser.parse.call_count == 1
        assert provider.get_cache_stats()["memory"]["hits"] == 1
        await provider.destroy()

    @pytest.mark.asyncio
    async def test_clear_all(self, workspace, settings, write_wdl):
        main = write_wdl("main.wdl", MAIN_WDL)
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()
        await provider.update_document(MAIN_WDL, str(main))

        await provider.clear_all()

        assert provider.get_statistics()["task_count"] == 0
        assert provider.get_persistent_cache().entry_count() == 0
        await provider.destroy()


class TestSymbolPersistence:
    """Symbol tables across restarts."""

    @pytest.mark.asyncio
    async def test_symbols_survive_restart(self, workspace, settings, write_wdl):
        main = write_wdl("main.wdl", MAIN_WDL)
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()
        await provider.update_document(MAIN_WDL, str(main))
        await provider.destroy()

        restarted = SymbolProvider(workspace, settings=settings)
        await restarted.initialize()

        assert restarted.get_task_symbol("prepare") is not None
        assert restarted.get_statistics()["workflow_count"] == 1
        await restarted.destroy()

    @pytest.mark.asyncio
    async def test_documents_changed_on_disk_are_dropped(self, workspace, settings, write_wdl):
        main = write_wdl("main.wdl", MAIN_WDL)
        other = write_wdl("other.wdl", "version 1.0\ntask other {\n}\n")
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()
        await provider.update_document(MAIN_WDL, str(main))
        await provider.update_document(other.read_text(), str(other))
        await provider.destroy()

        touch_later(main)
        restarted = SymbolProvider(workspace, settings=settings)
        await restarted.initialize()

        assert restarted.get_task_symbol("prepare") is None
        assert restarted.get_task_symbol("other") is not None
        await restarted.destroy()

    @pytest.mark.asyncio
    async def test_documents_deleted_on_disk_are_dropped(self, workspace, settings, write_wdl):
        main = write_wdl("main.wdl", MAIN_WDL)
        provider = SymbolProvider(workspace, settings=settings)
        await provider.initialize()
        await provider.update_document(MAIN_WDL, str(main))
        await provider.destroy()

        main.unlink()
        restarted = SymbolProvider(workspace, settings=settings)
        await restarted.initialize()

        assert restarted.get_all_tasks() == []
        await restarted.destroy()
