"""Pytest configuration and shared fixtures for the WDL analysis cache tests."""

from collections.abc import Callable
from pathlib import Path

import pytest

from wdl_analysis_cache.config import CacheSettings, PersistentStoreOptions

from .helpers import FakeClock

LIB_WDL = """version 1.0

task align {
    meta {
        description: "Align reads"
    }
    input {
        File reads
        Int threads = 4
    }
    command <<<
        aligner ~{reads}
    >>>
    output {
        File bam = "out.bam"
    }
}
"""


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def store_options(cache_dir: Path) -> PersistentStoreOptions:
    return PersistentStoreOptions(cache_dir=cache_dir, auto_save=False, compression_enabled=False)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def settings() -> CacheSettings:
    return CacheSettings(overrides={"cache": {"auto_save": False}})


@pytest.fixture
def write_wdl(workspace: Path) -> Callable[[str, str], Path]:
    """Write a WDL document below the workspace and return its resolved path."""

    def _write(relative: str, content: str) -> Path:
        path = workspace / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path.resolve()

    return _write


@pytest.fixture
def lib_wdl() -> str:
    return LIB_WDL
