"""Data models for cached analysis results and the on-disk store format."""

import hashlib
import json
import re
import time
from typing import Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_serializer

CACHE_FORMAT_VERSION = "1.1.0"

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")

SYMBOLS_KEY_PREFIX = "symbols:"
IMPORT_KEY_PREFIX = "import:"
IMPORTS_GLOBAL_KEY = "imports:global"


def now_ms() -> int:
    return int(time.time() * 1000)


def is_valid_version(version: str) -> bool:
    return bool(VERSION_PATTERN.match(version))


def parse_version(version: str) -> tuple[int, int, int]:
    """Split ``MAJOR.MINOR.PATCH`` into integers."""
    if not is_valid_version(version):
        raise ValueError(f"Invalid version format: {version}")
    major, minor, patch = (int(part) for part in version.split("."))
    return major, minor, patch


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as ``a`` sorts before, equal to or after ``b``."""
    left, right = parse_version(a), parse_version(b)
    return (left > right) - (left < right)


def is_compatible_version(version: str, current: str = CACHE_FORMAT_VERSION) -> bool:
    """A store file is readable when it shares the major and is not newer in minor."""
    try:
        major, minor, _ = parse_version(version)
    except ValueError:
        return False
    current_major, current_minor, _ = parse_version(current)
    return major == current_major and minor <= current_minor


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(payload: Any) -> str:
    """sha256 over the canonical JSON rendering of a payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


# Symbol payloads

class Position(BaseModel):
    line: int
    column: int
    offset: int = 0


class SourceRange(BaseModel):
    start: Position
    end: Position


class TypeInfo(BaseModel):
    name: str
    optional: bool = False


class ParameterInfo(BaseModel):
    name: str
    type: TypeInfo
    optional: bool = False
    default_value: str | None = None
    description: str | None = None


class TaskInfo(BaseModel):
    """A task as seen by importers: its interface and where it is defined."""

    name: str
    inputs: list[ParameterInfo] = Field(default_factory=list)
    outputs: list[ParameterInfo] = Field(default_factory=list)
    description: str | None = None
    source_file: str
    range: SourceRange | None = None
    qualified_name: str | None = None


class TaskSource(BaseModel):
    type: Literal["local", "imported"] = "local"
    source_file: str | None = None
    import_path: str | None = None
    alias: str | None = None


class TaskSymbol(TaskInfo):
    source: TaskSource | None = None
    original_name: str | None = None
    fully_qualified_name: str | None = None
    cache_timestamp: int | None = None


class WorkflowSymbol(BaseModel):
    name: str
    inputs: list[ParameterInfo] = Field(default_factory=list)
    outputs: list[ParameterInfo] = Field(default_factory=list)
    source_file: str
    range: SourceRange | None = None


class SymbolTable(BaseModel):
    """Symbols of one workspace, keyed by (qualified) name."""

    tasks: dict[str, TaskSymbol] = Field(default_factory=dict)
    workflows: dict[str, WorkflowSymbol] = Field(default_factory=dict)
    last_modified: dict[str, int] = Field(default_factory=dict)
    documents: dict[str, list[str]] = Field(default_factory=dict)


class CachedImport(BaseModel):
    """A resolved import together with the files its validity depends on."""

    resolved_uri: str
    original_path: str
    alias: str | None = None
    tasks: list[TaskInfo] = Field(default_factory=list)
    source_mtime: int
    dependencies: set[str] = Field(default_factory=set)
    errors: list[str] = Field(default_factory=list)
    cached_at: int = Field(default_factory=now_ms)

    @field_serializer("dependencies")
    def _sorted_dependencies(self, dependencies: set[str]) -> list[str]:
        return sorted(dependencies)


# Store file format

class EntryMetadata(BaseModel):
    size: int
    compressed: bool = False
    migrated: bool = False


class PersistedEntry(BaseModel):
    key: str
    payload: Any
    written_at: int
    checksum: str
    metadata: EntryMetadata | None = None

    @classmethod
    def create(cls, key: str, payload: Any, compressed: bool = False) -> "PersistedEntry":
        return cls(
            key=key,
            payload=payload,
            written_at=now_ms(),
            checksum=compute_checksum(payload),
            metadata=EntryMetadata(size=len(canonical_json(payload)), compressed=compressed),
        )

    def checksum_matches(self) -> bool:
        return compute_checksum(self.payload) == self.checksum


class StoreMetadata(BaseModel):
    format_version: str = CACHE_FORMAT_VERSION
    written_at: int = Field(default_factory=now_ms)
    checksum: str = ""
    compression_kind: Literal["gzip", "none"] = "none"
    entry_count: int = 0
    total_bytes: int = 0


class CacheFile(BaseModel):
    metadata: StoreMetadata
    entries: list[PersistedEntry] = Field(default_factory=list)


_import_map_adapter = TypeAdapter(dict[str, CachedImport])


def validate_payload(key: str, payload: Any) -> Any:
    """Validate a persisted payload against the model its key prefix implies.

    Raises:
        pydantic.ValidationError: When the payload does not match
    """
    if key.startswith(SYMBOLS_KEY_PREFIX):
        return SymbolTable.model_validate(payload)
    if key == IMPORTS_GLOBAL_KEY:
        return _import_map_adapter.validate_python(payload)
    if key.startswith(IMPORT_KEY_PREFIX):
        return CachedImport.model_validate(payload)
    return payload


def dump_import_map(imports: dict[str, CachedImport]) -> dict[str, Any]:
    return {key: entry.model_dump(mode="json") for key, entry in imports.items()}
