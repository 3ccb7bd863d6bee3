"""WDL import resolution and document outlines."""

from .imports import MAX_RECURSION_DEPTH, ImportResolver, ImportResult
from .parser import DocumentOutline, DocumentParser, WdlOutlineParser

__all__ = [
    "DocumentOutline",
    "DocumentParser",
    "ImportResolver",
    "ImportResult",
    "MAX_RECURSION_DEPTH",
    "WdlOutlineParser",
]
