"""File change hooks that keep the caches consistent with the workspace."""

from .filesystem import FileChangeEvent, FileChangeNotifier, WdlEventHandler

__all__ = ["FileChangeEvent", "FileChangeNotifier", "WdlEventHandler"]
