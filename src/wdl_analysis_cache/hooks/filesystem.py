"""File change notifications for WDL documents.

``FileChangeNotifier`` debounces change events per path and delivers them to
registered callbacks. Events come from a watchdog observer started with
``start_watching`` or are pushed directly through ``notify``.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import BaseModel
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..events import CallbackRegistry
from ..storage.models import now_ms

ChangeType = Literal["created", "modified", "deleted"]

NOTIFIER_EVENTS = ["change", "created", "modified", "deleted", "error"]

DEFAULT_IGNORE_PATTERNS = {
    ".git", ".wdl-cache", "node_modules", ".venv", "venv", "__pycache__", "cromwell-executions",
}


class FileChangeEvent(BaseModel):
    uri: str
    type: ChangeType
    timestamp: int


class FileChangeNotifier:
    """Debounced fan-out of file change events to subscribers."""

    def __init__(
        self,
        workspace_root: Path,
        debounce_delay: float = 0.5,
        ignore_patterns: set[str] | None = None,
        logger: Any = None,
    ):
        """Initialize the notifier.

        Args:
            workspace_root: Directory to watch
            debounce_delay: Seconds to wait for further events on a path before delivering
            ignore_patterns: Directory names whose contents are never reported
            logger: structlog logger to use
        """
        self.workspace_root = Path(workspace_root)
        self.debounce_delay = debounce_delay
        self._ignore_patterns = ignore_patterns or set(DEFAULT_IGNORE_PATTERNS)
        self._logger = logger or structlog.get_logger(__name__)
        self.events = CallbackRegistry(NOTIFIER_EVENTS, logger=self._logger)

        self._pending: dict[str, tuple[asyncio.TimerHandle, ChangeType]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Any = None
        self._tasks: set[asyncio.Task] = set()

    def register_callback(self, event_type: str, callback: Callable) -> None:
        self.events.register_callback(event_type, callback)

    def unregister_callback(self, event_type: str, callback: Callable) -> None:
        self.events.unregister_callback(event_type, callback)

    def should_report(self, file_path: str) -> bool:
        """Only ``.wdl`` files outside ignored directories are reported."""
        path = Path(file_path)
        if path.suffix.lower() != ".wdl":
            return False
        return not any(part in self._ignore_patterns for part in path.parts)

    def notify(self, file_path: str, change_type: ChangeType) -> None:
        """Schedule a debounced event; must be called on the event loop thread.

        A later event for the same path replaces the pending one.
        """
        if not self.should_report(file_path):
            return

        loop = self._loop or asyncio.get_running_loop()
        uri = str(Path(file_path).resolve())

        pending = self._pending.pop(uri, None)
        if pending is not None:
            pending[0].cancel()
            # A file created and then modified within the window is still new
            if pending[1] == "created" and change_type == "modified":
                change_type = "created"

        handle = loop.call_later(self.debounce_delay, self._deliver, uri, change_type)
        self._pending[uri] = (handle, change_type)

    def _deliver(self, uri: str, change_type: ChangeType) -> None:
        self._pending.pop(uri, None)
        event = FileChangeEvent(uri=uri, type=change_type, timestamp=now_ms())
        task = asyncio.get_running_loop().create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def dispatch(self, event: FileChangeEvent) -> None:
        """Deliver an event immediately to ``change`` and type-specific subscribers."""
        self._logger.debug("File change", uri=event.uri, type=event.type)
        payload = event.model_dump()
        await self.events.trigger("change", **payload)
        await self.events.trigger(event.type, **payload)

    async def flush(self) -> None:
        """Deliver all pending events now."""
        pending = list(self._pending.items())
        self._pending.clear()
        for uri, (handle, change_type) in pending:
            handle.cancel()
            await self.dispatch(FileChangeEvent(uri=uri, type=change_type, timestamp=now_ms()))
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def start_watching(self) -> bool:
        """Start a watchdog observer on the workspace.

        Returns:
            True if watching started (or was already active)
        """
        if self._observer is not None:
            return True

        self._loop = asyncio.get_running_loop()
        try:
            observer = Observer()
            observer.schedule(WdlEventHandler(self, self._loop), str(self.workspace_root), recursive=True)
            observer.start()
        except OSError as e:
            self._logger.error("Failed to start file watching", error=str(e))
            return False

        self._observer = observer
        self._logger.info("Started file system watching", workspace=str(self.workspace_root))
        return True

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        self._logger.info("Stopped file system watching", workspace=str(self.workspace_root))

    def is_watching(self) -> bool:
        return self._observer is not None

    async def close(self) -> None:
        self.stop_watching()
        for handle, _ in self._pending.values():
            handle.cancel()
        self._pending.clear()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def get_status(self) -> dict[str, Any]:
        return {
            "watching": self.is_watching(),
            "workspace": str(self.workspace_root),
            "pending_events": len(self._pending),
            "registered_callbacks": self.events.counts(),
            "ignore_patterns": sorted(self._ignore_patterns),
        }


class WdlEventHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the notifier's loop."""

    def __init__(self, notifier: FileChangeNotifier, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.notifier = notifier
        self.loop = loop

    def _forward(self, file_path: str, change_type: ChangeType) -> None:
        self.loop.call_soon_threadsafe(self.notifier.notify, file_path, change_type)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, "created")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, "modified")

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path, "deleted")

    def on_moved(self, event: FileSystemEvent) -> None:
        """Treat a move as deletion of the old path and creation of the new one."""
        if not event.is_directory:
            self._forward(event.src_path, "deleted")
            self._forward(event.dest_path, "created")
