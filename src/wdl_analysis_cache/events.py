"""Per-instance callback registry used by caches and file hooks."""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import structlog


class CallbackRegistry:
    """Named event callbacks, scoped to one owner object.

    Callbacks may be sync functions or coroutine functions. A failing callback
    is logged and never propagates into the component that emitted the event.
    """

    def __init__(self, event_types: list[str], logger: Any = None):
        self.callbacks: dict[str, list[Callable]] = {name: [] for name in event_types}
        self._logger = logger or structlog.get_logger(__name__)
        self._tasks: set[asyncio.Task] = set()

    def register_callback(self, event_type: str, callback: Callable) -> None:
        """Register callback for an event type.

        Args:
            event_type: One of the event types this registry was created with
            callback: Async or sync function called with the event payload as kwargs
        """
        if event_type not in self.callbacks:
            raise ValueError(f"Unknown event type: {event_type}")
        self.callbacks[event_type].append(callback)

    def unregister_callback(self, event_type: str, callback: Callable) -> None:
        if callback in self.callbacks.get(event_type, []):
            self.callbacks[event_type].remove(callback)

    def emit(self, event_type: str, **payload: Any) -> None:
        """Deliver an event from synchronous code.

        Coroutine callbacks are scheduled on the running loop; without a running
        loop they are skipped with a warning.
        """
        for callback in list(self.callbacks.get(event_type, [])):
            try:
                result = callback(**payload)
            except Exception as e:
                self._log_failure(event_type, callback, e)
                continue

            if inspect.isawaitable(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    result.close()
                    self._logger.warning(
                        "Async callback skipped, no running event loop",
                        event_type=event_type,
                        callback=getattr(callback, "__name__", repr(callback)),
                    )
                    continue
                task = loop.create_task(self._await_callback(event_type, callback, result))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def trigger(self, event_type: str, **payload: Any) -> None:
        """Deliver an event and await every callback in registration order."""
        for callback in list(self.callbacks.get(event_type, [])):
            try:
                result = callback(**payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._log_failure(event_type, callback, e)

    async def _await_callback(self, event_type: str, callback: Callable, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as e:
            self._log_failure(event_type, callback, e)

    def _log_failure(self, event_type: str, callback: Callable, error: Exception) -> None:
        self._logger.error(
            "Event callback failed",
            event_type=event_type,
            callback=getattr(callback, "__name__", repr(callback)),
            error=str(error),
        )

    def counts(self) -> dict[str, int]:
        return {event_type: len(callbacks) for event_type, callbacks in self.callbacks.items()}
