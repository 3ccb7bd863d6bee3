"""Unit tests for file change notifications."""

import asyncio
from unittest.mock import Mock

import pytest
from watchdog.events import DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from wdl_analysis_cache.hooks.filesystem import FileChangeEvent, FileChangeNotifier, WdlEventHandler


@pytest.fixture
def notifier(workspace) -> FileChangeNotifier:
    return FileChangeNotifier(workspace, debounce_delay=0.01)


class TestFileChangeNotifier:
    """Debouncing and filtering."""

    def test_should_report_only_wdl_outside_ignored_dirs(self, notifier, workspace):
        assert notifier.should_report(str(workspace / "main.wdl")) is True
        assert notifier.should_report(str(workspace / "MAIN.WDL")) is True
        assert notifier.should_report(str(workspace / "notes.txt")) is False
        assert notifier.should_report(str(workspace / ".wdl-cache" / "x.wdl")) is False
        assert notifier.should_report(str(workspace / ".git" / "y.wdl")) is False

    @pytest.mark.asyncio
    async def test_rapid_events_are_debounced(self, notifier, workspace):
        listener = Mock()
        notifier.register_callback("change", listener)
        path = workspace / "main.wdl"

        for _ in range(3):
            notifier.notify(str(path), "modified")
        await asyncio.sleep(0.1)

        listener.assert_called_once()
        assert listener.call_args.kwargs["uri"] == str(path.resolve())
        assert listener.call_args.kwargs["type"] == "modified"

    @pytest.mark.asyncio
    async def test_created_then_modified_stays_created(self, notifier, workspace):
        on_created, on_modified = Mock(), Mock()
        notifier.register_callback("created", on_created)
        notifier.register_callback("modified", on_modified)

        notifier.notify(str(workspace / "new.wdl"), "created")
        notifier.notify(str(workspace / "new.wdl"), "modified")
        await asyncio.sleep(0.1)

        on_created.assert_called_once()
        on_modified.assert_not_called()

    @pytest.mark.asyncio
    async def test_ignored_paths_are_not_scheduled(self, notifier, workspace):
        notifier.notify(str(workspace / "notes.txt"), "modified")
        notifier.notify(str(workspace / "node_modules" / "a.wdl"), "modified")

        assert notifier.get_status()["pending_events"] == 0

    @pytest.mark.asyncio
    async def test_flush_delivers_pending_events_immediately(self, workspace):
        notifier = FileChangeNotifier(workspace, debounce_delay=60)
        listener = Mock()
        notifier.register_callback("deleted", listener)

        notifier.notify(str(workspace / "gone.wdl"), "deleted")
        assert notifier.get_status()["pending_events"] == 1
        await notifier.flush()

        listener.assert_called_once()
        assert notifier.get_status()["pending_events"] == 0

    @pytest.mark.asyncio
    async def test_close_cancels_pending_events(self, workspace):
        notifier = FileChangeNotifier(workspace, debounce_delay=0.05)
        listener = Mock()
        notifier.register_callback("change", listener)

        notifier.notify(str(workspace / "main.wdl"), "modified")
        await notifier.close()
        await asyncio.sleep(0.1)

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self, notifier, workspace):
        failing = Mock(side_effect=RuntimeError("boom"))
        listener = Mock()
        notifier.register_callback("change", failing)
        notifier.register_callback("change", listener)

        await notifier.dispatch(FileChangeEvent(uri=str(workspace / "a.wdl"), type="modified", timestamp=1))

        failing.assert_called_once()
        listener.assert_called_once_with(uri=str(workspace / "a.wdl"), type="modified", timestamp=1)

    @pytest.mark.asyncio
    async def test_start_and_stop_watching(self, notifier):
        assert notifier.start_watching() is True
        assert notifier.is_watching() is True
        assert notifier.get_status()["watching"] is True

        await notifier.close()

        assert notifier.is_watching() is False


class TestWdlEventHandler:
    """Forwarding of watchdog events onto the event loop."""

    @pytest.mark.asyncio
    async def test_events_are_forwarded_to_notifier(self, workspace):
        notifier = FileChangeNotifier(workspace, debounce_delay=60)
        received = []
        notifier.register_callback("change", lambda uri, type, timestamp: received.append((uri, type)))
        handler = WdlEventHandler(notifier, asyncio.get_running_loop())

        handler.on_created(FileCreatedEvent(str(workspace / "a.wdl")))
        handler.on_modified(FileModifiedEvent(str(workspace / "b.wdl")))
        handler.on_modified(DirModifiedEvent(str(workspace / "dir.wdl")))
        handler.on_moved(FileMovedEvent(str(workspace / "old.wdl"), str(workspace / "new.wdl")))
        await asyncio.sleep(0)
        await notifier.flush()

        root = workspace.resolve()
        assert sorted(received) == sorted([
            (str(root / "a.wdl"), "created"),
            (str(root / "b.wdl"), "modified"),
            (str(root / "old.wdl"), "deleted"),
            (str(root / "new.wdl"), "created"),
        ])
