"""Tests for the inotify raw event source."""

import asyncio
import sys
from pathlib import Path

import pytest

from mnemo.models import ChangeKind
from mnemo.watch.inotify import (
    IN_CLOSE_WRITE,
    IN_CREATE,
    IN_DELETE,
    IN_ISDIR,
    IN_MOVED_FROM,
    IN_MOVED_TO,
    IN_Q_OVERFLOW,
    InotifyWatcher,
    classify_mask,
)
from mnemo.watch.watcher import FileWatcher

linux_only = pytest.mark.skipif(sys.platform != "linux", reason="inotify is Linux-only")


class TestClassifyMask:
    """Mask to change kind mapping."""

    @pytest.mark.parametrize("mask, kind", [
        (IN_CREATE, ChangeKind.ADD),
        (IN_MOVED_TO, ChangeKind.ADD),
        (IN_CREATE | IN_ISDIR, ChangeKind.ADD_DIR),
        (IN_DELETE, ChangeKind.DELETE),
        (IN_MOVED_FROM, ChangeKind.DELETE),
        (IN_DELETE | IN_ISDIR, ChangeKind.DELETE_DIR),
        (IN_CLOSE_WRITE, ChangeKind.MODIFY),
    ])
    def test_kinds(self, mask, kind):
        assert classify_mask(mask) is kind

    def test_uninteresting(self):
        assert classify_mask(IN_Q_OVERFLOW) is None
        assert classify_mask(IN_CLOSE_WRITE | IN_ISDIR) is None


class TestInotifyWatcher:
    """Directory filtering and lifecycle."""

    def test_should_watch_dir(self):
        watcher = InotifyWatcher("/tmp/project", ignore_patterns=("generated",))
        assert watcher._should_watch_dir(Path("/tmp/project/src"))
        assert not watcher._should_watch_dir(Path("/tmp/project/node_modules"))
        assert not watcher._should_watch_dir(Path("/tmp/project/src/__pycache__"))
        assert not watcher._should_watch_dir(Path("/tmp/project/generated"))

    def test_initially_idle(self):
        watcher = InotifyWatcher("/tmp/project")
        assert not watcher.is_running
        assert watcher.watched_directories == 0

    @pytest.mark.asyncio
    async def test_start_missing_directory(self, tmp_path):
        watcher = InotifyWatcher(str(tmp_path / "missing"))
        with pytest.raises(FileNotFoundError):
            await watcher.start(lambda kind, path: None)

    @linux_only
    @pytest.mark.asyncio
    async def test_start_stop(self, tmp_path):
        (tmp_path / "src" / "components").mkdir(parents=True)
        (tmp_path / "node_modules").mkdir()

        watcher = InotifyWatcher(str(tmp_path))
        await watcher.start(lambda kind, path: None)
        assert watcher.is_running
        # root + src + src/components; node_modules skipped
        assert watcher.watched_directories == 3

        await watcher.stop()
        assert not watcher.is_running
        assert watcher.watched_directories == 0

    @linux_only
    @pytest.mark.asyncio
    async def test_reports_raw_events(self, tmp_path):
        events = []
        watcher = InotifyWatcher(str(tmp_path))
        await watcher.start(lambda kind, path: events.append((kind, path)))

        target = tmp_path.resolve() / "app.py"
        target.write_text("x = 1\n")
        for _ in range(50):
            if (ChangeKind.MODIFY, str(target)) in events:
                break
            await asyncio.sleep(0.02)
        await watcher.stop()

        assert (ChangeKind.ADD, str(target)) in events
        assert (ChangeKind.MODIFY, str(target)) in events


@linux_only
@pytest.mark.asyncio
async def test_file_watcher_end_to_end(tmp_path):
    """A real write through inotify arrives as one debounced change."""
    watcher = FileWatcher(str(tmp_path), debounce=0.1)
    changes = watcher.subscribe("file:change")
    await watcher.start()

    (tmp_path / "app.py").write_text("def main():\n    pass\n")
    event = await asyncio.wait_for(changes.get(), timeout=3)
    assert event.change.path == str(tmp_path.resolve() / "app.py")
    assert event.change.language == "python"

    await asyncio.sleep(0.3)
    assert changes.empty()
    await watcher.stop()
