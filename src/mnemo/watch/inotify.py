"""File watcher using Linux inotify.

Raw event source for the debouncing FileWatcher. Uses ctypes to access
the Linux inotify syscalls and registers the descriptor with the asyncio
event loop, so no thread blocks on read().
"""

import asyncio
import ctypes
import ctypes.util
import logging
import os
import struct
from pathlib import Path
from typing import Callable, Optional

from mnemo.helpers.codebase import should_skip_dir
from mnemo.models import ChangeKind

logger = logging.getLogger(__name__)

# inotify event constants (from linux/inotify.h)
IN_MODIFY = 0x00000002
IN_CLOSE_WRITE = 0x00000008  # File closed after writing
IN_MOVED_FROM = 0x00000040
IN_MOVED_TO = 0x00000080
IN_CREATE = 0x00000100
IN_DELETE = 0x00000200
IN_Q_OVERFLOW = 0x00004000
IN_IGNORED = 0x00008000  # Watch removed (directory deleted or rm_watch)
IN_ISDIR = 0x40000000

# inotify_init1 flags
IN_NONBLOCK = 0o4000
IN_CLOEXEC = 0o2000000

WATCH_MASK = IN_CLOSE_WRITE | IN_CREATE | IN_DELETE | IN_MOVED_FROM | IN_MOVED_TO

# Event struct format: int wd, uint32_t mask, uint32_t cookie, uint32_t len
EVENT_HEADER_SIZE = struct.calcsize("iIII")
READ_SIZE = 64 * 1024

RawEventCallback = Callable[[ChangeKind, str], None]

_libc = None


def _get_libc():
    """Load libc lazily so importing this module works off Linux."""
    global _libc
    if _libc is None:
        _libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
    return _libc


def _check(result: int) -> int:
    if result < 0:
        errno = ctypes.get_errno()
        raise OSError(errno, os.strerror(errno))
    return result


def _inotify_init() -> int:
    """Initialize a non-blocking inotify instance."""
    return _check(_get_libc().inotify_init1(IN_NONBLOCK | IN_CLOEXEC))


def _inotify_add_watch(fd: int, path: str, mask: int) -> int:
    """Add a watch to an inotify instance."""
    return _check(_get_libc().inotify_add_watch(fd, os.fsencode(path), mask))


def _inotify_rm_watch(fd: int, wd: int) -> None:
    """Remove a watch from an inotify instance."""
    _check(_get_libc().inotify_rm_watch(fd, wd))


def classify_mask(mask: int) -> Optional[ChangeKind]:
    """Map an inotify event mask to a change kind (None for uninteresting events)."""
    is_dir = bool(mask & IN_ISDIR)
    if mask & (IN_CREATE | IN_MOVED_TO):
        return ChangeKind.ADD_DIR if is_dir else ChangeKind.ADD
    if mask & (IN_DELETE | IN_MOVED_FROM):
        return ChangeKind.DELETE_DIR if is_dir else ChangeKind.DELETE
    if mask & (IN_CLOSE_WRITE | IN_MODIFY) and not is_dir:
        return ChangeKind.MODIFY
    return None


class InotifyWatcher:
    """Async recursive directory watcher using Linux inotify.

    Reports every raw event as ``on_event(kind, path)``. No debouncing or
    deduplication happens here.

    Example:
        watcher = InotifyWatcher("/path/to/project")
        await watcher.start(lambda kind, path: print(kind, path))
    """

    def __init__(
        self,
        project_path: str,
        ignore_patterns: tuple[str, ...] = (),
    ):
        """Initialize watcher.

        Args:
            project_path: Root directory to watch
            ignore_patterns: Extra directory names to ignore on top of SKIP_DIRS
        """
        self.project_path = Path(project_path).resolve()
        self.ignore_patterns = ignore_patterns

        self._fd: Optional[int] = None
        self._watches: dict[int, Path] = {}  # wd -> directory path
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_event: Optional[RawEventCallback] = None
        self._on_error: Optional[Callable[[Exception], None]] = None

    def _should_watch_dir(self, path: Path) -> bool:
        """Check if directory should be watched."""
        try:
            parts = path.relative_to(self.project_path).parts
        except ValueError:
            parts = path.parts
        for part in parts:
            if should_skip_dir(part) or part in self.ignore_patterns:
                return False
        return True

    async def start(
        self,
        on_event: RawEventCallback,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        """Start watching for file changes.

        Args:
            on_event: Callback(kind, path) for every raw event
            on_error: Callback(exc) for read or watch failures
        """
        if self._running:
            logger.warning("Watcher already running")
            return
        if not self.project_path.is_dir():
            raise FileNotFoundError(f"Not a directory: {self.project_path}")

        self._fd = _inotify_init()
        self._on_event = on_event
        self._on_error = on_error
        self._loop = asyncio.get_running_loop()

        # Add watches for all directories
        self._add_watches(self.project_path)

        self._loop.add_reader(self._fd, self._read_events)
        self._running = True
        logger.info(f"Watcher started: {len(self._watches)} directories under {self.project_path}")

    def _add_watches(self, root: Path) -> None:
        """Add inotify watches for ``root`` and every non-ignored subdirectory."""
        for dirpath, dirs, _ in os.walk(root):
            dir_path = Path(dirpath)

            # Filter out ignored directories
            dirs[:] = [d for d in dirs if self._should_watch_dir(dir_path / d)]

            if self._should_watch_dir(dir_path):
                try:
                    wd = _inotify_add_watch(self._fd, str(dir_path), WATCH_MASK)
                    self._watches[wd] = dir_path
                except OSError as e:
                    logger.warning(f"Failed to watch {dir_path}: {e}")
                    if self._on_error:
                        self._on_error(e)

    def _read_events(self) -> None:
        """Reader callback: drain the descriptor and dispatch parsed events."""
        try:
            data = os.read(self._fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            logger.error(f"Watcher error: {e}")
            if self._on_error:
                self._on_error(e)
            return

        for wd, mask, name in self._parse(data):
            if mask & IN_Q_OVERFLOW:
                logger.warning("inotify queue overflow, some events were dropped")
                if self._on_error:
                    self._on_error(OSError("inotify event queue overflowed"))
                continue
            if mask & IN_IGNORED:
                self._watches.pop(wd, None)
                continue

            directory = self._watches.get(wd)
            if directory is None or not name:
                continue

            path = directory / name
            kind = classify_mask(mask)
            if kind is None:
                continue
            if kind.is_directory and not self._should_watch_dir(path):
                continue

            if kind is ChangeKind.ADD_DIR:
                # Files may land in the new directory before its watch exists
                self._add_watches(path)

            logger.debug(f"Raw event: {kind.value} {path}")
            try:
                self._on_event(kind, str(path))
            except Exception as e:
                logger.error(f"on_event callback failed for {path}: {e}")

    @staticmethod
    def _parse(data: bytes):
        offset = 0
        while offset + EVENT_HEADER_SIZE <= len(data):
            wd, mask, _cookie, length = struct.unpack_from("iIII", data, offset)
            offset += EVENT_HEADER_SIZE
            name = ""
            if length:
                name = os.fsdecode(data[offset:offset + length].rstrip(b"\x00"))
                offset += length
            yield wd, mask, name

    async def stop(self) -> None:
        """Stop watching for file changes."""
        self._running = False

        if self._fd is not None and self._loop is not None:
            self._loop.remove_reader(self._fd)

        # Remove all watches
        for wd in list(self._watches.keys()):
            try:
                _inotify_rm_watch(self._fd, wd)
            except OSError:
                pass  # already gone with its directory
        self._watches.clear()

        # Close inotify fd
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

        logger.info("Watcher stopped")

    @property
    def is_running(self) -> bool:
        """Check if watcher is currently running."""
        return self._running

    @property
    def watched_directories(self) -> int:
        """Number of directories being watched."""
        return len(self._watches)

    async def __aenter__(self) -> "InotifyWatcher":
        """Async context manager entry (does not auto-start)."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.stop()
