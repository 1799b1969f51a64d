"""Debounced, deduplicating file change watcher.

Turns the raw inotify event stream into typed FileChangeRecords:

    idle -> pending (debounce task running) -> fired (record emitted) -> idle

Every raw event for a path restarts that path's debounce task, so a burst
of writes (editor autosave, formatter on save) becomes one change. When the
task fires the path is re-read and fingerprinted; a write that leaves the
content unchanged is suppressed.

Records are delivered on bounded asyncio queues returned by subscribe().
Each emitted change is published under three topics, ``file:change``,
``file:<kind>`` and ``file:<language>:<kind>``; a queue receives one
WatcherEvent per topic it subscribed to.
"""

import asyncio
import fnmatch
import logging
import os
import stat as stat_module
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from mnemo.helpers.codebase import (
    compute_file_hash,
    compute_stat_fingerprint,
    detect_language,
    is_text_file,
    should_skip_dir,
)
from mnemo.models import ChangeKind, FileChangeRecord, WatcherEvent
from mnemo.watch.inotify import InotifyWatcher

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.5
DEFAULT_TOPICS = ("file:change", "watcher:*")


@dataclass
class _PathState:
    """Per-path bookkeeping; dropped when the path is deleted or unwatched."""

    kind: Optional[ChangeKind] = None
    timer: Optional[asyncio.Task] = None
    fingerprint: Optional[str] = None


@dataclass
class _Subscription:
    patterns: tuple[str, ...]
    queue: asyncio.Queue

    def matches(self, topic: str) -> bool:
        return any(fnmatch.fnmatchcase(topic, p) for p in self.patterns)


class FileWatcher:
    """Watches a project tree and publishes debounced change records.

    Usage:
        watcher = FileWatcher("/path/to/project", debounce=0.5)
        changes = watcher.subscribe("file:change")
        await watcher.start()
        event = await changes.get()
    """

    def __init__(
        self,
        root: str,
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        include_content: bool = True,
        max_file_size_kb: int = 1024,
        queue_size: int = 256,
        ignore_patterns: tuple[str, ...] = (),
        source_factory: Callable[..., InotifyWatcher] = InotifyWatcher,
    ):
        self.root = Path(root).resolve()
        self.debounce = debounce
        self.include_content = include_content
        self.max_file_size = max_file_size_kb * 1024
        self.queue_size = queue_size
        self.ignore_patterns = ignore_patterns
        self._source_factory = source_factory

        self._source: Optional[InotifyWatcher] = None
        self._states: dict[str, _PathState] = {}
        self._subscriptions: list[_Subscription] = []
        self._inflight: set[asyncio.Task] = set()
        self._running = False
        self.suppressed_count = 0

    @classmethod
    def from_settings(cls, root: str, settings, **kwargs) -> "FileWatcher":
        """Build from a WatcherSettings section."""
        return cls(
            root,
            debounce=settings.debounce,
            include_content=settings.include_content,
            max_file_size_kb=settings.max_file_size_kb,
            queue_size=settings.queue_size,
            **kwargs,
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, *topics: str, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Return a bounded queue receiving events whose topic matches ``topics``.

        Topics accept shell-style wildcards ("file:python:*"). With no topics
        the queue gets one ``file:change`` per change plus lifecycle events.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.queue_size)
        self._subscriptions.append(_Subscription(topics or DEFAULT_TOPICS, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.queue is not queue]

    async def _publish(self, topic: str, event: WatcherEvent) -> None:
        for sub in list(self._subscriptions):
            if sub.matches(topic):
                # Blocks while the consumer is behind; per-path order is kept
                # because waiting putters are served first-in first-out.
                await sub.queue.put(event)

    def _publish_nowait(self, topic: str, **fields) -> None:
        event = WatcherEvent(topic=topic, **fields)
        for sub in list(self._subscriptions):
            if sub.matches(topic):
                try:
                    sub.queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning(f"Subscriber queue full, dropped {topic} event")

    async def _emit_change(self, record: FileChangeRecord) -> None:
        kind = record.change_kind.value
        topics = ["file:change", f"file:{kind}"]
        if record.language != "unknown":
            topics.append(f"file:{record.language}:{kind}")
        # a modify is kind "change", so file:<kind> repeats file:change
        for topic in dict.fromkeys(topics):
            await self._publish(topic, WatcherEvent(topic=topic, change=record))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the raw event source and prime fingerprints for existing files."""
        if self._running:
            logger.warning("FileWatcher already running")
            return

        self._source = self._source_factory(str(self.root), ignore_patterns=self.ignore_patterns)
        await self._source.start(self.notify, self._on_source_error)
        self._running = True
        self._publish_nowait("watcher:started", data={"root": str(self.root)})

        loop = asyncio.get_running_loop()
        primed = await loop.run_in_executor(None, self._scan_fingerprints)
        for path, fingerprint in primed.items():
            state = self._states.setdefault(path, _PathState())
            if state.fingerprint is None:
                state.fingerprint = fingerprint
        logger.info(f"FileWatcher ready: {len(primed)} files fingerprinted under {self.root}")
        self._publish_nowait("watcher:ready", data={"root": str(self.root), "files": len(primed)})

    async def stop(self) -> None:
        """Stop the source, cancel every pending debounce and forget all paths."""
        if self._source is not None:
            await self._source.stop()
            self._source = None

        tasks = [s.timer for s in self._states.values() if s.timer] + list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._states.clear()
        self._inflight.clear()
        was_running = self._running
        self._running = False
        if was_running:
            self._publish_nowait("watcher:stopped", data={"root": str(self.root)})

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        """Number of paths waiting for their debounce window to close."""
        return sum(1 for s in self._states.values() if s.timer is not None)

    @property
    def tracked_paths(self) -> int:
        return len(self._states)

    def last_fingerprint(self, path: str) -> Optional[str]:
        state = self._states.get(self._normalize(path))
        return state.fingerprint if state else None

    def remove_path(self, path: str) -> int:
        """Stop tracking ``path`` and everything below it; returns paths released."""
        return self._release(self._normalize(path))

    # =========================================================================
    # Raw event handling
    # =========================================================================

    def _normalize(self, path: str) -> str:
        return os.path.abspath(path)

    def _on_source_error(self, error: Exception) -> None:
        self._publish_nowait("watcher:error", error=str(error))

    def notify(self, kind: ChangeKind, path: str) -> None:
        """Record a raw filesystem event and (re)start the path's debounce."""
        key = self._normalize(path)
        state = self._states.setdefault(key, _PathState())
        if state.timer is not None:
            state.timer.cancel()
        state.kind = kind
        state.timer = asyncio.create_task(self._debounced(key))

    async def _debounced(self, path: str) -> None:
        try:
            await asyncio.sleep(self.debounce)
        except asyncio.CancelledError:
            return  # superseded by a newer raw event

        state = self._states.get(path)
        if state is None:
            return
        task = state.timer
        state.timer = None
        kind = state.kind
        if task is not None:
            self._inflight.add(task)
        try:
            await self._fire(path, kind)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def _fire(self, path: str, kind: ChangeKind) -> None:
        loop = asyncio.get_running_loop()
        try:
            record = await loop.run_in_executor(None, self._build_record, kind, path)
        except Exception as e:
            logger.warning(f"Failed to process file change {kind.value} {path}: {e}")
            self._publish_nowait(
                "watcher:error",
                error=f"Failed to process file change: {path}: {e}",
                data={"path": path, "type": kind.value},
            )
            return

        if record.change_kind.is_delete:
            self._release(path)
        elif record.content_hash is not None:
            state = self._states.setdefault(path, _PathState())
            if state.fingerprint == record.content_hash:
                self.suppressed_count += 1
                logger.debug(f"Suppressed no-op write: {path}")
                return
            state.fingerprint = record.content_hash

        await self._emit_change(record)

    def _release(self, path: str) -> int:
        prefix = path.rstrip(os.sep) + os.sep
        doomed = [p for p in self._states if p == path or p.startswith(prefix)]
        for p in doomed:
            state = self._states.pop(p)
            if state.timer is not None and state.timer is not asyncio.current_task():
                state.timer.cancel()
        return len(doomed)

    # =========================================================================
    # Classification (runs in the default executor)
    # =========================================================================

    def _build_record(self, kind: ChangeKind, path: str) -> FileChangeRecord:
        if kind.is_delete:
            return FileChangeRecord(
                change_kind=kind,
                path=path,
                language="unknown" if kind.is_directory else detect_language(path),
            )

        st = os.stat(path)
        if stat_module.S_ISDIR(st.st_mode):
            return FileChangeRecord(
                change_kind=ChangeKind.ADD_DIR,
                path=path,
                language="unknown",
                mtime=st.st_mtime,
            )
        if kind is ChangeKind.ADD_DIR:
            kind = ChangeKind.ADD

        content = None
        if self.include_content and is_text_file(path) and st.st_size <= self.max_file_size:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                content = f.read()
            fingerprint = compute_file_hash(content)
        else:
            fingerprint = compute_stat_fingerprint(st.st_size, st.st_mtime)

        return FileChangeRecord(
            change_kind=kind,
            path=path,
            language=detect_language(path),
            content_hash=fingerprint,
            size_bytes=st.st_size,
            mtime=st.st_mtime,
            content=content,
        )

    def _scan_fingerprints(self) -> dict[str, str]:
        fingerprints = {}
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [
                d for d in dirnames
                if not should_skip_dir(d) and d not in self.ignore_patterns
            ]
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                try:
                    record = self._build_record(ChangeKind.ADD, path)
                except OSError:
                    continue
                fingerprints[path] = record.content_hash
        return fingerprints
