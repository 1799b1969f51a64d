"""Filesystem change ingestion and change impact analysis."""

from mnemo.watch.analysis import ChangeAnalyzer, estimate_scope, suggested_actions
from mnemo.watch.inotify import InotifyWatcher, classify_mask
from mnemo.watch.watcher import FileWatcher

__all__ = [
    "ChangeAnalyzer",
    "FileWatcher",
    "InotifyWatcher",
    "classify_mask",
    "estimate_scope",
    "suggested_actions",
]
