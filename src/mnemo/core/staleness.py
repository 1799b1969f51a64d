"""Staleness detection for stored intelligence.

Stored concepts/patterns are trusted only while no source file is
meaningfully newer than the newest stored item. A wrong "stale" verdict
triggers expensive re-learning, so scan errors resolve to "not stale".
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from mnemo.helpers.codebase import iter_source_files
from mnemo.models import StalenessVerdict

logger = logging.getLogger(__name__)

DEFAULT_STALE_BUFFER_SECONDS = 5 * 60


def _to_epoch(value: Any) -> Optional[float]:
    """Normalize a created_at value (datetime, ISO string, epoch) to UTC seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        # Epoch milliseconds are common in exported data
        return value / 1000 if value > 1e12 else float(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Ignoring unparseable timestamp {value!r}")
            return None
        return _to_epoch(parsed)
    return None


def _created_at(item: Any) -> Optional[float]:
    if isinstance(item, dict):
        raw = item.get("created_at", item.get("createdAt"))
    else:
        raw = getattr(item, "created_at", None)
    return _to_epoch(raw)


def _as_datetime(epoch: Optional[float]) -> Optional[datetime]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def latest_intelligence_time(*collections: Iterable[Any]) -> Optional[float]:
    latest = None
    for items in collections:
        for item in items or ():
            ts = _created_at(item)
            if ts is not None and (latest is None or ts > latest):
                latest = ts
    return latest


def most_recent_file_time(project_path: str) -> Optional[float]:
    """Newest mtime among source files under ``project_path``.

    Raises OSError when the tree cannot be scanned; returns None when there
    are no source files.
    """
    newest = None
    for path in iter_source_files(project_path, strict=True):
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            continue  # removed mid-scan
        if newest is None or mtime > newest:
            newest = mtime
    return newest


class StalenessDetector:
    """Decides whether stored intelligence still reflects the source tree."""

    def __init__(self, stale_buffer: float = DEFAULT_STALE_BUFFER_SECONDS):
        self.stale_buffer = stale_buffer

    async def verdict(
        self,
        project_path: str,
        stored_concepts: Iterable[Any],
        stored_patterns: Iterable[Any],
    ) -> StalenessVerdict:
        intelligence_time = latest_intelligence_time(stored_concepts, stored_patterns)
        if intelligence_time is None:
            return StalenessVerdict(
                is_stale=True,
                most_recent_file_time=None,
                most_recent_intelligence_time=None,
                reason="no stored timestamps",
            )

        loop = asyncio.get_running_loop()
        try:
            file_time = await loop.run_in_executor(None, most_recent_file_time, project_path)
        except OSError as e:
            logger.warning(f"Failed to detect staleness for {project_path}: {e}")
            return StalenessVerdict(
                is_stale=False,
                most_recent_file_time=None,
                most_recent_intelligence_time=_as_datetime(intelligence_time),
                reason=f"filesystem scan failed: {e}",
            )

        if file_time is None:
            return StalenessVerdict(
                is_stale=False,
                most_recent_file_time=None,
                most_recent_intelligence_time=_as_datetime(intelligence_time),
                reason="no source files found",
            )

        drift = file_time - intelligence_time
        is_stale = drift > self.stale_buffer
        return StalenessVerdict(
            is_stale=is_stale,
            most_recent_file_time=_as_datetime(file_time),
            most_recent_intelligence_time=_as_datetime(intelligence_time),
            reason=(
                f"source files are {drift:.0f}s newer than stored intelligence"
                if is_stale else "within staleness buffer"
            ),
        )

    async def is_stale(
        self,
        project_path: str,
        stored_concepts: Iterable[Any],
        stored_patterns: Iterable[Any],
    ) -> bool:
        verdict = await self.verdict(project_path, stored_concepts, stored_patterns)
        return verdict.is_stale
