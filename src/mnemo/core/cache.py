"""TTL cache for analysis results.

Two key shapes are used by the engines:
    codebase:<path>                 whole-project analysis
    file:<path>:<content_hash>      single file, content addressed

A background sweep (one per TTL interval) drops expired entries so a long
running server does not accumulate results for files that no longer exist.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 5 * 60


def codebase_key(path: str) -> str:
    return f"codebase:{path}"


def file_key(path: str, content_hash: str) -> str:
    return f"file:{path}:{content_hash}"


@dataclass
class CacheEntry(Generic[T]):
    value: T
    stored_at: float


class AnalysisCache(Generic[T]):
    """Time-invalidated key/value map owned by a single engine."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "analysis",
    ):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self.hits = 0
        self.misses = 0

    def _expired(self, entry: CacheEntry[T], now: float) -> bool:
        return now - entry.stored_at >= self.ttl

    def get(self, key: str) -> Optional[T]:
        """Return the cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None or self._expired(entry, self._clock()):
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def set(self, key: str, value: T) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``; returns how many went."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def sweep(self) -> int:
        """Remove all expired entries; returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Cache {self.name}: swept {len(expired)} expired entries")
        return len(expired)

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry, self._clock())

    # =========================================================================
    # Background sweep
    # =========================================================================

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ttl)
            self.sweep()

    async def close(self) -> None:
        """Cancel the sweep task and drop all entries."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.clear()

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "name": self.name,
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else None,
            "ttl_seconds": self.ttl,
        }
