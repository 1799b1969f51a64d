"""
Shared orchestration for the analysis engines.

Every engine follows the same flow for an analyzer-backed operation:

    cache hit  -> return cached AnalysisResult
    cache miss -> breaker.execute(primary, fallback)
                    primary:  lazily initialized analyzer, guarded_call
                    fallback: local heuristic, lower confidence
               -> AnalysisResult(value, quality, errors) cached and returned

Whole-codebase learning additionally runs under a hard deadline, reports
progress from a side task and persists learned items one by one.
"""

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from mnemo.analyzer.contract import guarded_call, unwrap
from mnemo.core.cache import AnalysisCache
from mnemo.core.circuit_breaker import CircuitBreaker
from mnemo.errors import (
    AnalyzerUnavailableError,
    LearningTimeoutError,
    PersistenceError,
    ProjectNotFoundError,
)
from mnemo.helpers.codebase import count_source_files, normalize_path
from mnemo.models import AnalysisResult, FileChangeRecord, LearningResult, QualityFlag
from mnemo.settings import FallbackSettings

logger = logging.getLogger(__name__)

AnalyzerFactory = Callable[[], Awaitable[Any]]
# progress(current, total, message)
ProgressCallback = Callable[[int, int, str], None]

DEFAULT_LEARN_TIMEOUT_SECONDS = 5 * 60
DEFAULT_PROGRESS_INTERVAL_SECONDS = 2.0


class AnalysisEngine:
    """Base class owning one analyzer handle, one breaker and one cache."""

    name = "analysis"
    # cache key prefixes whose suffix is a project root
    project_key_prefixes: tuple[str, ...] = ("codebase:",)

    def __init__(
        self,
        database,
        analyzer_factory: AnalyzerFactory,
        *,
        breaker: CircuitBreaker,
        cache: AnalysisCache,
        learn_timeout: float = DEFAULT_LEARN_TIMEOUT_SECONDS,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        fallback: FallbackSettings = FallbackSettings(),
    ):
        self.database = database
        self.breaker = breaker
        self.cache = cache
        self.learn_timeout = learn_timeout
        self.progress_interval = progress_interval
        self.fallback = fallback

        self._analyzer_factory = analyzer_factory
        self._analyzer: Any = None
        self._init_task: Optional[asyncio.Future] = None

    @classmethod
    def from_settings(cls, settings, database, analyzer_factory: AnalyzerFactory, **kwargs):
        """Build an engine with its own breaker and cache from Settings."""
        return cls(
            database,
            analyzer_factory,
            breaker=CircuitBreaker.from_settings(settings.circuit_breaker, name=cls.name),
            cache=AnalysisCache(ttl=settings.cache.ttl, name=cls.name),
            learn_timeout=settings.learning.timeout,
            progress_interval=settings.learning.progress_interval,
            fallback=settings.fallback,
            **kwargs,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start background cache maintenance."""
        self.cache.start()

    async def close(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.gather(self._init_task, return_exceptions=True)
        self._init_task = None
        await self.cache.close()
        logger.info(f"Engine {self.name} closed")

    def cache_stats(self) -> dict:
        return {
            "cache": self.cache.stats(),
            "circuit_breaker": self.breaker.stats(),
            "analyzer_ready": self._analyzer is not None,
        }

    # =========================================================================
    # Analyzer access
    # =========================================================================

    async def _get_analyzer(self) -> Any:
        """Return the analyzer, initializing it at most once at a time.

        Concurrent callers share one in-flight initialization. A failed
        initialization is forgotten so the next call retries.
        """
        if self._analyzer is not None:
            return self._analyzer
        if self._init_task is None:
            logger.info(f"Engine {self.name}: initializing analyzer")
            self._init_task = asyncio.ensure_future(self._analyzer_factory())
        task = self._init_task
        try:
            # shielded so one caller's timeout does not cancel the shared init
            analyzer = await asyncio.shield(task)
        except Exception as e:
            if self._init_task is task:
                self._init_task = None
            raise AnalyzerUnavailableError(f"initialization failed: {e}") from e
        self._analyzer = analyzer
        return analyzer

    async def _call(self, method: str, *args: Any, parse: Callable[[Any], Any]) -> Any:
        analyzer = await self._get_analyzer()
        outcome = await guarded_call(lambda: getattr(analyzer, method)(*args), parse)
        return unwrap(outcome)

    async def _offload(self, func: Callable, *args: Any) -> Any:
        """Run blocking filesystem or database work off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    @staticmethod
    def _project_root(path: str) -> str:
        root = normalize_path(path)
        if not os.path.isdir(root):
            raise ProjectNotFoundError(root)
        return root

    # =========================================================================
    # Protected execution
    # =========================================================================

    async def _protected(
        self,
        key: Optional[str],
        primary: Callable[[], Awaitable[Any]],
        fallback: Callable[[], Awaitable[Any]],
        **execute_kwargs: Any,
    ) -> AnalysisResult:
        """Cache lookup, then breaker-protected primary with fallback."""
        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        degraded_reason: list[str] = []

        async def run_fallback():
            value = await fallback()
            degraded_reason.append(self.breaker.last_error or "analyzer unavailable")
            return value

        value = await self.breaker.execute(primary, run_fallback, **execute_kwargs)

        if degraded_reason:
            logger.warning(f"Engine {self.name}: degraded result ({degraded_reason[0]})")
            result = AnalysisResult(value, QualityFlag.DEGRADED, degraded_reason)
        else:
            result = AnalysisResult(value)

        if key is not None:
            self.cache.set(key, result)
        return result

    # =========================================================================
    # Learning
    # =========================================================================

    async def _report_progress(self, progress: ProgressCallback, total: int, started: float) -> None:
        """Estimate progress from elapsed time against the learning budget."""
        while True:
            await asyncio.sleep(self.progress_interval)
            fraction = min((time.monotonic() - started) / self.learn_timeout, 1.0)
            current = min(int(fraction * total), max(total - 1, 0))
            self._emit_progress(progress, current, total, f"Analyzing {total} files...")

    def _emit_progress(self, progress: Optional[ProgressCallback], current: int, total: int, message: str) -> None:
        if progress is None:
            return
        try:
            progress(current, total, message)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    async def _learn(
        self,
        path: str,
        primary: Callable[[], Awaitable[list]],
        fallback: Callable[[], Awaitable[list]],
        persist_one: Callable[[Any, str], None],
        item_kind: str,
        progress: Optional[ProgressCallback] = None,
    ) -> LearningResult:
        """Run one learning pass; ``persist_one(item, project_root)`` stores each item."""
        path = self._project_root(path)
        started = time.monotonic()
        total = await self._offload(count_source_files, path)
        self._emit_progress(progress, 0, total, f"Starting {item_kind} learning for {path}")

        reporter = None
        if progress is not None:
            reporter = asyncio.create_task(self._report_progress(progress, total, started))
        try:
            try:
                # The learning budget replaces the per-request timeout
                result = await asyncio.wait_for(
                    self._protected(None, primary, fallback, timeout=None),
                    timeout=self.learn_timeout,
                )
            except asyncio.TimeoutError:
                self.breaker.record_failure(f"Learning timed out after {self.learn_timeout:g}s")
                error = LearningTimeoutError(path, self.learn_timeout)
                logger.error(f"Engine {self.name}: {error.message}")
                raise error from None
        finally:
            if reporter is not None:
                reporter.cancel()
                await asyncio.gather(reporter, return_exceptions=True)

        items = result.value
        persisted, failures = await self._persist_all(
            items, lambda item: persist_one(item, path), item_kind
        )
        errors = list(result.errors)
        if failures:
            errors.append(f"{failures} of {len(items)} {item_kind}s failed to persist")

        self._emit_progress(progress, total, total, f"Learned {len(items)} {item_kind}s")
        duration = time.monotonic() - started
        logger.info(
            f"Engine {self.name}: learned {len(items)} {item_kind}s from {path} "
            f"in {duration:.1f}s ({result.quality.value}, {persisted} stored, {failures} failed)"
        )
        return LearningResult(
            items=items,
            quality=result.quality,
            errors=errors,
            persisted=persisted,
            persist_failures=failures,
            duration_seconds=duration,
        )

    async def _persist_all(
        self,
        items: Iterable[Any],
        persist_one: Callable[[Any], None],
        item_kind: str,
    ) -> tuple[int, int]:
        """Store items one at a time; a failed item is logged and skipped."""
        persisted = failures = 0
        for item in items:
            try:
                await self._offload(persist_one, item)
            except Exception as e:
                failures += 1
                name = getattr(item, "name", None) or getattr(item, "feature_name", None) or getattr(item, "type", "?")
                logger.warning(PersistenceError(item_kind, str(name), str(e)).message)
            else:
                persisted += 1
        return persisted, failures

    # =========================================================================
    # Change handling
    # =========================================================================

    def invalidate_path(self, path: str) -> int:
        """Drop cache entries for ``path`` and for any codebase containing it."""
        path = normalize_path(path)
        dropped = self.cache.invalidate_prefix(f"file:{path}:")
        for key in self.cache.keys():
            for prefix in self.project_key_prefixes:
                if not key.startswith(prefix):
                    continue
                root = key[len(prefix):].rstrip(os.sep)
                if path == root or path.startswith(root + os.sep):
                    dropped += int(self.cache.invalidate(key))
        return dropped

    async def update_from_change(self, record: FileChangeRecord) -> Optional[AnalysisResult]:
        dropped = self.invalidate_path(record.path)
        if dropped:
            logger.debug(f"Engine {self.name}: invalidated {dropped} entries for {record.path}")
        return None
