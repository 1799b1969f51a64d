"""
Mnemo Intelligence Service

Composition root: builds both engines, the staleness detector and the
per-project watchers from one Settings object, feeds watcher changes to
the engines and owns shutdown.
"""

import asyncio
import logging
import os
from typing import Callable, Optional

from mnemo.analyzer.treesitter import TreeSitterAnalyzer
from mnemo.core.staleness import StalenessDetector
from mnemo.engines.base import AnalyzerFactory, ProgressCallback
from mnemo.engines.pattern import PatternEngine
from mnemo.engines.semantic import SemanticEngine
from mnemo.errors import ProjectNotFoundError
from mnemo.helpers.codebase import count_source_files, normalize_path
from mnemo.models import ChangeAnalysis, FileChangeRecord, LearningResult
from mnemo.settings import Settings
from mnemo.watch.analysis import ChangeAnalyzer
from mnemo.watch.watcher import FileWatcher

logger = logging.getLogger(__name__)

WatcherFactory = Callable[[str, object], FileWatcher]


def _summary(result: LearningResult) -> dict:
    return {
        "quality": result.quality.value,
        "learned": len(result.items),
        "persisted": result.persisted,
        "persist_failures": result.persist_failures,
        "errors": list(result.errors),
        "duration_seconds": round(result.duration_seconds, 3),
    }


class IntelligenceService:
    """Everything the MCP tools need, wired once at startup."""

    def __init__(
        self,
        settings: Settings,
        database,
        analyzer_factory: AnalyzerFactory = TreeSitterAnalyzer.create,
        watcher_factory: WatcherFactory = FileWatcher.from_settings,
    ):
        self.settings = settings
        self.database = database
        self.semantic = SemanticEngine.from_settings(settings, database, analyzer_factory)
        self.patterns = PatternEngine.from_settings(settings, database, analyzer_factory)
        self.staleness = StalenessDetector(stale_buffer=settings.staleness.buffer)
        self.changes = ChangeAnalyzer(
            self.semantic, self.patterns, database, batch_size=settings.watcher.batch_size
        )

        self._watcher_factory = watcher_factory
        self._watchers: dict[str, FileWatcher] = {}
        self._consumers: dict[str, asyncio.Task] = {}
        self._started = False
        self.changes_processed = 0

    def start(self) -> None:
        """Start engine background work; needs a running event loop."""
        if self._started:
            return
        self.semantic.start()
        self.patterns.start()
        self._started = True

    @staticmethod
    def resolve_project(path: str) -> str:
        """Absolute project root; raises ProjectNotFoundError when it is not a directory."""
        project = normalize_path(path)
        if not os.path.isdir(project):
            raise ProjectNotFoundError(project)
        return project

    async def _offload(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # =========================================================================
    # Learning
    # =========================================================================

    async def learning_status(self, path: str) -> dict:
        project = self.resolve_project(path)
        concepts = await self._offload(self.database.get_concepts, project)
        patterns = await self._offload(self.database.get_patterns, None, project)
        code_files = await self._offload(count_source_files, project)

        has_intelligence = bool(concepts or patterns)
        verdict = None
        if has_intelligence:
            verdict = await self.staleness.verdict(project, concepts, patterns)
        is_stale = verdict.is_stale if verdict else False
        ready = has_intelligence and not is_stale

        return {
            "path": project,
            "has_intelligence": has_intelligence,
            "is_stale": is_stale,
            "staleness": verdict.to_dict() if verdict else None,
            "concepts_stored": len(concepts),
            "patterns_stored": len(patterns),
            "code_files_in_project": code_files,
            "recommendation": "ready" if ready else "learning_recommended",
            "message": (
                f"Intelligence is ready: {len(concepts)} concepts and {len(patterns)} patterns available."
                if ready else f"Learning recommended. Found {code_files} code files to analyze."
            ),
        }

    async def learn(self, path: str, progress: Optional[ProgressCallback] = None) -> dict:
        """Learn concepts, patterns and feature maps for a project."""
        project = self.resolve_project(path)
        logger.info(f"Learning codebase intelligence for {project}")

        concepts = await self.semantic.learn_from_codebase(project, progress)
        patterns = await self.patterns.learn_from_codebase(project, progress)
        features = await self.patterns.build_feature_map(project, persist=True)

        return {
            "success": True,
            "path": project,
            "concepts": _summary(concepts),
            "patterns": _summary(patterns),
            "feature_maps": {
                "quality": features.quality.value,
                "count": len(features.value),
                "errors": list(features.errors),
            },
        }

    async def auto_learn_if_needed(
        self,
        path: str,
        force: bool = False,
        skip_learning: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> dict:
        status = await self.learning_status(path)
        if skip_learning:
            return {"action": "skipped", "reason": "learning skipped as requested", "status": status}
        if not force and status["has_intelligence"] and not status["is_stale"]:
            return {"action": "skipped", "reason": "intelligence is up to date", "status": status}

        reason = "forced" if force else ("stale" if status["is_stale"] else "no intelligence")
        logger.info(f"Auto-learning {status['path']} ({reason})")
        result = await self.learn(status["path"], progress)
        return {"action": "learned", "reason": reason, "result": result}

    # =========================================================================
    # Watching
    # =========================================================================

    async def start_watching(self, path: str) -> dict:
        project = self.resolve_project(path)
        if project in self._watchers:
            return {"success": True, "path": project, "already_watching": True}

        self.start()
        watcher = self._watcher_factory(project, self.settings.watcher)
        queue = watcher.subscribe("file:change", "watcher:error")
        await watcher.start()
        self._watchers[project] = watcher
        self._consumers[project] = asyncio.create_task(self._consume(project, queue))
        logger.info(f"Watching {project}")
        return {"success": True, "path": project, "already_watching": False}

    async def stop_watching(self, path: str) -> dict:
        project = normalize_path(path)
        watcher = self._watchers.pop(project, None)
        if watcher is None:
            return {"success": False, "path": project, "error": "not watching"}

        consumer = self._consumers.pop(project, None)
        await watcher.stop()
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
        logger.info(f"Stopped watching {project}")
        return {"success": True, "path": project}

    async def _consume(self, project: str, queue: asyncio.Queue) -> None:
        """Drain the watcher queue in batches of up to ``changes.batch_size``."""
        while True:
            events = [await queue.get()]
            while len(events) < self.changes.batch_size and not queue.empty():
                events.append(queue.get_nowait())

            batch = []
            for event in events:
                if event.error is not None:
                    logger.warning(f"Watcher error for {project}: {event.error}")
                elif event.change is not None:
                    batch.append(event.change)
            if batch:
                await self.analyze_changes(batch, project)

    async def analyze_changes(
        self,
        records: list[FileChangeRecord],
        project: Optional[str] = None,
    ) -> list[ChangeAnalysis]:
        """Feed change records to both engines and score their impact."""
        analyses = await self.changes.analyze_batch(records, project)
        self.changes_processed += len(records)
        return analyses

    async def handle_change(self, record: FileChangeRecord, project: Optional[str] = None) -> ChangeAnalysis:
        """Analyze one change record; engine failures are logged, not raised."""
        analyses = await self.analyze_changes([record], project)
        return analyses[0]

    # =========================================================================
    # Status / shutdown
    # =========================================================================

    def system_status(self) -> dict:
        return {
            "engines": {
                "semantic": self.semantic.cache_stats(),
                "pattern": self.patterns.cache_stats(),
            },
            "watchers": {
                project: {
                    "running": watcher.is_running,
                    "pending": watcher.pending_count,
                    "tracked_paths": watcher.tracked_paths,
                    "suppressed": watcher.suppressed_count,
                }
                for project, watcher in self._watchers.items()
            },
            "changes_processed": self.changes_processed,
            "change_analysis": self.changes.stats(),
        }

    async def close(self) -> None:
        """Stop all watchers and consumers, then close both engines."""
        for project in list(self._watchers):
            await self.stop_watching(project)
        await self.semantic.close()
        await self.patterns.close()
        self._started = False
        logger.info("Intelligence service closed")
