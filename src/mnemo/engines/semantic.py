"""Semantic concept extraction with analyzer fallback."""

import logging
from typing import Optional

from mnemo.analyzer.contract import parse_codebase_analysis, parse_concepts
from mnemo.core.cache import codebase_key, file_key
from mnemo.engines import heuristics
from mnemo.engines.base import AnalysisEngine, ProgressCallback
from mnemo.helpers.codebase import compute_file_hash, normalize_path
from mnemo.models import (
    AnalysisResult,
    ChangeKind,
    CodebaseAnalysis,
    Concept,
    FileChangeRecord,
    LearningResult,
)

logger = logging.getLogger(__name__)


class SemanticEngine(AnalysisEngine):
    """Concepts (classes, functions, interfaces) for files and whole projects."""

    name = "semantic"

    async def analyze_codebase(self, path: str) -> AnalysisResult[CodebaseAnalysis]:
        """
        Languages, frameworks, complexity and concepts for a project.

        Entry points and key directories are attached from filesystem
        conventions whichever path produced the analysis.
        """
        path = self._project_root(path)
        key = codebase_key(path)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        async def primary():
            return await self._call("analyze_codebase", path, parse=parse_codebase_analysis)

        async def fallback():
            return await self._offload(heuristics.analyze_codebase, path)

        result = await self._protected(None, primary, fallback)
        analysis = result.value
        analysis.entry_points = await self.detect_entry_points(path, analysis.frameworks)
        analysis.key_directories = await self.map_key_directories(path)
        self.cache.set(key, result)
        return result

    async def analyze_file_content(self, path: str, content: str) -> AnalysisResult[list[Concept]]:
        path = normalize_path(path)

        async def primary():
            return await self._call("analyze_file", path, content, parse=parse_concepts)

        async def fallback():
            return heuristics.extract_concepts(
                path,
                content,
                class_confidence=self.fallback.class_confidence,
                function_confidence=self.fallback.function_confidence,
            )

        return await self._protected(file_key(path, compute_file_hash(content)), primary, fallback)

    async def learn_from_codebase(
        self,
        path: str,
        progress: Optional[ProgressCallback] = None,
    ) -> LearningResult[Concept]:
        path = self._project_root(path)

        async def primary():
            return await self._call("learn_from_codebase", path, parse=parse_concepts)

        async def fallback():
            return await self._offload(
                heuristics.learn_concepts,
                path,
                self.fallback.class_confidence,
                self.fallback.function_confidence,
            )

        result = await self._learn(
            path, primary, fallback, self.database.insert_concept, "concept", progress
        )
        self.cache.invalidate(codebase_key(path))
        return result

    async def detect_entry_points(self, path: str, frameworks: list[str]) -> list[dict]:
        try:
            return await self._offload(heuristics.detect_entry_points, path, frameworks)
        except OSError as e:
            logger.warning(f"Entry point detection failed for {path}: {e}")
            return []

    async def map_key_directories(self, path: str) -> list[dict]:
        try:
            return await self._offload(heuristics.map_key_directories, path)
        except OSError as e:
            logger.warning(f"Failed to map key directories for {path}: {e}")
            return []

    async def update_from_change(self, record: FileChangeRecord) -> Optional[AnalysisResult]:
        """Invalidate stale entries and re-analyze changed file content."""
        await super().update_from_change(record)
        if record.change_kind not in (ChangeKind.ADD, ChangeKind.MODIFY) or record.content is None:
            return None
        return await self.analyze_file_content(record.path, record.content)
