"""Coding pattern learning, recommendation and feature mapping."""

import logging
import os
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from mnemo.analyzer.contract import parse_feature_maps, parse_pattern, parse_patterns
from mnemo.core.cache import codebase_key, file_key
from mnemo.engines import heuristics
from mnemo.engines.base import AnalysisEngine, ProgressCallback
from mnemo.errors import PersistenceError
from mnemo.helpers.codebase import compute_file_hash, normalize_path
from mnemo.models import (
    AnalysisResult,
    ChangeKind,
    FeatureMap,
    FileChangeRecord,
    LearningResult,
    Pattern,
)

logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATION_LIMIT = 5


def _within(path: str, root: str) -> bool:
    root = root.rstrip(os.sep)
    return path == root or path.startswith(root + os.sep)


class PatternEngine(AnalysisEngine):
    """Naming, structural and testing patterns plus feature maps."""

    name = "pattern"
    project_key_prefixes = ("codebase:", "features:")

    async def analyze_file_patterns(self, path: str, content: str) -> AnalysisResult[list[Pattern]]:
        path = normalize_path(path)

        async def primary():
            return await self._call("analyze_file_patterns", path, content, parse=parse_patterns)

        async def fallback():
            return heuristics.extract_patterns(content, self.fallback.pattern_confidence)

        return await self._protected(file_key(path, compute_file_hash(content)), primary, fallback)

    async def extract_patterns(self, path: str) -> AnalysisResult[list[Pattern]]:
        """Project-wide pattern summary (not persisted)."""
        path = self._project_root(path)

        async def primary():
            return await self._call("extract_patterns", path, parse=parse_patterns)

        async def fallback():
            return await self._offload(heuristics.learn_patterns, path, self.fallback.pattern_confidence)

        return await self._protected(codebase_key(path), primary, fallback)

    async def learn_from_codebase(
        self,
        path: str,
        progress: Optional[ProgressCallback] = None,
    ) -> LearningResult[Pattern]:
        path = self._project_root(path)

        async def primary():
            return await self._call("learn_patterns", path, parse=parse_patterns)

        async def fallback():
            return await self._offload(heuristics.learn_patterns, path, self.fallback.pattern_confidence)

        result = await self._learn(
            path, primary, fallback, self.database.insert_pattern, "pattern", progress
        )
        self.cache.invalidate(codebase_key(path))
        return result

    async def build_feature_map(self, path: str, persist: bool = False) -> AnalysisResult[list[FeatureMap]]:
        """
        Group project files into features.

        Args:
            path: Project root
            persist: Store each feature map (failures are logged and skipped)

        Returns:
            AnalysisResult whose errors also note persistence failures
        """
        path = self._project_root(path)

        async def primary():
            return await self._call("build_feature_map", path, parse=parse_feature_maps)

        async def fallback():
            return await self._offload(heuristics.build_feature_map, path)

        result = await self._protected(f"features:{path}", primary, fallback)
        if not persist:
            return result

        stored, failures = await self._persist_all(
            result.value,
            lambda feature: self.database.insert_feature_map(path, feature),
            "feature map",
        )
        if failures:
            return AnalysisResult(
                result.value,
                result.quality,
                result.errors + [f"{failures} of {stored + failures} feature maps failed to persist"],
            )
        return result

    # =========================================================================
    # Stored pattern queries
    # =========================================================================

    async def _stored_patterns(self, type_filter: Optional[str] = None) -> list[tuple[dict, Pattern]]:
        """Stored rows paired with their parsed Pattern; malformed rows are skipped."""
        rows = await self._offload(self.database.get_patterns, type_filter)
        patterns = []
        for row in rows:
            try:
                patterns.append((row, parse_pattern(row)))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed stored pattern {row.get('id')}: {e}")
        return patterns

    async def find_relevant_patterns(
        self,
        problem: str,
        limit: int = DEFAULT_RECOMMENDATION_LIMIT,
    ) -> list[dict]:
        """Rank stored patterns by keyword overlap with a problem description."""
        scored = []
        for _, pattern in await self._stored_patterns():
            score = heuristics.score_pattern(problem, pattern)
            if score > 0:
                scored.append((score, pattern))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            {**pattern.to_dict(), "relevance": round(score, 3)}
            for score, pattern in scored[:limit]
        ]

    async def pattern_statistics(self) -> dict:
        rows = await self._offload(self.database.get_patterns, None)
        by_type = Counter(row.get("type") for row in rows)
        epoch = datetime.min.replace(tzinfo=timezone.utc)

        def created(row) -> datetime:
            value = row.get("created_at")
            if isinstance(value, datetime):
                return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return epoch

        most_used = sorted(rows, key=lambda r: r.get("frequency", 0), reverse=True)[:10]
        recently_used = sorted(rows, key=created, reverse=True)[:10]
        return {
            "total_patterns": len(rows),
            "by_type": dict(by_type),
            "most_used": [{"id": r.get("id"), "type": r.get("type"), "frequency": r.get("frequency")} for r in most_used],
            "recently_used": [{"id": r.get("id"), "type": r.get("type")} for r in recently_used],
        }

    # =========================================================================
    # Change handling
    # =========================================================================

    async def update_from_change(self, record: FileChangeRecord) -> Optional[AnalysisResult]:
        """Re-analyze changed content and bump usage of matching stored patterns.

        Only patterns learned for the project containing the file (or stored
        without a project) are bumped. Usage updates leave the learn
        timestamp alone, so they never make stale intelligence look fresh.
        """
        await super().update_from_change(record)
        if record.change_kind not in (ChangeKind.ADD, ChangeKind.MODIFY) or record.content is None:
            return None

        result = await self.analyze_file_patterns(record.path, record.content)
        detected = {p.type for p in result.value}
        if not detected:
            return result

        try:
            stored = await self._stored_patterns()
        except Exception as e:
            logger.warning(f"Cannot update pattern usage for {record.path}: {e}")
            return result

        path = normalize_path(record.path)
        for row, pattern in stored:
            if pattern.type not in detected:
                continue
            if pattern.contexts and record.language not in pattern.contexts:
                continue
            project = row.get("project_path") or ""
            if project and not _within(path, project):
                continue
            try:
                await self._offload(
                    self.database.update_pattern_frequency, project, pattern.id, pattern.frequency + 1
                )
            except Exception as e:
                logger.warning(PersistenceError("pattern usage", str(pattern.id), str(e)).message)
        return result
