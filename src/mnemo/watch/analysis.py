"""Change analysis: turns debounced file changes into impact estimates.

Each batch of change records is fed to both engines, then every change is
scored:

    scope       file < module < project, from the path itself and from how
                many other files define the same concepts
    confidence  0.5 base, +0.1 per affected concept (max +0.3), +0.1 when a
                few files share its concepts, +0.3 when more than five do
    actions     follow-ups for the change kind and language

A batch touching more than three distinct concepts is treated as an
architectural change and every analysis in it is widened to project scope.
"""

import asyncio
import logging
from collections import Counter, deque
from pathlib import Path
from typing import Iterable, Optional

from mnemo.helpers.codebase import FRAMEWORK_MARKERS, normalize_path
from mnemo.models import ChangeAnalysis, ChangeKind, FileChangeRecord, ImpactScope

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_HISTORY = 50

BASE_CONFIDENCE = 0.5
CONCEPT_WEIGHT = 0.1
MAX_CONCEPT_BOOST = 0.3
ARCHITECTURAL_CONCEPTS = 3

# Files whose edits reach the whole project
PROJECT_FILES = set(FRAMEWORK_MARKERS) | {"tsconfig.json", "setup.py", "setup.cfg"}
MODULE_INDEX_FILES = {"index.ts", "index.js", "mod.rs", "__init__.py"}
TEST_DIRS = {"test", "tests", "spec", "__tests__"}

ACTIONS = {
    ChangeKind.ADD: ["Update documentation", "Add tests if applicable"],
    ChangeKind.MODIFY: ["Review related tests", "Check for breaking changes"],
    ChangeKind.DELETE: ["Remove related tests", "Update imports/dependencies"],
}
TYPED_LANGUAGES = {"typescript", "javascript"}


def estimate_scope(record: FileChangeRecord) -> ImpactScope:
    """Scope guess from the path alone."""
    path = Path(record.path)
    name = path.name.lower()
    if path.name in PROJECT_FILES:
        return ImpactScope.PROJECT
    if "test" in name or "spec" in name or path.parent.name.lower() in TEST_DIRS:
        return ImpactScope.MODULE
    if name in MODULE_INDEX_FILES:
        return ImpactScope.MODULE
    return ImpactScope.FILE


def suggested_actions(record: FileChangeRecord) -> list[str]:
    actions = list(ACTIONS.get(record.change_kind, []))
    if actions and record.language in TYPED_LANGUAGES:
        actions.append("Run type checking")
    return actions


def score_dependents(count: int) -> tuple[ImpactScope, float]:
    """Scope and confidence boost for ``count`` other files sharing concepts."""
    if count > 5:
        return ImpactScope.PROJECT, 0.3
    if count > 1:
        return ImpactScope.MODULE, 0.1
    return ImpactScope.FILE, 0.0


class ChangeAnalyzer:
    """Runs change records through the engines and keeps recent analyses.

    Usage:
        analyzer = ChangeAnalyzer(semantic, patterns, database)
        analyses = await analyzer.analyze_batch(records, project="/repo")
        analyzer.stats()
    """

    def __init__(
        self,
        semantic,
        patterns,
        database,
        batch_size: int = DEFAULT_BATCH_SIZE,
        history: int = DEFAULT_HISTORY,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.semantic = semantic
        self.patterns = patterns
        self.database = database
        self.batch_size = batch_size
        self._recent: deque[ChangeAnalysis] = deque(maxlen=history)
        self._scopes: Counter = Counter()
        self.batches = 0
        self.analyzed = 0
        self.engine_failures = 0

    async def _offload(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def analyze_batch(
        self,
        records: Iterable[FileChangeRecord],
        project: Optional[str] = None,
    ) -> list[ChangeAnalysis]:
        """Analyze a batch of changes; engine failures are logged, never raised."""
        records = list(records)
        if not records:
            return []

        analyses = [await self._run_engines(record) for record in records]
        stored = await self._stored_concepts(project)
        for analysis in analyses:
            self._score(analysis, stored)
        if len(analyses) > 1:
            self._cross_file(analyses)

        self.batches += 1
        self.analyzed += len(analyses)
        for analysis in analyses:
            self._scopes[analysis.scope.value] += 1
            self._recent.append(analysis)
            logger.debug(
                f"Change {analysis.change.change_kind.value} {analysis.change.path}: "
                f"scope={analysis.scope.value} confidence={analysis.confidence:.2f}"
            )
        return analyses

    async def _run_engines(self, record: FileChangeRecord) -> ChangeAnalysis:
        analysis = ChangeAnalysis(
            change=record,
            scope=estimate_scope(record),
            suggested_actions=suggested_actions(record),
        )
        semantic, pattern = await asyncio.gather(
            self.semantic.update_from_change(record),
            self.patterns.update_from_change(record),
            return_exceptions=True,
        )
        for engine, result in (("semantic", semantic), ("pattern", pattern)):
            if isinstance(result, Exception):
                self.engine_failures += 1
                logger.warning(
                    f"Engine {engine} failed to process {record.change_kind.value} {record.path}: {result}"
                )
                analysis.insights.append(f"Analysis error ({engine}): {result}")

        if semantic is not None and not isinstance(semantic, Exception):
            analysis.affected_concepts = list(dict.fromkeys(c.name for c in semantic.value))
        if pattern is not None and not isinstance(pattern, Exception):
            analysis.detected_patterns = list(dict.fromkeys(p.type for p in pattern.value))
        return analysis

    async def _stored_concepts(self, project: Optional[str]) -> list[dict]:
        try:
            return await self._offload(self.database.get_concepts, project)
        except Exception as e:
            logger.warning(f"Could not load stored concepts for dependents: {e}")
            return []

    def _score(self, analysis: ChangeAnalysis, stored: list[dict]) -> None:
        path = normalize_path(analysis.change.path)
        # a deleted file has no fresh concepts; its stored ones still have dependents
        names = set(analysis.affected_concepts)
        names.update(row["name"] for row in stored if row.get("file_path") == path)
        analysis.dependents = sorted({
            row["file_path"] for row in stored
            if row.get("name") in names and row.get("file_path") and row["file_path"] != path
        })

        confidence = BASE_CONFIDENCE
        if analysis.affected_concepts:
            confidence += min(MAX_CONCEPT_BOOST, CONCEPT_WEIGHT * len(analysis.affected_concepts))
        scope, boost = score_dependents(len(analysis.dependents))
        analysis.scope = analysis.scope.widen(scope)
        analysis.confidence = min(1.0, confidence + boost)

        if analysis.detected_patterns:
            analysis.insights.append(f"Detected {len(analysis.detected_patterns)} patterns in change")
        if analysis.scope is ImpactScope.PROJECT:
            analysis.insights.append("Change has project-wide impact - consider comprehensive testing")
        if analysis.affected_concepts:
            analysis.insights.append(f"Updated understanding of {len(analysis.affected_concepts)} concepts")

    def _cross_file(self, analyses: list[ChangeAnalysis]) -> None:
        concepts = {name for a in analyses for name in a.affected_concepts}
        if len(concepts) <= ARCHITECTURAL_CONCEPTS:
            return
        confidence = min(1.0, CONCEPT_WEIGHT * len(concepts))
        insights = [
            f"Architectural change detected affecting {len(concepts)} concepts",
            "Consider updating system documentation",
            "Review integration tests",
        ]
        for analysis in analyses:
            analysis.scope = ImpactScope.PROJECT
            analysis.confidence = max(analysis.confidence, confidence)
            analysis.insights.extend(insights)

    def recent(self, limit: int = 10) -> list[ChangeAnalysis]:
        return list(self._recent)[-limit:]

    def stats(self) -> dict:
        return {
            "batch_size": self.batch_size,
            "batches": self.batches,
            "analyzed": self.analyzed,
            "engine_failures": self.engine_failures,
            "by_scope": {scope.value: self._scopes[scope.value] for scope in ImpactScope},
            "recent": [a.to_dict() for a in self.recent(5)],
        }
