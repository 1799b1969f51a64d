"""Analysis engines: breaker-protected analyzer calls with heuristic fallbacks."""

from mnemo.engines.base import AnalysisEngine
from mnemo.engines.pattern import PatternEngine
from mnemo.engines.semantic import SemanticEngine

__all__ = ["AnalysisEngine", "PatternEngine", "SemanticEngine"]
