"""Analyzer contract and the bundled tree-sitter implementation."""

from mnemo.analyzer.contract import (
    AnalyzerError,
    AnalyzerOk,
    AnalyzerOutcome,
    PatternLearner,
    SemanticAnalyzer,
    guarded_call,
    unwrap,
)
from mnemo.analyzer.treesitter import TreeSitterAnalyzer

__all__ = [
    "AnalyzerError",
    "AnalyzerOk",
    "AnalyzerOutcome",
    "PatternLearner",
    "SemanticAnalyzer",
    "TreeSitterAnalyzer",
    "guarded_call",
    "unwrap",
]
