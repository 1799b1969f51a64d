"""Resilience primitives: circuit breaker, TTL cache, staleness detection."""

from mnemo.core.cache import AnalysisCache, codebase_key, file_key
from mnemo.core.circuit_breaker import CircuitBreaker, FailureWindow
from mnemo.core.staleness import StalenessDetector

__all__ = [
    "AnalysisCache",
    "CircuitBreaker",
    "FailureWindow",
    "StalenessDetector",
    "codebase_key",
    "file_key",
]
