"""
Mnemo Error Hierarchy

Standardized error handling for all Mnemo modules.
All exceptions inherit from MnemoError for consistent handling.
"""

from typing import Optional


class MnemoError(Exception):
    """Base exception for all Mnemo errors."""

    def __init__(self, message: str, code: str = "MNEMO_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to response dict for MCP tool returns."""
        return {
            "success": False,
            "error": self.message,
            "code": self.code
        }


# =============================================================================
# Analyzer / Circuit Breaker Errors
# =============================================================================

class AnalyzerUnavailableError(MnemoError):
    """Raised when the primary analyzer call fails or cannot be made."""

    def __init__(self, reason: str):
        super().__init__(
            f"Analyzer unavailable: {reason}",
            "ANALYZER_UNAVAILABLE"
        )
        self.reason = reason


class CircuitBreakerError(MnemoError):
    """Raised when a breaker-protected call cannot produce a result.

    Carries the breaker diagnostics at the time of failure. When both the
    primary and the fallback failed, both messages are kept verbatim.
    """

    def __init__(
        self,
        message: str,
        state: str,
        failure_count: int,
        success_rate: float,
        time_since_last_failure: Optional[float],
        primary_error: Optional[str] = None,
        fallback_error: Optional[str] = None,
        code: str = "CIRCUIT_BREAKER_ERROR",
    ):
        super().__init__(message, code)
        self.state = state
        self.failure_count = failure_count
        self.success_rate = success_rate
        self.time_since_last_failure = time_since_last_failure
        self.primary_error = primary_error
        self.fallback_error = fallback_error

    @property
    def details(self) -> dict:
        return {
            "state": self.state,
            "failure_count": self.failure_count,
            "success_rate": self.success_rate,
            "time_since_last_failure": self.time_since_last_failure,
            "primary_error": self.primary_error,
            "fallback_error": self.fallback_error,
        }

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["details"] = self.details
        return result


class LearningTimeoutError(MnemoError):
    """Raised when whole-codebase learning exceeds its wall-clock budget."""

    def __init__(self, path: str, timeout_seconds: float):
        super().__init__(
            f"Learning process for {path} timed out after {timeout_seconds:g}s. "
            "This commonly happens with:\n"
            "  - Large projects with many files\n"
            "  - Projects with very large files (>1MB)\n"
            "  - Complex, deeply nested directory structures\n"
            "  - Malformed or corrupted source files\n\n"
            "Try running on a smaller subset of your codebase first.",
            "LEARNING_TIMEOUT"
        )
        self.path = path
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Persistence Errors
# =============================================================================

class DatabaseError(MnemoError):
    """Raised when a database operation fails."""

    def __init__(self, operation: str, detail: str):
        super().__init__(
            f"DB operation '{operation}' failed: {detail}",
            "DB_ERROR"
        )
        self.operation = operation
        self.detail = detail


class PersistenceError(MnemoError):
    """Raised when a single learned item could not be stored."""

    def __init__(self, item_kind: str, item_name: str, detail: str):
        super().__init__(
            f"Failed to persist {item_kind} '{item_name}': {detail}",
            "PERSISTENCE_PARTIAL_FAILURE"
        )
        self.item_kind = item_kind
        self.item_name = item_name
        self.detail = detail


# =============================================================================
# Configuration / Validation Errors
# =============================================================================

class ConfigurationError(MnemoError):
    """Raised when settings cannot be loaded or are invalid."""

    def __init__(self, key: str, message: str):
        super().__init__(
            f"Invalid configuration '{key}': {message}",
            "CONFIG_ERROR"
        )
        self.key = key


class ValidationError(MnemoError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str):
        super().__init__(
            f"Validation error for '{field}': {message}",
            "VALIDATION_ERROR"
        )
        self.field = field


class ProjectNotFoundError(MnemoError):
    """Raised when a project path does not exist."""

    def __init__(self, project_path: str):
        super().__init__(
            f"Project path {project_path} does not exist or is not a directory",
            "PROJECT_NOT_FOUND"
        )
        self.project_path = project_path
