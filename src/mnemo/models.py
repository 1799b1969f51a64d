"""Shared data types for analysis results, change records and verdicts."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class QualityFlag(str, Enum):
    """Whether a result came from the analyzer or from a fallback heuristic."""

    NORMAL = "normal"
    DEGRADED = "degraded"


class ChangeKind(str, Enum):
    ADD = "add"
    MODIFY = "change"
    DELETE = "unlink"
    ADD_DIR = "addDir"
    DELETE_DIR = "unlinkDir"

    @property
    def is_directory(self) -> bool:
        return self in (ChangeKind.ADD_DIR, ChangeKind.DELETE_DIR)

    @property
    def is_delete(self) -> bool:
        return self in (ChangeKind.DELETE, ChangeKind.DELETE_DIR)


class ImpactScope(str, Enum):
    """How far a change is expected to reach, narrowest first."""

    FILE = "file"
    MODULE = "module"
    PROJECT = "project"

    @property
    def rank(self) -> int:
        return list(ImpactScope).index(self)

    def widen(self, other: "ImpactScope") -> "ImpactScope":
        return other if other.rank > self.rank else self


@dataclass(frozen=True)
class LineRange:
    start: int
    end: int


@dataclass
class Concept:
    """A semantic concept (class, function, interface...) found in source."""

    name: str
    type: str
    confidence: float
    file_path: str
    line_range: LineRange
    id: Optional[str] = None
    relationships: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Pattern:
    """A coding pattern (naming convention, structure, idiom) and its usage."""

    type: str
    description: str
    confidence: float
    frequency: int = 1
    id: Optional[str] = None
    contexts: list[str] = field(default_factory=list)
    examples: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CodebaseAnalysis:
    languages: list[str]
    frameworks: list[str]
    complexity: dict[str, float]
    concepts: list[Concept]
    entry_points: list[dict] = field(default_factory=list)
    key_directories: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FeatureMap:
    feature_name: str
    primary_files: list[str]
    related_files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisResult(Generic[T]):
    """An analysis value plus an explicit quality flag.

    DEGRADED results always carry at least one reason in ``errors``.
    """

    value: T
    quality: QualityFlag = QualityFlag.NORMAL
    errors: list[str] = field(default_factory=list)

    @property
    def is_degraded(self) -> bool:
        return self.quality is QualityFlag.DEGRADED

    def to_dict(self) -> dict:
        value = self.value
        if isinstance(value, list):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        elif hasattr(value, "to_dict"):
            value = value.to_dict()
        return {
            "value": value,
            "quality": self.quality.value,
            "errors": list(self.errors),
        }


@dataclass
class LearningResult(Generic[T]):
    items: list[T]
    quality: QualityFlag
    errors: list[str] = field(default_factory=list)
    persisted: int = 0
    persist_failures: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "quality": self.quality.value,
            "errors": list(self.errors),
            "persisted": self.persisted,
            "persist_failures": self.persist_failures,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class FileChangeRecord:
    change_kind: ChangeKind
    path: str
    language: str
    content_hash: Optional[str] = None
    size_bytes: Optional[int] = None
    mtime: Optional[float] = None
    content: Optional[str] = None

    def to_dict(self, include_content: bool = False) -> dict:
        result = {
            "type": self.change_kind.value,
            "path": self.path,
            "language": self.language,
            "hash": self.content_hash,
            "size": self.size_bytes,
            "mtime": self.mtime,
        }
        if include_content:
            result["content"] = self.content
        return result


@dataclass(frozen=True)
class WatcherEvent:
    """One item delivered on a watcher subscription queue."""

    topic: str
    change: Optional[FileChangeRecord] = None
    error: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StalenessVerdict:
    is_stale: bool
    most_recent_file_time: Optional[datetime]
    most_recent_intelligence_time: Optional[datetime]
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "is_stale": self.is_stale,
            "most_recent_file_time": (
                self.most_recent_file_time.isoformat() if self.most_recent_file_time else None
            ),
            "most_recent_intelligence_time": (
                self.most_recent_intelligence_time.isoformat()
                if self.most_recent_intelligence_time else None
            ),
            "reason": self.reason,
        }


@dataclass
class ChangeAnalysis:
    """Estimated reach of one file change plus what to do about it."""

    change: FileChangeRecord
    scope: ImpactScope = ImpactScope.FILE
    confidence: float = 0.5
    affected_concepts: list[str] = field(default_factory=list)
    detected_patterns: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    suggested_actions: list[str] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "change": self.change.to_dict(),
            "scope": self.scope.value,
            "confidence": round(self.confidence, 2),
            "affected_concepts": list(self.affected_concepts),
            "detected_patterns": list(self.detected_patterns),
            "dependents": list(self.dependents),
            "suggested_actions": list(self.suggested_actions),
            "insights": list(self.insights),
            "analyzed_at": self.analyzed_at.isoformat(),
        }
