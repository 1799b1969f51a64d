"""Contract between the engines and the external analyzer.

The analyzer is a black box that may fail, hang or return malformed data.
Engines never touch its raw payloads: every call goes through
``guarded_call``, which returns either ``AnalyzerOk`` holding validated
model objects or ``AnalyzerError`` holding the failure reason.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar, Union, runtime_checkable

from mnemo.errors import AnalyzerUnavailableError
from mnemo.models import CodebaseAnalysis, Concept, FeatureMap, LineRange, Pattern

T = TypeVar("T")


@runtime_checkable
class SemanticAnalyzer(Protocol):
    async def analyze_file(self, path: str, content: str) -> Any: ...

    async def analyze_codebase(self, path: str) -> Any: ...

    async def learn_from_codebase(self, path: str) -> Any: ...


@runtime_checkable
class PatternLearner(Protocol):
    async def analyze_file_patterns(self, path: str, content: str) -> Any: ...

    async def extract_patterns(self, path: str) -> Any: ...

    async def learn_patterns(self, path: str) -> Any: ...

    async def build_feature_map(self, path: str) -> Any: ...


@dataclass(frozen=True)
class AnalyzerOk(Generic[T]):
    value: T


@dataclass(frozen=True)
class AnalyzerError:
    reason: str


AnalyzerOutcome = Union[AnalyzerOk[T], AnalyzerError]


async def guarded_call(
    call: Callable[[], Awaitable[Any]],
    parse: Callable[[Any], T],
) -> AnalyzerOutcome:
    """Run an analyzer call and validate its payload with ``parse``.

    Cancellation is not caught, so an enclosing timeout still applies.
    """
    try:
        raw = await call()
    except Exception as e:
        return AnalyzerError(str(e) or type(e).__name__)
    try:
        return AnalyzerOk(parse(raw))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        return AnalyzerError(f"Malformed analyzer payload: {e}")


def unwrap(outcome: AnalyzerOutcome) -> Any:
    """Return the value or raise AnalyzerUnavailableError with the reason."""
    if isinstance(outcome, AnalyzerError):
        raise AnalyzerUnavailableError(outcome.reason)
    return outcome.value


# =============================================================================
# Payload parsers
# =============================================================================

_MISSING = object()


def _field(item: dict, snake: str, camel: str, default: Any = _MISSING) -> Any:
    if snake in item:
        return item[snake]
    if camel in item or default is not _MISSING:
        return item.get(camel, default)
    raise KeyError(snake)


def _confidence(value: Any) -> float:
    confidence = float(value)
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence {confidence} outside 0.0-1.0")
    return confidence


def _as_list(raw: Any, what: str) -> list:
    if not isinstance(raw, (list, tuple)):
        raise TypeError(f"expected a list of {what}, got {type(raw).__name__}")
    return list(raw)


def parse_concept(item: Any) -> Concept:
    if isinstance(item, Concept):
        _confidence(item.confidence)
        return item
    line_range = _field(item, "line_range", "lineRange", None) or {}
    if isinstance(line_range, LineRange):
        lines = line_range
    else:
        lines = LineRange(int(line_range.get("start", 0)), int(line_range.get("end", 0)))
    return Concept(
        name=str(item["name"]),
        type=str(_field(item, "type", "conceptType", "unknown")),
        confidence=_confidence(item["confidence"]),
        file_path=str(_field(item, "file_path", "filePath", "")),
        line_range=lines,
        id=item.get("id"),
        relationships=dict(item.get("relationships") or {}),
    )


def parse_concepts(raw: Any) -> list[Concept]:
    return [parse_concept(item) for item in _as_list(raw, "concepts")]


def parse_pattern(item: Any) -> Pattern:
    if isinstance(item, Pattern):
        _confidence(item.confidence)
        return item
    return Pattern(
        type=str(_field(item, "type", "patternType")),
        description=str(item.get("description", "")),
        confidence=_confidence(item.get("confidence", 0.5)),
        frequency=int(item.get("frequency", 1)),
        id=item.get("id"),
        contexts=[str(c) for c in item.get("contexts") or []],
        examples=[dict(e) for e in item.get("examples") or []],
    )


def parse_patterns(raw: Any) -> list[Pattern]:
    return [parse_pattern(item) for item in _as_list(raw, "patterns")]


def parse_codebase_analysis(raw: Any) -> CodebaseAnalysis:
    if isinstance(raw, CodebaseAnalysis):
        return raw
    if not isinstance(raw, dict):
        raise TypeError(f"expected a mapping, got {type(raw).__name__}")
    return CodebaseAnalysis(
        languages=[str(lang) for lang in _as_list(raw["languages"], "languages")],
        frameworks=[str(f) for f in _as_list(raw.get("frameworks", []), "frameworks")],
        complexity={k: float(v) for k, v in (raw.get("complexity") or {}).items()},
        concepts=parse_concepts(raw.get("concepts", [])),
    )


def parse_feature_map(item: Any) -> FeatureMap:
    if isinstance(item, FeatureMap):
        return item
    return FeatureMap(
        feature_name=str(_field(item, "feature_name", "featureName")),
        primary_files=[str(f) for f in _field(item, "primary_files", "primaryFiles", [])],
        related_files=[str(f) for f in _field(item, "related_files", "relatedFiles", [])],
        dependencies=[str(d) for d in item.get("dependencies") or []],
        id=item.get("id"),
    )


def parse_feature_maps(raw: Any) -> list[FeatureMap]:
    return [parse_feature_map(item) for item in _as_list(raw, "feature maps")]
