"""
Mnemo Fallback Heuristics

Local, dependency-free analysis used when the primary analyzer is
unavailable. Everything here is deliberately shallow (regexes and
directory conventions) and reports confidences below what the analyzer
reports for the same construct.
"""

import logging
import os
import re
import uuid
from collections import Counter
from pathlib import Path
from typing import Iterable, Optional

from mnemo.helpers.codebase import (
    LANGUAGE_MAP,
    detect_frameworks,
    detect_language,
    iter_source_files,
    should_skip_dir,
)
from mnemo.models import CodebaseAnalysis, Concept, FeatureMap, LineRange, Pattern

logger = logging.getLogger(__name__)

# Files sampled per project by the whole-codebase fallbacks
MAX_FALLBACK_FILES = 500
MAX_FALLBACK_FILE_BYTES = 256 * 1024

# Complexity metrics the fallback cannot measure are reported as -1
NOT_MEASURED = -1.0

# =============================================================================
# Concepts
# =============================================================================

CLASS_RE = re.compile(r"\b(?:class|interface|struct|trait)\s+([A-Za-z_]\w*)")
FUNCTION_RE = re.compile(r"\b(?:def|function|func|fn)\s+([A-Za-z_]\w*)")


def extract_concepts(
    file_path: str,
    content: str,
    class_confidence: float = 0.4,
    function_confidence: float = 0.3,
) -> list[Concept]:
    """
    Regex scan for class- and function-like declarations.

    Args:
        file_path: Path recorded on each concept
        content: Source text
        class_confidence: Confidence for class-like matches
        function_confidence: Confidence for function-like matches

    Returns:
        One-line concepts in source order
    """
    concepts = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        match = CLASS_RE.search(line)
        if match:
            concepts.append(Concept(
                name=match.group(1),
                type="class",
                confidence=class_confidence,
                file_path=file_path,
                line_range=LineRange(lineno, lineno),
            ))
            continue
        match = FUNCTION_RE.search(line)
        if match:
            concepts.append(Concept(
                name=match.group(1),
                type="function",
                confidence=function_confidence,
                file_path=file_path,
                line_range=LineRange(lineno, lineno),
            ))

    if not concepts:
        logger.debug(f"Fallback found no concepts in {file_path}")
    return concepts


def _read_source(path: Path) -> Optional[str]:
    try:
        if path.stat().st_size > MAX_FALLBACK_FILE_BYTES:
            return None
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"Fallback skipped unreadable file {path}: {e}")
        return None


def _sample_sources(root: str) -> Iterable[tuple[Path, str]]:
    for i, path in enumerate(iter_source_files(root)):
        if i >= MAX_FALLBACK_FILES:
            logger.info(f"Fallback scan of {root} capped at {MAX_FALLBACK_FILES} files")
            return
        content = _read_source(path)
        if content is not None:
            yield path, content


def learn_concepts(
    root: str,
    class_confidence: float = 0.4,
    function_confidence: float = 0.3,
) -> list[Concept]:
    """Regex concept scan over (a bounded sample of) a whole project."""
    concepts = []
    for path, content in _sample_sources(root):
        concepts.extend(extract_concepts(str(path), content, class_confidence, function_confidence))
    return concepts


# =============================================================================
# Patterns
# =============================================================================

# (pattern type, description, detector)
PATTERN_RULES = [
    (
        "camelCase_function_naming",
        "Functions use camelCase naming convention",
        re.compile(r"\b(?:function|func)\s+[a-z][a-z0-9]*[A-Z]\w*"),
    ),
    (
        "snake_case_function_naming",
        "Functions use snake_case naming convention",
        re.compile(r"\b(?:def|fn)\s+[a-z][a-z0-9]*(?:_[a-z0-9]+)+\s*\("),
    ),
    (
        "PascalCase_class_naming",
        "Classes use PascalCase naming convention",
        re.compile(r"\bclass\s+[A-Z][a-zA-Z0-9]*"),
    ),
    (
        "testing",
        "Testing pattern with test functions or describe/it blocks",
        re.compile(r"\b(?:describe|it|test)\s*\(|\bdef\s+test_|\bexpect\(|\bassert\s"),
    ),
    (
        "api_design",
        "RESTful API design pattern",
        re.compile(r"\b(?:app|router)\.(?:get|post|put|delete|patch)\b|@(?:app|router)\.(?:get|post|put|delete|route)\b"),
    ),
    (
        "dependency_injection",
        "Dependency injection pattern detected",
        re.compile(r"constructor\([^)]*\b(?:private|readonly)\b|@Injectable|\bDepends\("),
    ),
]


def extract_patterns(content: str, confidence: float = 0.4) -> list[Pattern]:
    """Detect naming, testing, API routing and DI patterns in one file."""
    return [
        Pattern(type=ptype, description=description, confidence=confidence)
        for ptype, description, regex in PATTERN_RULES
        if regex.search(content)
    ]


def learn_patterns(root: str, confidence: float = 0.4) -> list[Pattern]:
    """Aggregate per-file pattern hits across a project into frequencies."""
    counts: Counter = Counter()
    contexts: dict[str, set[str]] = {}
    examples: dict[str, list[dict[str, str]]] = {}

    for path, content in _sample_sources(root):
        language = detect_language(str(path))
        for pattern in extract_patterns(content, confidence):
            counts[pattern.type] += 1
            contexts.setdefault(pattern.type, set()).add(language)
            if len(examples.setdefault(pattern.type, [])) < 3:
                examples[pattern.type].append({"file": str(path)})

    descriptions = {ptype: description for ptype, description, _ in PATTERN_RULES}
    return [
        Pattern(
            type=ptype,
            description=descriptions[ptype],
            confidence=confidence,
            frequency=frequency,
            id=f"fallback_{ptype}",
            contexts=sorted(contexts[ptype]),
            examples=examples[ptype],
        )
        for ptype, frequency in counts.most_common()
    ]


# =============================================================================
# Codebase overview
# =============================================================================

def analyze_codebase(root: str) -> CodebaseAnalysis:
    """
    Degraded whole-project analysis from the filesystem alone.

    Languages come from file extensions, frameworks from manifest files.
    Complexity metrics are NOT_MEASURED; only the line count is real.
    """
    languages: Counter = Counter()
    lines = 0
    for path, content in _sample_sources(root):
        language = LANGUAGE_MAP.get(path.suffix.lower())
        if language:
            languages[language] += 1
        lines += content.count("\n") + 1

    return CodebaseAnalysis(
        languages=[lang for lang, _ in languages.most_common()],
        frameworks=detect_frameworks(root),
        complexity={
            "cyclomatic": NOT_MEASURED,
            "cognitive": NOT_MEASURED,
            "lines": float(lines),
        },
        concepts=[],
    )


# =============================================================================
# Project structure
# =============================================================================

ENTRY_POINT_CANDIDATES = [
    # (framework keyword, entry type, framework label, relative paths)
    (("react", "next"), "web", "react",
     ["src/index.tsx", "src/index.jsx", "src/App.tsx", "src/App.jsx", "pages/_app.tsx", "pages/_app.js"]),
    (("express", "node"), "api", "express",
     ["server.js", "app.js", "index.js", "src/server.ts", "src/app.ts", "src/index.ts"]),
    (("fastapi", "flask", "django"), "api", None,
     ["main.py", "app.py", "server.py", "api/main.py", "manage.py"]),
    (("svelte",), "web", "svelte",
     ["src/routes/+page.svelte", "src/main.ts", "src/main.js"]),
]

CLI_ENTRY_CANDIDATES = ["cli.js", "bin/cli.js", "src/cli.ts", "src/cli.js", "cli.py", "__main__.py"]


def _inside(root: Path, relative: str) -> Optional[Path]:
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        logger.warning(f"Path traversal rejected: {relative}")
        return None
    return candidate


def detect_entry_points(root: str, frameworks: list[str]) -> list[dict]:
    """Find conventional entry files for the detected frameworks plus CLIs."""
    base = Path(root).resolve()
    lowered = [f.lower() for f in frameworks]
    entry_points = []

    for keywords, entry_type, label, candidates in ENTRY_POINT_CANDIDATES:
        matched = next((f for f in lowered if any(k in f for k in keywords)), None)
        if matched is None:
            continue
        for relative in candidates:
            path = _inside(base, relative)
            if path is not None and path.is_file():
                entry_points.append({
                    "type": entry_type,
                    "file_path": relative,
                    "framework": label or matched,
                })

    for relative in CLI_ENTRY_CANDIDATES:
        path = _inside(base, relative)
        if path is not None and path.is_file():
            entry_points.append({"type": "cli", "file_path": relative, "framework": None})

    return entry_points


KEY_DIRECTORY_TYPES = [
    ("src/components", "components"),
    ("src/utils", "utils"),
    ("src/services", "services"),
    ("src/api", "api"),
    ("src/auth", "auth"),
    ("src/models", "models"),
    ("src/views", "views"),
    ("src/pages", "pages"),
    ("src/lib", "library"),
    ("lib", "library"),
    ("utils", "utils"),
    ("middleware", "middleware"),
    ("routes", "routes"),
]


def count_files(directory: Path, max_depth: int = 5) -> int:
    total = 0
    base_depth = len(directory.parts)
    for dirpath, dirnames, filenames in os.walk(directory):
        if len(Path(dirpath).parts) - base_depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = [d for d in dirnames if not should_skip_dir(d)]
        total += len(filenames)
    return total


def map_key_directories(root: str) -> list[dict]:
    """Conventional directories that exist in the project, with file counts."""
    base = Path(root).resolve()
    directories = []
    for relative, dir_type in KEY_DIRECTORY_TYPES:
        path = _inside(base, relative)
        if path is not None and path.is_dir():
            directories.append({
                "path": relative,
                "type": dir_type,
                "file_count": count_files(path),
            })
    return directories


# =============================================================================
# Feature maps
# =============================================================================

FEATURE_DIRECTORIES = {
    "authentication": ["auth", "authentication"],
    "api": ["api", "routes", "endpoints", "controllers"],
    "database": ["db", "database", "models", "schemas", "migrations", "storage"],
    "ui-components": ["components", "ui"],
    "views": ["views", "pages", "screens"],
    "services": ["services", "api-clients"],
    "utilities": ["utils", "helpers", "lib"],
    "testing": ["tests", "__tests__", "test"],
    "configuration": ["config", ".config", "settings"],
    "middleware": ["middleware", "middlewares"],
}

def _collect_sources(directory: Path, root: Path) -> list[str]:
    return sorted(str(p.relative_to(root)) for p in iter_source_files(str(directory)))


def build_feature_map(root: str) -> list[FeatureMap]:
    """Group source files into features by directory naming conventions.

    The first half of each feature's files (sorted) are primary, the rest
    related.
    """
    base = Path(root).resolve()
    features = []
    for feature_name, directories in FEATURE_DIRECTORIES.items():
        files: list[str] = []
        for directory in directories:
            for relative in (f"src/{directory}", directory):
                path = _inside(base, relative)
                if path is None or not path.is_dir():
                    continue
                for f in _collect_sources(path, base):
                    if f not in files:
                        files.append(f)
        if not files:
            continue
        split = (len(files) + 1) // 2
        features.append(FeatureMap(
            feature_name=feature_name,
            primary_files=files[:split],
            related_files=files[split:],
            dependencies=[],
            id=uuid.uuid4().hex,
        ))
    return features


# =============================================================================
# Relevance scoring
# =============================================================================

WORD_RE = re.compile(r"[a-z0-9]+")


def score_pattern(problem: str, pattern: Pattern) -> float:
    """
    Keyword overlap between a problem description and a stored pattern.

    Pattern type words and description words count once each; longer words
    weigh more. Confidence and (log-damped) frequency break ties.
    """
    words = set(WORD_RE.findall(problem.lower()))
    if not words:
        return 0.0

    score = 0.0
    pattern_words = set(WORD_RE.findall(pattern.type.lower().replace("_", " ")))
    pattern_words |= set(WORD_RE.findall(pattern.description.lower()))
    for word in pattern_words & words:
        if len(word) > 2:
            score += len(word) / 10

    for context in pattern.contexts:
        if context.lower() in words:
            score += 0.5

    if score == 0.0:
        return 0.0
    return score + pattern.confidence + min(pattern.frequency, 100) / 1000