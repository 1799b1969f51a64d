"""
Mnemo Test Configuration - Shared Fixtures

Provides an in-memory database, scripted analyzers (healthy, failing,
hanging), a fake raw event source for the watcher and a small sample
project on disk. Nothing here needs PostgreSQL or tree-sitter.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from mnemo.core.cache import AnalysisCache
from mnemo.core.circuit_breaker import CircuitBreaker
from mnemo.errors import DatabaseError

pytest_plugins = ('pytest_asyncio',)


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# Database
# =============================================================================

class InMemoryDatabase:
    """Database protocol over dicts. Names in ``fail_on`` fail to insert.

    Concept and pattern rows are keyed by ``(project_path, id)``. Their
    ``created_at`` is the last learn write: every insert refreshes it and
    usage updates leave it alone.
    """

    def __init__(self):
        self.concepts: dict[tuple[str, str], dict] = {}
        self.patterns: dict[tuple[str, str], dict] = {}
        self.feature_maps: dict[tuple[str, str], dict] = {}
        self.fail_on: set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise DatabaseError("insert", f"constraint violated for {name}")

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def insert_concept(self, concept, project_path: str = "") -> None:
        self._check(concept.name)
        key = concept.id or f"{concept.file_path}:{concept.name}:{concept.line_range.start}"
        row = concept.to_dict()
        row.update(id=key, project_path=project_path, created_at=self._now())
        self.concepts[(project_path, key)] = row

    def insert_pattern(self, pattern, project_path: str = "") -> None:
        self._check(pattern.type)
        key = pattern.id or pattern.type
        row = pattern.to_dict()
        row.update(id=key, project_path=project_path, created_at=self._now())
        self.patterns[(project_path, key)] = row

    def update_pattern_frequency(self, project_path: str, pattern_id: str, frequency: int) -> None:
        row = self.patterns.get((project_path, pattern_id))
        if row is not None:
            row["frequency"] = frequency

    def pattern(self, pattern_id: str, project_path: str = "") -> dict:
        return self.patterns[(project_path, pattern_id)]

    def get_concepts(self, project_path=None) -> list[dict]:
        return [
            dict(r) for (path, _), r in self.concepts.items()
            if project_path is None or path == project_path
        ]

    def get_patterns(self, type_filter=None, project_path=None) -> list[dict]:
        return [
            dict(r) for (path, _), r in self.patterns.items()
            if (type_filter is None or r["type"] == type_filter)
            and (project_path is None or path == project_path)
        ]

    def insert_feature_map(self, project_path: str, feature) -> None:
        self._check(feature.feature_name)
        row = feature.to_dict()
        row["created_at"] = self._now()
        self.feature_maps[(project_path, feature.feature_name)] = row

    def get_feature_maps(self, project_path: str) -> list[dict]:
        return [
            dict(row) for (path, _), row in sorted(self.feature_maps.items())
            if path == project_path
        ]


@pytest.fixture
def database():
    return InMemoryDatabase()


# =============================================================================
# Analyzers
# =============================================================================

class FakeAnalyzer:
    """Healthy analyzer returning fixed, well-formed payloads."""

    def __init__(self):
        self.calls: list[str] = []

    async def analyze_file(self, path, content):
        self.calls.append("analyze_file")
        return [{
            "name": "UserService",
            "type": "class",
            "confidence": 0.9,
            "file_path": path,
            "line_range": {"start": 1, "end": 10},
        }]

    async def analyze_codebase(self, path):
        self.calls.append("analyze_codebase")
        return {
            "languages": ["python"],
            "frameworks": ["flask"],
            "complexity": {"cyclomatic": 2.0, "cognitive": 1.5, "lines": 40},
            "concepts": [],
        }

    async def learn_from_codebase(self, path):
        self.calls.append("learn_from_codebase")
        return [
            {
                "name": f"Concept{i}",
                "type": "function",
                "confidence": 0.85,
                "filePath": f"{path}/module{i}.py",
                "lineRange": {"start": i, "end": i + 3},
            }
            for i in range(3)
        ]

    async def analyze_file_patterns(self, path, content):
        self.calls.append("analyze_file_patterns")
        return [{
            "type": "snake_case_function_naming",
            "description": "Functions use snake_case naming convention",
            "confidence": 0.95,
            "frequency": 2,
        }]

    async def extract_patterns(self, path):
        self.calls.append("extract_patterns")
        return await self.learn_patterns(path)

    async def learn_patterns(self, path):
        self.calls.append("learn_patterns")
        return [
            {
                "id": "ts_snake_case_function_naming",
                "type": "snake_case_function_naming",
                "description": "Functions use snake_case naming convention",
                "confidence": 0.95,
                "frequency": 3,
                "contexts": ["python"],
            },
            {
                "id": "ts_testing",
                "patternType": "testing",
                "description": "Test functions named with a test prefix",
                "confidence": 0.9,
                "frequency": 1,
                "contexts": ["python"],
            },
        ]

    async def build_feature_map(self, path):
        self.calls.append("build_feature_map")
        return [{
            "featureName": "utils",
            "primaryFiles": ["utils/helpers.py"],
            "relatedFiles": [],
            "dependencies": [],
        }]


class FailingAnalyzer:
    """Every call raises."""

    def __init__(self):
        self.calls: list[str] = []

    async def _fail(self, method):
        self.calls.append(method)
        raise RuntimeError("analyzer crashed")

    async def analyze_file(self, path, content):
        return await self._fail("analyze_file")

    async def analyze_codebase(self, path):
        return await self._fail("analyze_codebase")

    async def learn_from_codebase(self, path):
        return await self._fail("learn_from_codebase")

    async def analyze_file_patterns(self, path, content):
        return await self._fail("analyze_file_patterns")

    async def extract_patterns(self, path):
        return await self._fail("extract_patterns")

    async def learn_patterns(self, path):
        return await self._fail("learn_patterns")

    async def build_feature_map(self, path):
        return await self._fail("build_feature_map")


class HangingAnalyzer(FailingAnalyzer):
    """Every call blocks far longer than any test timeout."""

    async def _fail(self, method):
        self.calls.append(method)
        await asyncio.sleep(3600)


ANALYZERS = {
    "ok": FakeAnalyzer,
    "failing": FailingAnalyzer,
    "hanging": HangingAnalyzer,
}


class AnalyzerFactory:
    """Async analyzer factory; the first ``init_failures`` calls raise."""

    def __init__(self, kind: str = "ok", init_failures: int = 0):
        self.analyzer_cls = ANALYZERS[kind]
        self.init_failures = init_failures
        self.calls = 0
        self.instances: list[FakeAnalyzer] = []

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.calls <= self.init_failures:
            raise RuntimeError("grammar install missing")
        analyzer = self.analyzer_cls()
        self.instances.append(analyzer)
        return analyzer

    @property
    def analyzer(self) -> FakeAnalyzer:
        return self.instances[-1]


@pytest.fixture
def make_factory():
    return AnalyzerFactory


@pytest.fixture
def make_engine(database, clock):
    """Build an engine with a fast, fake-clocked breaker and cache."""

    def build(
        engine_cls,
        factory,
        *,
        failure_threshold: int = 3,
        request_timeout: float = 1.0,
        learn_timeout: float = 5.0,
    ):
        return engine_cls(
            database,
            factory,
            breaker=CircuitBreaker(
                failure_threshold=failure_threshold,
                recovery_timeout=5.0,
                request_timeout=request_timeout,
                monitoring_window=60.0,
                name=engine_cls.name,
                clock=clock,
            ),
            cache=AnalysisCache(ttl=60.0, clock=clock, name=engine_cls.name),
            learn_timeout=learn_timeout,
            progress_interval=0.01,
        )

    return build


# =============================================================================
# Watcher
# =============================================================================

class FakeSource:
    """Stand-in for InotifyWatcher; tests drive FileWatcher.notify directly."""

    def __init__(self, project_path, ignore_patterns=()):
        self.project_path = project_path
        self.ignore_patterns = ignore_patterns
        self.on_event = None
        self.on_error = None
        self.running = False

    async def start(self, on_event, on_error=None):
        self.on_event = on_event
        self.on_error = on_error
        self.running = True

    async def stop(self):
        self.running = False


@pytest.fixture
def fake_source():
    return FakeSource


# =============================================================================
# Sample project
# =============================================================================

SAMPLE_FILES = {
    "requirements.txt": "flask>=3.0\n",
    "app.py": (
        "from flask import Flask\n"
        "\n"
        "app = Flask(__name__)\n"
        "\n"
        "\n"
        "@app.get('/users')\n"
        "def list_users():\n"
        "    return []\n"
    ),
    "utils/helpers.py": (
        "def format_name(first, last):\n"
        "    return first + ' ' + last\n"
        "\n"
        "\n"
        "class NameFormatter:\n"
        "    pass\n"
    ),
    "tests/test_helpers.py": (
        "from utils.helpers import format_name\n"
        "\n"
        "\n"
        "def test_format_name():\n"
        "    assert format_name('a', 'b') == 'a b'\n"
    ),
    "node_modules/lib/index.js": "function ignored() {}\n",
}


@pytest.fixture
def project(tmp_path):
    """A small Flask project with three Python source files."""
    root = tmp_path / "project"
    for relative, content in SAMPLE_FILES.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root
