"""
MCP Tool Tests

Tool functions are called directly with an in-memory service behind them.
"""
import pytest

from mnemo import server
from mnemo.service import IntelligenceService
from mnemo.settings import Settings


@pytest.fixture
def service(database, make_factory, monkeypatch):
    service = IntelligenceService(Settings(), database, analyzer_factory=make_factory())
    monkeypatch.setattr(server, "_service", service)
    return service


class TestAnalysisTools:
    """analyze_codebase, analyze_file."""

    @pytest.mark.asyncio
    async def test_analyze_file_reads_disk(self, project, service):
        result = await server.analyze_file(str(project / "utils" / "helpers.py"))
        assert result["success"] is True
        assert result["concepts"]["quality"] == "normal"
        assert result["patterns"]["value"][0]["type"] == "snake_case_function_naming"

    @pytest.mark.asyncio
    async def test_analyze_file_unreadable(self, tmp_path, service):
        result = await server.analyze_file(str(tmp_path / "missing.py"))
        assert result["success"] is False
        assert result["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_analyze_codebase(self, project, service):
        result = await server.analyze_codebase(str(project))
        assert result["success"] is True
        assert result["value"]["languages"] == ["python"]
        assert result["quality"] == "normal"

    @pytest.mark.asyncio
    async def test_analyze_codebase_missing_project(self, tmp_path, service):
        result = await server.analyze_codebase(str(tmp_path / "missing"))
        assert result == {
            "success": False,
            "error": f"Project path {tmp_path / 'missing'} does not exist or is not a directory",
            "code": "PROJECT_NOT_FOUND",
        }


class TestLearningTools:
    """learn_codebase_intelligence, get_learning_status, auto_learn_if_needed."""

    @pytest.mark.asyncio
    async def test_learn_then_status(self, project, service):
        learned = await server.learn_codebase_intelligence(str(project))
        assert learned["success"] is True
        assert learned["concepts"]["persisted"] == 3

        status = await server.get_learning_status(str(project))
        assert status["success"] is True
        assert status["recommendation"] == "ready"

    @pytest.mark.asyncio
    async def test_auto_learn(self, project, service):
        result = await server.auto_learn_if_needed(str(project), skip_learning=True)
        assert result["success"] is True
        assert result["action"] == "skipped"


class TestPatternTools:
    """get_pattern_recommendations, get_feature_map."""

    @pytest.mark.asyncio
    async def test_recommendations_validate_input(self, service):
        result = await server.get_pattern_recommendations("   ")
        assert result["code"] == "VALIDATION_ERROR"
        result = await server.get_pattern_recommendations("testing", limit=0)
        assert result["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_recommendations_after_learning(self, project, service):
        await server.learn_codebase_intelligence(str(project))
        result = await server.get_pattern_recommendations("python test functions")
        assert result["success"] is True
        assert result["patterns"][0]["id"] == "ts_testing"
        assert result["statistics"]["total_patterns"] == 2

    @pytest.mark.asyncio
    async def test_feature_map_built_then_stored(self, project, service):
        built = await server.get_feature_map(str(project))
        assert built["source"] == "built"
        assert built["value"][0]["feature_name"] == "utils"

        stored = await server.get_feature_map(str(project))
        assert stored["source"] == "stored"
        assert stored["features"][0]["feature_name"] == "utils"
        assert isinstance(stored["features"][0]["created_at"], str)

    @pytest.mark.asyncio
    async def test_feature_map_relative_path_uses_learned_rows(self, project, service, monkeypatch):
        await server.learn_codebase_intelligence(str(project))
        monkeypatch.chdir(project.parent)

        result = await server.get_feature_map(project.name)
        assert result["source"] == "stored"
        assert result["features"][0]["feature_name"] == "utils"


class TestStatusTools:
    """get_system_status."""

    @pytest.mark.asyncio
    async def test_system_status(self, service):
        result = await server.get_system_status()
        assert result["success"] is True
        assert result["engines"]["semantic"]["circuit_breaker"]["state"] == "CLOSED"

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_dicts(self, service, monkeypatch):
        def explode():
            raise RuntimeError("status backend exploded")

        monkeypatch.setattr(service, "system_status", explode)
        result = await server.get_system_status()
        assert result == {"success": False, "error": "status backend exploded", "code": "INTERNAL_ERROR"}
