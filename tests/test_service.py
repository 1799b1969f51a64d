"""Tests for IntelligenceService: status, auto-learning and watching."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mnemo.errors import ProjectNotFoundError
from mnemo.models import ChangeKind, FileChangeRecord, WatcherEvent
from mnemo.service import IntelligenceService
from mnemo.settings import Settings, WatcherSettings
from mnemo.watch.watcher import FileWatcher


@pytest.fixture
def make_service(database, make_factory, fake_source):
    def build(kind="ok"):
        factory = make_factory(kind)
        settings = Settings(watcher=WatcherSettings(debounce_ms=20))
        return IntelligenceService(
            settings,
            database,
            analyzer_factory=factory,
            watcher_factory=lambda root, s: FileWatcher.from_settings(root, s, source_factory=fake_source),
        )
    return build


@pytest.fixture
def sibling(tmp_path):
    """A second project next to the sample one."""
    root = tmp_path / "sibling"
    (root / "lib").mkdir(parents=True)
    (root / "lib" / "core.py").write_text("def run_job():\n    return 1\n")
    return root


def age_rows(database, seconds):
    then = datetime.now(timezone.utc) - timedelta(seconds=seconds)
    for row in list(database.concepts.values()) + list(database.patterns.values()):
        row["created_at"] = then


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestLearningStatus:
    """Status and recommendations."""

    @pytest.mark.asyncio
    async def test_no_intelligence(self, project, make_service):
        service = make_service()
        status = await service.learning_status(str(project))
        assert status["has_intelligence"] is False
        assert status["is_stale"] is False
        assert status["recommendation"] == "learning_recommended"
        assert status["code_files_in_project"] == 3
        assert status["message"] == "Learning recommended. Found 3 code files to analyze."

    @pytest.mark.asyncio
    async def test_ready_after_learning(self, project, make_service):
        service = make_service()
        result = await service.learn(str(project))
        assert result["concepts"]["persisted"] == 3
        assert result["patterns"]["persisted"] == 2
        assert result["feature_maps"]["count"] == 1

        status = await service.learning_status(str(project))
        assert status["has_intelligence"] is True
        assert status["is_stale"] is False
        assert status["recommendation"] == "ready"
        assert status["staleness"]["reason"] == "within staleness buffer"

    @pytest.mark.asyncio
    async def test_status_scoped_to_project(self, project, sibling, make_service):
        service = make_service()
        await service.learn(str(project))

        status = await service.learning_status(str(sibling))
        assert status["has_intelligence"] is False
        assert status["concepts_stored"] == 0
        assert status["recommendation"] == "learning_recommended"

        auto = await service.auto_learn_if_needed(str(sibling))
        assert auto["action"] == "learned"
        assert auto["reason"] == "no intelligence"

        assert (await service.learning_status(str(project)))["concepts_stored"] == 3
        assert (await service.learning_status(str(sibling)))["concepts_stored"] == 3

    @pytest.mark.asyncio
    async def test_usage_updates_do_not_refresh_staleness(self, project, database, make_service):
        service = make_service()
        await service.learn(str(project))
        age_rows(database, 3600)
        assert (await service.learning_status(str(project)))["is_stale"] is True

        app = project / "app.py"
        content = app.read_text() + "\n\ndef health_check():\n    return True\n"
        app.write_text(content)
        await service.handle_change(FileChangeRecord(ChangeKind.MODIFY, str(app), "python", "h", content=content))

        assert database.pattern("ts_snake_case_function_naming", str(project))["frequency"] == 4
        status = await service.learning_status(str(project))
        assert status["is_stale"] is True
        assert status["recommendation"] == "learning_recommended"

    @pytest.mark.asyncio
    async def test_missing_project(self, tmp_path, make_service):
        with pytest.raises(ProjectNotFoundError):
            await make_service().learning_status(str(tmp_path / "missing"))


class TestAutoLearn:
    """Learn only when needed."""

    @pytest.mark.asyncio
    async def test_learns_then_skips(self, project, make_service):
        service = make_service()

        first = await service.auto_learn_if_needed(str(project))
        assert first["action"] == "learned"
        assert first["reason"] == "no intelligence"

        second = await service.auto_learn_if_needed(str(project))
        assert second["action"] == "skipped"
        assert second["reason"] == "intelligence is up to date"

        forced = await service.auto_learn_if_needed(str(project), force=True)
        assert forced["action"] == "learned"
        assert forced["reason"] == "forced"

    @pytest.mark.asyncio
    async def test_skip_learning(self, project, database, make_service):
        result = await make_service().auto_learn_if_needed(str(project), skip_learning=True)
        assert result["action"] == "skipped"
        assert result["status"]["has_intelligence"] is False
        assert database.concepts == {}

    @pytest.mark.asyncio
    async def test_degraded_learning_reported(self, project, make_service):
        result = await make_service("failing").auto_learn_if_needed(str(project))
        assert result["result"]["concepts"]["quality"] == "degraded"
        assert result["result"]["patterns"]["quality"] == "degraded"


class TestWatching:
    """Watcher wiring into the engines."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, project, make_service):
        service = make_service()
        started = await service.start_watching(str(project))
        assert started == {"success": True, "path": str(project), "already_watching": False}
        assert (await service.start_watching(str(project)))["already_watching"] is True
        assert str(project) in service.system_status()["watchers"]

        assert (await service.stop_watching(str(project)))["success"] is True
        assert (await service.stop_watching(str(project)))["success"] is False
        await service.close()

    @pytest.mark.asyncio
    async def test_changes_reach_engines(self, project, make_service):
        service = make_service()
        await service.semantic.analyze_codebase(str(project))
        await service.start_watching(str(project))
        watcher = service._watchers[str(project)]

        path = project / "utils" / "helpers.py"
        path.write_text("def format_name(first, last):\n    return f'{first} {last}'\n")
        watcher.notify(ChangeKind.MODIFY, str(path))

        await wait_until(lambda: service.changes_processed == 1)
        assert f"codebase:{project}" not in service.semantic.cache.keys()
        assert service.system_status()["change_analysis"]["analyzed"] == 1
        await service.close()

    @pytest.mark.asyncio
    async def test_engine_failure_does_not_stop_processing(self, make_service, monkeypatch):
        service = make_service()

        async def broken(record):
            raise RuntimeError("boom")

        monkeypatch.setattr(service.semantic, "update_from_change", broken)
        record = FileChangeRecord(ChangeKind.DELETE, "/p/a.py", "python")
        await service.handle_change(record)
        await service.handle_change(record)
        assert service.changes_processed == 2

    @pytest.mark.asyncio
    async def test_system_status(self, make_service):
        status = make_service().system_status()
        assert set(status["engines"]) == {"semantic", "pattern"}
        assert status["engines"]["semantic"]["circuit_breaker"]["name"] == "semantic"
        assert status["engines"]["pattern"]["cache"]["name"] == "pattern"
        assert status["changes_processed"] == 0
        assert status["change_analysis"]["analyzed"] == 0

    @pytest.mark.asyncio
    async def test_handle_change_returns_analysis(self, project, database, make_service):
        service = make_service()
        await service.learn(str(project))
        app = project / "app.py"
        content = app.read_text()

        analysis = await service.handle_change(
            FileChangeRecord(ChangeKind.MODIFY, str(app), "python", "h", content=content), str(project)
        )
        assert analysis.affected_concepts == ["UserService"]
        assert analysis.suggested_actions == ["Review related tests", "Check for breaking changes"]
        assert analysis.scope.value == "file"

        status = service.system_status()["change_analysis"]
        assert status["analyzed"] == 1
        assert status["recent"][0]["change"]["path"] == str(app)

    @pytest.mark.asyncio
    async def test_queued_changes_analyzed_in_one_batch(self, project, make_service):
        service = make_service()
        queue = asyncio.Queue()
        for name in ("app.py", "utils/helpers.py", "tests/test_helpers.py"):
            record = FileChangeRecord(ChangeKind.DELETE, str(project / name), "python")
            queue.put_nowait(WatcherEvent(topic="file:change", change=record))
        queue.put_nowait(WatcherEvent(topic="watcher:error", error="inotify event queue overflowed"))

        consumer = asyncio.create_task(service._consume(str(project), queue))
        await wait_until(lambda: service.changes_processed == 3)
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

        stats = service.changes.stats()
        assert stats["batches"] == 1
        assert stats["by_scope"]["module"] == 1
