#!/usr/bin/env python3
"""
Mnemo MCP Server
Resilient codebase intelligence

Exposes concept/pattern analysis, learning, staleness status and file
watching as MCP tools. Every analyzer-backed answer carries a quality
flag: "degraded" means a local heuristic stood in for the analyzer.
"""

import asyncio
import logging
from typing import Any, Optional

from dotenv import load_dotenv
from mcp.server.fastmcp import Context, FastMCP

from mnemo.errors import MnemoError, ValidationError
from mnemo.settings import Settings, load_settings
from mnemo.storage import PostgresDatabase

# Load environment variables
load_dotenv()

logger = logging.getLogger("mnemo-server")

# =============================================================================
# MCP Server Setup
# =============================================================================

mcp = FastMCP(
    name="mnemo-server",
)

_settings: Optional[Settings] = None
_service = None


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=getattr(logging, settings.logging.level.upper()))


def get_service():
    """Get or build the IntelligenceService (singleton)."""
    global _settings, _service
    if _service is None:
        from mnemo.service import IntelligenceService

        if _settings is None:
            _settings = load_settings()
        database = PostgresDatabase()
        database.ensure_schema()
        _service = IntelligenceService(_settings, database)
        _service.start()
        logger.info("Intelligence service ready")
    return _service


def _error(e: Exception) -> dict[str, Any]:
    if isinstance(e, MnemoError):
        logger.warning(f"{e.code}: {e.message}")
        return e.to_dict()
    logger.error(f"Unexpected error: {e}", exc_info=True)
    return {"success": False, "error": str(e), "code": "INTERNAL_ERROR"}


def _progress_reporter(ctx: Optional[Context]):
    """Adapt engine progress callbacks to MCP progress notifications."""
    pending: set[asyncio.Future] = set()

    def done(task: asyncio.Future) -> None:
        pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Progress notification failed: {task.exception()}")

    def report(current: int, total: int, message: str) -> None:
        logger.info(f"Learning progress {current}/{total}: {message}")
        if ctx is None:
            return
        task = asyncio.ensure_future(
            ctx.report_progress(progress=current, total=total, message=message)
        )
        pending.add(task)
        task.add_done_callback(done)

    return report


# =============================================================================
# Analysis Tools
# =============================================================================

@mcp.tool()
async def analyze_codebase(path: str) -> dict[str, Any]:
    """
    Analyze a project: languages, frameworks, complexity, concepts,
    entry points and key directories.

    Args:
        path: Project root directory

    Returns:
        Dictionary with value, quality ("normal" or "degraded") and errors
    """
    try:
        service = get_service()
        result = await service.semantic.analyze_codebase(path)
        return {"success": True, **result.to_dict()}
    except Exception as e:
        return _error(e)


@mcp.tool()
async def analyze_file(path: str, content: Optional[str] = None) -> dict[str, Any]:
    """
    Extract concepts and coding patterns from one file.

    Args:
        path: File path
        content: File content (read from disk when omitted)

    Returns:
        Dictionary with concepts and patterns, each carrying a quality flag
    """
    try:
        if content is None:
            try:
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    content = f.read()
            except OSError as e:
                raise ValidationError("path", f"cannot read file: {e}") from e

        service = get_service()
        concepts = await service.semantic.analyze_file_content(path, content)
        patterns = await service.patterns.analyze_file_patterns(path, content)
        return {
            "success": True,
            "path": path,
            "concepts": concepts.to_dict(),
            "patterns": patterns.to_dict(),
        }
    except Exception as e:
        return _error(e)


# =============================================================================
# Learning Tools
# =============================================================================

@mcp.tool()
async def learn_codebase_intelligence(path: str, ctx: Context = None) -> dict[str, Any]:
    """
    Learn concepts, patterns and feature maps for a project and store them.

    Runs under a hard time budget; on expiry the result is an error that
    lists likely causes.

    Args:
        path: Project root directory

    Returns:
        Per-kind summary: quality, learned, persisted, persist_failures
    """
    try:
        return await get_service().learn(path, _progress_reporter(ctx))
    except Exception as e:
        return _error(e)


@mcp.tool()
async def get_learning_status(path: str) -> dict[str, Any]:
    """
    Report whether stored intelligence exists and is still current.

    Args:
        path: Project root directory

    Returns:
        has_intelligence, is_stale, staleness details and a recommendation
    """
    try:
        return {"success": True, **await get_service().learning_status(path)}
    except Exception as e:
        return _error(e)


@mcp.tool()
async def auto_learn_if_needed(
    path: str,
    force: bool = False,
    skip_learning: bool = False,
    ctx: Context = None,
) -> dict[str, Any]:
    """
    Learn only when there is no stored intelligence or it is stale.

    Args:
        path: Project root directory
        force: Learn even if intelligence is current
        skip_learning: Only report status

    Returns:
        action ("learned" or "skipped"), reason and status or result
    """
    try:
        result = await get_service().auto_learn_if_needed(
            path, force=force, skip_learning=skip_learning, progress=_progress_reporter(ctx)
        )
        return {"success": True, **result}
    except Exception as e:
        return _error(e)


# =============================================================================
# Pattern Tools
# =============================================================================

@mcp.tool()
async def get_pattern_recommendations(problem_description: str, limit: int = 5) -> dict[str, Any]:
    """
    Recommend stored coding patterns relevant to a problem description.

    Args:
        problem_description: What you are about to implement
        limit: Maximum number of patterns

    Returns:
        Ranked patterns with relevance scores plus pattern statistics
    """
    if not problem_description or not problem_description.strip():
        return ValidationError("problem_description", "cannot be empty").to_dict()
    if limit < 1:
        return ValidationError("limit", "must be at least 1").to_dict()
    try:
        service = get_service()
        return {
            "success": True,
            "patterns": await service.patterns.find_relevant_patterns(problem_description, limit),
            "statistics": await service.patterns.pattern_statistics(),
        }
    except Exception as e:
        return _error(e)


@mcp.tool()
async def get_feature_map(path: str, refresh: bool = False) -> dict[str, Any]:
    """
    Map project features to their primary and related files.

    Args:
        path: Project root directory
        refresh: Rebuild and store the map even if one is stored

    Returns:
        Feature maps, their source ("stored" or "built") and quality
    """
    try:
        service = get_service()
        project = service.resolve_project(path)
        if not refresh:
            stored = await asyncio.get_running_loop().run_in_executor(
                None, service.database.get_feature_maps, project
            )
            if stored:
                for row in stored:
                    if row.get("created_at") is not None:
                        row["created_at"] = row["created_at"].isoformat()
                return {"success": True, "source": "stored", "features": stored}
        result = await service.patterns.build_feature_map(project, persist=True)
        return {"success": True, "source": "built", **result.to_dict()}
    except Exception as e:
        return _error(e)


# =============================================================================
# Watching / Monitoring Tools
# =============================================================================

@mcp.tool()
async def start_watching(path: str) -> dict[str, Any]:
    """
    Watch a project for file changes and keep analysis caches current.

    Args:
        path: Project root directory
    """
    try:
        return await get_service().start_watching(path)
    except Exception as e:
        return _error(e)


@mcp.tool()
async def stop_watching(path: str) -> dict[str, Any]:
    """
    Stop watching a project.

    Args:
        path: Project root directory
    """
    try:
        return await get_service().stop_watching(path)
    except Exception as e:
        return _error(e)


@mcp.tool()
async def get_system_status() -> dict[str, Any]:
    """
    Circuit breaker, cache, watcher and change analysis status.
    """
    try:
        return {"success": True, **get_service().system_status()}
    except Exception as e:
        return _error(e)


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """Run the MCP server."""
    global _settings
    _settings = load_settings()
    configure_logging(_settings)
    logger.info("Starting Mnemo MCP Server...")
    mcp.run()


if __name__ == "__main__":
    main()
