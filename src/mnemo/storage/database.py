"""
Mnemo Persistence

The engines depend only on the synchronous ``Database`` protocol.
``PostgresDatabase`` implements it with psycopg2, opening a short-lived
connection per operation.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from mnemo.errors import DatabaseError
from mnemo.models import Concept, FeatureMap, Pattern

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


@runtime_checkable
class Database(Protocol):
    """Storage the engines need. Concepts and patterns are scoped by project_path."""

    def insert_concept(self, concept: Concept, project_path: str = "") -> None: ...

    def insert_pattern(self, pattern: Pattern, project_path: str = "") -> None: ...

    def update_pattern_frequency(self, project_path: str, pattern_id: str, frequency: int) -> None: ...

    def get_concepts(self, project_path: Optional[str] = None) -> list[dict[str, Any]]: ...

    def get_patterns(
        self,
        type_filter: Optional[str] = None,
        project_path: Optional[str] = None,
    ) -> list[dict[str, Any]]: ...

    def insert_feature_map(self, project_path: str, feature: FeatureMap) -> None: ...

    def get_feature_maps(self, project_path: str) -> list[dict[str, Any]]: ...


# =============================================================================
# Database Connection
# =============================================================================

def concept_id(concept: Concept) -> str:
    """Stable id so re-learning a project updates rows instead of duplicating them."""
    key = f"{concept.file_path}:{concept.type}:{concept.name}:{concept.line_range.start}"
    return uuid.uuid5(uuid.NAMESPACE_URL, key).hex


def get_db_connection(database_url: Optional[str] = None):
    """Create a new database connection."""
    database_url = database_url or os.getenv("DATABASE_URL")
    if not database_url:
        raise DatabaseError("connect", "DATABASE_URL environment variable not set")
    try:
        return psycopg2.connect(database_url, cursor_factory=RealDictCursor)
    except psycopg2.Error as e:
        raise DatabaseError("connect", str(e)) from e


def safe_close_connection(conn) -> None:
    """
    Close a connection, rolling back first.

    Commit must be called explicitly; anything left uncommitted is discarded.
    """
    if conn is None:
        return
    try:
        conn.rollback()
    except psycopg2.Error as e:
        logger.debug(f"Rollback before close failed: {e}")
    try:
        conn.close()
    except psycopg2.Error as e:
        logger.debug(f"Connection close failed: {e}")


class PostgresDatabase:
    """Database protocol backed by PostgreSQL."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url

    def _execute(self, operation: str, sql: str, params: tuple = (), fetch: bool = False):
        conn = get_db_connection(self.database_url)
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            rows = [dict(r) for r in cur.fetchall()] if fetch else None
            conn.commit()
            return rows
        except psycopg2.Error as e:
            raise DatabaseError(operation, str(e)) from e
        finally:
            safe_close_connection(conn)

    def ensure_schema(self) -> None:
        """Create tables if missing (idempotent)."""
        self._execute("ensure_schema", SCHEMA_PATH.read_text())
        logger.info("Database schema verified")

    def insert_concept(self, concept: Concept, project_path: str = "") -> None:
        self._execute(
            "insert_concept",
            """
            INSERT INTO semantic_concepts
                (project_path, id, name, concept_type, confidence, file_path,
                 line_start, line_end, relationships)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (project_path, id)
            DO UPDATE SET name = EXCLUDED.name,
                          concept_type = EXCLUDED.concept_type,
                          confidence = EXCLUDED.confidence,
                          file_path = EXCLUDED.file_path,
                          line_start = EXCLUDED.line_start,
                          line_end = EXCLUDED.line_end,
                          relationships = EXCLUDED.relationships,
                          learned_at = NOW(),
                          updated_at = NOW()
            """,
            (
                project_path,
                concept.id or concept_id(concept),
                concept.name,
                concept.type,
                concept.confidence,
                concept.file_path,
                concept.line_range.start,
                concept.line_range.end,
                Json(concept.relationships),
            ),
        )

    def insert_pattern(self, pattern: Pattern, project_path: str = "") -> None:
        self._execute(
            "insert_pattern",
            """
            INSERT INTO developer_patterns
                (project_path, id, pattern_type, description, frequency, confidence, contexts, examples)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (project_path, id)
            DO UPDATE SET pattern_type = EXCLUDED.pattern_type,
                          description = EXCLUDED.description,
                          frequency = EXCLUDED.frequency,
                          confidence = EXCLUDED.confidence,
                          contexts = EXCLUDED.contexts,
                          examples = EXCLUDED.examples,
                          learned_at = NOW(),
                          updated_at = NOW()
            """,
            (
                project_path,
                pattern.id or uuid.uuid4().hex,
                pattern.type,
                pattern.description,
                pattern.frequency,
                pattern.confidence,
                Json(pattern.contexts),
                Json(pattern.examples),
            ),
        )

    def update_pattern_frequency(self, project_path: str, pattern_id: str, frequency: int) -> None:
        """Record pattern usage without touching the learn timestamp."""
        self._execute(
            "update_pattern_frequency",
            """
            UPDATE developer_patterns
            SET frequency = %s, updated_at = NOW()
            WHERE project_path = %s AND id = %s
            """,
            (frequency, project_path, pattern_id),
        )

    # created_at reports learned_at: the last time learning wrote the row

    def get_concepts(self, project_path: Optional[str] = None) -> list[dict[str, Any]]:
        sql = """
            SELECT project_path, id, name, concept_type AS type, confidence, file_path,
                   line_start, line_end, relationships, learned_at AS created_at
            FROM semantic_concepts
        """
        params: tuple = ()
        if project_path is not None:
            sql += " WHERE project_path = %s"
            params = (project_path,)
        sql += " ORDER BY learned_at DESC"
        return self._execute("get_concepts", sql, params, fetch=True)

    def get_patterns(
        self,
        type_filter: Optional[str] = None,
        project_path: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        sql = """
            SELECT project_path, id, pattern_type AS type, description, frequency, confidence,
                   contexts, examples, learned_at AS created_at
            FROM developer_patterns
        """
        clauses = []
        params: list = []
        if type_filter:
            clauses.append("pattern_type = %s")
            params.append(type_filter)
        if project_path is not None:
            clauses.append("project_path = %s")
            params.append(project_path)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY frequency DESC, confidence DESC"
        return self._execute("get_patterns", sql, tuple(params), fetch=True)

    def insert_feature_map(self, project_path: str, feature: FeatureMap) -> None:
        self._execute(
            "insert_feature_map",
            """
            INSERT INTO feature_maps
                (id, project_path, feature_name, primary_files, related_files, dependencies)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (project_path, feature_name)
            DO UPDATE SET primary_files = EXCLUDED.primary_files,
                          related_files = EXCLUDED.related_files,
                          dependencies = EXCLUDED.dependencies
            """,
            (
                feature.id or uuid.uuid4().hex,
                project_path,
                feature.feature_name,
                Json(feature.primary_files),
                Json(feature.related_files),
                Json(feature.dependencies),
            ),
        )

    def get_feature_maps(self, project_path: str) -> list[dict[str, Any]]:
        return self._execute(
            "get_feature_maps",
            """
            SELECT id, feature_name, primary_files, related_files, dependencies, created_at
            FROM feature_maps
            WHERE project_path = %s
            ORDER BY feature_name
            """,
            (project_path,),
            fetch=True,
        )
