"""Project graph stores plus the per-project locks that serialize merges."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, runtime_checkable

from curricore.core.pedagogy import ProjectGraph


@runtime_checkable
class ProjectGraphStore(Protocol):
    def load(self, project_id: str) -> Optional[ProjectGraph]:
        ...

    def save(self, graph: ProjectGraph) -> None:
        ...


class ProjectLocks:
    """Hands out one lock per project id so concurrent merges never interleave."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, project_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[project_id] = lock
            return lock

    @contextmanager
    def hold(self, project_id: str) -> Iterator[None]:
        with self.lock_for(project_id):
            yield


class InMemoryProjectGraphStore:
    """Keeps serialized copies so callers can never mutate stored graphs in place."""

    def __init__(self) -> None:
        self._graphs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self, project_id: str) -> Optional[ProjectGraph]:
        with self._lock:
            payload = self._graphs.get(project_id)
        return ProjectGraph.model_validate_json(payload) if payload is not None else None

    def save(self, graph: ProjectGraph) -> None:
        with self._lock:
            self._graphs[graph.project_id] = graph.model_dump_json()

    def project_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._graphs)


class SQLiteProjectGraphStore:
    """SQLite-backed store; each save is a single upsert transaction."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        """Create a connection, ensuring the parent directory exists."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path)

    def _ensure_schema(self) -> None:
        schema_sql = Path(__file__).with_name("schema.sql").read_text(encoding="utf-8")
        with self._connect() as con:
            con.executescript(schema_sql)

    def load(self, project_id: str) -> Optional[ProjectGraph]:
        with self._connect() as con:
            row = con.execute("SELECT payload FROM project_graphs WHERE project_id = ?", (project_id,)).fetchone()
        if row is None:
            return None
        return ProjectGraph.model_validate_json(row[0])

    def save(self, graph: ProjectGraph) -> None:
        payload = graph.model_dump_json()
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO project_graphs (project_id, payload) VALUES (?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    payload = excluded.payload,
                    revision = project_graphs.revision + 1,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (graph.project_id, payload),
            )
            con.executemany(
                "INSERT OR IGNORE INTO project_sources (project_id, source_id) VALUES (?, ?)",
                [(graph.project_id, source_id) for source_id in graph.source_ids],
            )
            con.commit()

    def revision(self, project_id: str) -> int:
        with self._connect() as con:
            row = con.execute("SELECT revision FROM project_graphs WHERE project_id = ?", (project_id,)).fetchone()
        return int(row[0]) if row else 0

    def source_ids(self, project_id: str) -> List[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT source_id FROM project_sources WHERE project_id = ? ORDER BY added_at, source_id",
                (project_id,),
            ).fetchall()
        return [row[0] for row in rows]


__all__ = ["InMemoryProjectGraphStore", "ProjectGraphStore", "ProjectLocks", "SQLiteProjectGraphStore"]
