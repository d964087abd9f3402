"""Persistence for project-level concept graphs."""

from .storage import InMemoryProjectGraphStore, ProjectGraphStore, ProjectLocks, SQLiteProjectGraphStore

__all__ = ["InMemoryProjectGraphStore", "ProjectGraphStore", "ProjectLocks", "SQLiteProjectGraphStore"]
