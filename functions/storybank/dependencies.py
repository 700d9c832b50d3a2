"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from storybank.config import get_settings
from storybank.db import DbClient, InMemoryDbClient, PostgresDbClient
from storybank.repository import HierarchyRepository

_db_client: DbClient | None = None
_repository: HierarchyRepository | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so the in-memory store persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_repository() -> HierarchyRepository:
    global _repository
    if _repository:
        return _repository
    _repository = HierarchyRepository(get_db_client())
    return _repository
