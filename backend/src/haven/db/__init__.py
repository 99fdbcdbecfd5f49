"""Store implementations and the process-wide default instance."""

from haven.config import settings
from haven.db.base import Store
from haven.db.memory import InMemoryStore


def create_store() -> Store:
    """Pick the store backend from settings."""
    if settings.use_postgres:
        from haven.db.postgres import Database

        return Database()
    return InMemoryStore()


# Global store instance
db: Store = create_store()

__all__ = ["Store", "InMemoryStore", "create_store", "db"]
