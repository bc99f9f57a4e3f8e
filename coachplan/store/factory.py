from loguru import logger

from coachplan.config.settings import settings
from coachplan.core.logger import setup_logger
from coachplan.store.base import DocumentStore, IndexConfig

_store: DocumentStore | None = None


def build_store(backend: str | None = None) -> DocumentStore:
    """Create a document store for the configured backend.

    Args:
        backend: "sql" or "memory"; defaults to settings.store_backend

    Returns:
        A new store instance using settings.indexed_fields as its index config
    """
    backend = backend or settings.store_backend
    index_config = IndexConfig(settings.indexed_field_map())
    if backend == "memory":
        from coachplan.store.memory import InMemoryDocumentStore

        logger.info("Using in-memory document store")
        return InMemoryDocumentStore(index_config)

    from coachplan.store.sql import SqlDocumentStore

    logger.info("Using SQL document store")
    return SqlDocumentStore(index_config)


def get_store() -> DocumentStore:
    """Process-wide store singleton (lazy). Configures logging on first use."""
    global _store
    if _store is None:
        setup_logger()
        _store = build_store()
    return _store
