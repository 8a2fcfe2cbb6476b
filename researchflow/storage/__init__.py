"""SQLite-backed run state, completion cache and error log."""

from researchflow.storage.cache import CompletionCache, build_cache_key, fingerprint
from researchflow.storage.database import DEFAULT_DB_PATH, MEMORY_DB, create_schema, open_db
from researchflow.storage.error_log import record_error_log
from researchflow.storage.repository import RunRepository, StoredAnswer

__all__ = [
    "DEFAULT_DB_PATH",
    "MEMORY_DB",
    "open_db",
    "create_schema",
    "RunRepository",
    "StoredAnswer",
    "CompletionCache",
    "build_cache_key",
    "fingerprint",
    "record_error_log",
]
