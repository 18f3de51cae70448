from authcore.config import Settings
from authcore.storage.base import Query, Sort, StorageAdapter
from authcore.storage.document import DocumentStorageAdapter
from authcore.storage.sql import SQLStorageAdapter


def get_storage_adapter(config: Settings) -> StorageAdapter:
    """Build the backend selected by ``config.storage_backend`` (not yet connected)."""
    retry = {
        "retry_attempts": config.db_retry_attempts,
        "retry_delay": config.db_retry_delay,
    }
    if config.storage_backend == "document":
        return DocumentStorageAdapter(config.document_store_path, **retry)
    return SQLStorageAdapter(
        config.database_url,
        echo=config.sql_echo,
        create_tables=config.auto_init_db,
        **retry,
    )


__all__ = [
    "DocumentStorageAdapter",
    "Query",
    "SQLStorageAdapter",
    "Sort",
    "StorageAdapter",
    "get_storage_adapter",
]
