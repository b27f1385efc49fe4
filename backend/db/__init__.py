from .errors import (
    EmbeddingUnavailableError,
    ImmutableRecordError,
    IndexInconsistencyError,
    NotFoundError,
    RecordStateError,
    StoreError,
    WriteContentionError,
)
from .sqlite_client import SQLiteClient, close_sqlite_client, get_sqlite_client

__all__ = [
    "SQLiteClient",
    "get_sqlite_client",
    "close_sqlite_client",
    "StoreError",
    "NotFoundError",
    "ImmutableRecordError",
    "EmbeddingUnavailableError",
    "IndexInconsistencyError",
    "WriteContentionError",
    "RecordStateError",
]
