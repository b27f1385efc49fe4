"""Error taxonomy shared by the record store, the indexes and the HTTP layer."""

from typing import Iterable, Optional


class StoreError(Exception):
    """Base class for every error raised by the memory store."""

    code = "store_error"


class NotFoundError(StoreError):
    code = "not_found"

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} '{record_id}' not found")


class ImmutableRecordError(StoreError):
    """Raised when the immutability guard blocks a mutation. Never retried."""

    code = "immutable"

    def __init__(self, record_id: str, reasons: Iterable[str] = ()):
        self.record_id = record_id
        self.reasons = list(reasons)
        detail = ", ".join(self.reasons) or "immutable"
        super().__init__(
            f"record '{record_id}' is immutable ({detail}); it can be read but "
            "not updated, superseded, corrected or deleted"
        )


class EmbeddingUnavailableError(StoreError):
    code = "embedding_unavailable"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"embedding unavailable: {reason}. Check the embedding backend, then "
            "run batch_embed to index records saved without vectors."
        )


class IndexInconsistencyError(StoreError):
    """A vector or text index write failed inside a record transaction."""

    code = "index_inconsistency"

    def __init__(self, kind: str, key: Optional[int], operation: str):
        self.kind = kind
        self.key = key
        self.operation = operation
        super().__init__(f"{kind} index {operation} failed for key {key}")


class WriteContentionError(StoreError):
    code = "write_contention"

    def __init__(self, operation: str, waited_seconds: float):
        self.operation = operation
        self.waited_seconds = waited_seconds
        super().__init__(
            f"write '{operation}' could not acquire the store within "
            f"{waited_seconds:.1f}s"
        )


class RecordStateError(StoreError):
    code = "invalid_state"

    def __init__(self, record_id: str, status: str):
        self.record_id = record_id
        self.status = status
        super().__init__(
            f"record '{record_id}' is '{status}'; only active records "
            "can be modified"
        )
