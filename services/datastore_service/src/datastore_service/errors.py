from __future__ import annotations

from bibstore_core.schema.migrations import MigrationError


class DataStoreError(Exception):
    """Base class for errors surfaced to callers of the data store."""


class NotFoundError(DataStoreError):
    def __init__(self, base: str, record_id: str | None = None, message: str | None = None) -> None:
        self.base = base
        self.record_id = record_id
        key = f"{base}/{record_id}" if record_id is not None else base
        super().__init__(message or f"Not found: {key}")


class RecordIsOlderError(DataStoreError):
    """The incoming change predates the stored record; nothing was written."""

    def __init__(self, base: str, record_id: str, stored_timestamp: int, change_timestamp: int) -> None:
        self.base = base
        self.record_id = record_id
        self.stored_timestamp = stored_timestamp
        self.change_timestamp = change_timestamp
        super().__init__(
            f"Record {base}/{record_id} is older than the stored one "
            f"(change {change_timestamp} < stored {stored_timestamp})"
        )


class RecordValidationError(DataStoreError):
    pass


__all__ = [
    "DataStoreError",
    "MigrationError",
    "NotFoundError",
    "RecordIsOlderError",
    "RecordValidationError",
]
