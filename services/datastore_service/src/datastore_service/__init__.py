"""Record store, duplicate candidate index and paged reads over bibliographic records."""

from datastore_service.datastore import DataStoreService, create_datastore_service
from datastore_service.errors import DataStoreError, NotFoundError, RecordIsOlderError, RecordValidationError

__all__ = [
    "DataStoreError",
    "DataStoreService",
    "NotFoundError",
    "RecordIsOlderError",
    "RecordValidationError",
    "create_datastore_service",
]
