"""
Storage Exception Handling for the Role and User-Grant Stores

Storage failures are kept apart from authorization failures: a check
that cannot read its backing store must surface as a distinct error, never as
an allow or a deny. This module defines that hierarchy, maps PyMongo errors onto
it and records failures in Prometheus.

Key Components:
- StorageException base class with operation and collection context
- StorageUnavailableError for unreachable or failing backing stores
- DocumentConflictError for writes rejected by the store
- classify_pymongo_error / handle_storage_error for driver error translation
- with_storage_retry retrying transient driver errors with tenacity
"""

from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, Type

import pymongo.errors
import structlog
from prometheus_client import Counter
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from authz_engine.auth.exceptions import AuthorizationErrorCode

logger = structlog.get_logger(__name__)

storage_errors_total = Counter(
    'authz_storage_errors_total',
    'Total backing store errors by type and operation',
    ['error_type', 'operation', 'collection']
)

storage_retry_attempts = Counter(
    'authz_storage_retry_attempts_total',
    'Backing store retry attempts by error type',
    ['error_type', 'operation']
)


class StorageOperationType(Enum):
    """Storage operation types for error classification"""
    READ = "read"
    WRITE = "write"
    QUERY = "query"
    CONNECTION = "connection"


class StorageException(Exception):
    """
    Base exception class for all backing store errors.

    Carries the operation and collection that failed along with the original
    driver error so callers and logs can tell which store round-trip broke.
    """

    error_code = AuthorizationErrorCode.STORAGE_UNAVAILABLE

    def __init__(
        self,
        message: str,
        operation: Optional[StorageOperationType] = None,
        collection: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.collection = collection
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)

        storage_errors_total.labels(
            error_type=self.__class__.__name__,
            operation=operation.value if operation else "unknown",
            collection=collection or "unknown"
        ).inc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging"""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code.value,
            "message": self.message,
            "operation": self.operation.value if self.operation else None,
            "collection": self.collection,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_error) if self.original_error else None
        }


class StorageUnavailableError(StorageException):
    """
    Raised when the backing store cannot serve a read or write.

    Permission checks propagate this error unchanged: it means the engine does
    not know the answer.
    """


class DocumentConflictError(StorageException):
    """Raised when the store rejects a write, e.g. a duplicate key."""

    error_code = AuthorizationErrorCode.STORAGE_CONFLICT


PYMONGO_ERROR_MAPPING: Dict[Type[Exception], Type[StorageException]] = {
    pymongo.errors.DuplicateKeyError: DocumentConflictError,
    pymongo.errors.WriteError: DocumentConflictError,
    pymongo.errors.ConnectionFailure: StorageUnavailableError,
    pymongo.errors.ServerSelectionTimeoutError: StorageUnavailableError,
    pymongo.errors.NetworkTimeout: StorageUnavailableError,
    pymongo.errors.ExecutionTimeout: StorageUnavailableError,
    pymongo.errors.OperationFailure: StorageUnavailableError,
    pymongo.errors.PyMongoError: StorageUnavailableError,
}


def classify_pymongo_error(error: Exception) -> Type[StorageException]:
    """
    Classify a PyMongo error into the storage exception it should raise.

    The most specific mapping along the error's MRO wins, so subclasses of
    ``ConnectionFailure`` still map to ``StorageUnavailableError``.
    """
    for klass in type(error).__mro__:
        if klass in PYMONGO_ERROR_MAPPING:
            return PYMONGO_ERROR_MAPPING[klass]
    return StorageUnavailableError


def handle_storage_error(
    error: Exception,
    operation: StorageOperationType,
    collection: Optional[str] = None
) -> StorageException:
    """
    Translate a driver error into a storage exception and log it.

    Args:
        error: The original exception
        operation: Type of storage operation
        collection: Collection name (optional)

    Returns:
        Storage exception to raise in place of the driver error
    """
    if isinstance(error, StorageException):
        return error

    exception_class = classify_pymongo_error(error)
    storage_error = exception_class(
        f"Storage operation failed: {error}",
        operation=operation,
        collection=collection,
        original_error=error
    )

    logger.error(
        "Backing store operation failed",
        error_type=exception_class.__name__,
        operation=operation.value,
        collection=collection,
        original_error=str(error)
    )
    return storage_error


# Transient driver errors worth a second attempt; everything else fails fast.
TRANSIENT_PYMONGO_ERRORS = (
    pymongo.errors.AutoReconnect,
    pymongo.errors.NetworkTimeout,
)


def with_storage_retry(
    operation: StorageOperationType,
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1.0
) -> Callable:
    """
    Decorator retrying transient driver errors and translating the final error.

    The decorated method must be called with the collection name as its first
    positional argument so failures can be attributed to a collection.
    """

    def log_retry(retry_state):
        error = retry_state.outcome.exception()
        storage_retry_attempts.labels(
            error_type=error.__class__.__name__,
            operation=operation.value
        ).inc()
        logger.warning(
            "Retrying backing store operation",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            operation=operation.value,
            error=str(error)
        )

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, collection: str, *args, **kwargs):
            retrying = Retrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
                retry=retry_if_exception_type(TRANSIENT_PYMONGO_ERRORS),
                before_sleep=log_retry,
                reraise=True
            )
            try:
                for attempt in retrying:
                    with attempt:
                        return func(self, collection, *args, **kwargs)
            except pymongo.errors.PyMongoError as e:
                raise handle_storage_error(e, operation, collection) from e

        return wrapper
    return decorator
