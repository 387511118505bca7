"""
Document store interface used by the role and user-grant stores.

Role definitions and user records are read and written one entity at a time
through three operations: fetch by id, upsert by id, and query by a simple
predicate. ``MongoDocumentStore`` implements them over a PyMongo database
handle; ``InMemoryDocumentStore`` implements the same predicate subset over
dictionaries for tests and local development.

Supported predicate forms (Mongo query syntax):
- ``{"field": value}`` matches equal scalars or arrays containing ``value``
- ``{"field": {"$in": [a, b]}}`` matches when any listed value matches
"""

import copy
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import structlog
from prometheus_client import Counter, Histogram
from pymongo.database import Database

from authz_engine.data.exceptions import StorageOperationType, with_storage_retry

logger = structlog.get_logger(__name__)

store_operations_total = Counter(
    'authz_store_operations_total',
    'Document store operations by backend and collection',
    ['backend', 'operation', 'collection']
)
store_operation_duration = Histogram(
    'authz_store_operation_duration_seconds',
    'Document store operation latency',
    ['backend', 'operation'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

SortSpec = Optional[List[Tuple[str, int]]]


class DocumentStore(ABC):
    """Key-value-per-entity storage used by RoleStore and UserGrantStore."""

    backend = "abstract"

    @abstractmethod
    def get_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document stored under ``doc_id`` or None."""

    @abstractmethod
    def upsert(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        """Replace or insert the document stored under ``doc_id``."""

    @abstractmethod
    def query(
        self,
        collection: str,
        predicate: Optional[Dict[str, Any]] = None,
        sort: SortSpec = None
    ) -> List[Dict[str, Any]]:
        """Return every document matching ``predicate``, optionally sorted."""

    def _record(self, operation: str, collection: str, start_time: float) -> None:
        store_operations_total.labels(
            backend=self.backend, operation=operation, collection=collection
        ).inc()
        store_operation_duration.labels(
            backend=self.backend, operation=operation
        ).observe(time.perf_counter() - start_time)


class MongoDocumentStore(DocumentStore):
    """
    Document store over a PyMongo database.

    The entity id is stored as ``_id``. Driver failures are retried when
    transient and otherwise surface as ``StorageUnavailableError`` or
    ``DocumentConflictError``.
    """

    backend = "mongodb"

    def __init__(self, database: Database):
        self.database = database

    @with_storage_retry(StorageOperationType.READ)
    def get_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        start_time = time.perf_counter()
        document = self.database[collection].find_one({'_id': doc_id})
        self._record('get_by_id', collection, start_time)
        logger.debug(
            "Document fetched",
            collection=collection,
            doc_id=doc_id,
            found=document is not None
        )
        return document

    @with_storage_retry(StorageOperationType.WRITE, max_attempts=2)
    def upsert(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        start_time = time.perf_counter()
        payload = dict(document)
        payload['_id'] = doc_id
        self.database[collection].replace_one({'_id': doc_id}, payload, upsert=True)
        self._record('upsert', collection, start_time)
        logger.debug("Document upserted", collection=collection, doc_id=doc_id)

    @with_storage_retry(StorageOperationType.QUERY)
    def query(
        self,
        collection: str,
        predicate: Optional[Dict[str, Any]] = None,
        sort: SortSpec = None
    ) -> List[Dict[str, Any]]:
        start_time = time.perf_counter()
        cursor = self.database[collection].find(predicate or {})
        if sort:
            cursor = cursor.sort(sort)
        documents = list(cursor)
        self._record('query', collection, start_time)
        logger.debug(
            "Documents queried",
            collection=collection,
            filter_fields=list((predicate or {}).keys()),
            count=len(documents)
        )
        return documents


def _value_matches(stored: Any, expected: Any) -> bool:
    if isinstance(stored, list):
        return expected in stored
    return stored == expected


def _document_matches(document: Dict[str, Any], predicate: Dict[str, Any]) -> bool:
    for field, condition in predicate.items():
        stored = document.get(field)
        if isinstance(condition, dict):
            if set(condition) != {'$in'}:
                raise ValueError(f"Unsupported query operator in {condition!r}")
            if not any(_value_matches(stored, candidate) for candidate in condition['$in']):
                return False
        elif not _value_matches(stored, condition):
            return False
    return True


class InMemoryDocumentStore(DocumentStore):
    """
    Dictionary-backed document store.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state without an explicit upsert.
    """

    backend = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        start_time = time.perf_counter()
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            result = copy.deepcopy(document) if document is not None else None
        self._record('get_by_id', collection, start_time)
        return result

    def upsert(self, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        start_time = time.perf_counter()
        payload = copy.deepcopy(document)
        payload['_id'] = doc_id
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = payload
        self._record('upsert', collection, start_time)

    def query(
        self,
        collection: str,
        predicate: Optional[Dict[str, Any]] = None,
        sort: SortSpec = None
    ) -> List[Dict[str, Any]]:
        start_time = time.perf_counter()
        with self._lock:
            documents = [
                copy.deepcopy(document)
                for document in self._collections.get(collection, {}).values()
                if _document_matches(document, predicate or {})
            ]
        # Apply sort keys last to first so the first key dominates
        for field, direction in reversed(sort or []):
            documents.sort(
                key=lambda doc: (doc.get(field) is None, doc.get(field) or ''),
                reverse=direction < 0
            )
        self._record('query', collection, start_time)
        return documents
