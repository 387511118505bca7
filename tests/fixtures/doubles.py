"""
In-process stand-ins for Redis, the clock, the event publisher and the
document store.

``FakeRedis`` implements only the commands ``DecisionCache`` issues, with
string values and set members kept as ``str`` the way a
``decode_responses=True`` client returns them. Key expiry is not simulated;
the cache's own age check is what the unit tests exercise, and the container
tests cover real Redis.
"""

import fnmatch
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from redis.exceptions import ConnectionError as RedisConnectionError

from authz_engine.auth.events import AuthzEvent, AuthzEventType, EventPublisher
from authz_engine.data.exceptions import StorageOperationType, StorageUnavailableError
from authz_engine.data.stores import InMemoryDocumentStore


class FakeRedis:
    """Dictionary-backed subset of the redis-py client API."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self.values.get(key)

    def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.values[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def mget(self, keys: List[str]) -> List[Optional[str]]:
        self._check()
        return [self.values.get(key) for key in keys]

    def sadd(self, key: str, *members: str) -> int:
        self._check()
        existing = self.sets.setdefault(key, set())
        added = len(set(members) - existing)
        existing.update(members)
        return added

    def smembers(self, key: str) -> Set[str]:
        self._check()
        return set(self.sets.get(key, set()))

    def srem(self, key: str, *members: str) -> int:
        self._check()
        existing = self.sets.get(key, set())
        removed = len(existing & set(members))
        existing.difference_update(members)
        return removed

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.ttls[key] = seconds
        return key in self.values or key in self.sets

    def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                deleted += 1
            elif self.sets.pop(key, None) is not None:
                deleted += 1
            self.ttls.pop(key, None)
        return deleted

    def scan_iter(self, match: Optional[str] = None):
        self._check()
        for key in list(self.values) + list(self.sets):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self) -> 'FakePipeline':
        return FakePipeline(self)


class FakePipeline:
    """Buffers commands and applies them on ``execute``."""

    def __init__(self, client: FakeRedis):
        self.client = client
        self.commands: List[Any] = []

    def set(self, *args, **kwargs) -> 'FakePipeline':
        self.commands.append(('set', args, kwargs))
        return self

    def sadd(self, *args, **kwargs) -> 'FakePipeline':
        self.commands.append(('sadd', args, kwargs))
        return self

    def expire(self, *args, **kwargs) -> 'FakePipeline':
        self.commands.append(('expire', args, kwargs))
        return self

    def execute(self) -> List[Any]:
        self.client._check()
        results = [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.commands]
        self.commands = []
        return results


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEventPublisher(EventPublisher):
    """Keeps every published event in memory."""

    name = "recording"

    def __init__(self):
        self.events: List[AuthzEvent] = []

    def publish(self, event: AuthzEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AuthzEventType) -> List[AuthzEvent]:
        return [event for event in self.events if event.event_type == event_type]


class FailingEventPublisher(EventPublisher):
    name = "failing"

    def __init__(self):
        self.attempts = 0

    def publish(self, event: AuthzEvent) -> None:
        self.attempts += 1
        raise RuntimeError("event topic unreachable")


class CountingDocumentStore(InMemoryDocumentStore):
    """In-memory store that counts reads per collection and can be made to fail."""

    def __init__(self):
        super().__init__()
        self.reads: Dict[str, int] = {}
        self.fail_reads = False

    def reset_counts(self) -> None:
        self.reads = {}

    def _count(self, collection: str) -> None:
        if self.fail_reads:
            raise StorageUnavailableError(
                "Storage operation failed: connection refused",
                operation=StorageOperationType.READ,
                collection=collection
            )
        self.reads[collection] = self.reads.get(collection, 0) + 1

    def get_by_id(self, collection, doc_id):
        self._count(collection)
        return super().get_by_id(collection, doc_id)

    def query(self, collection, predicate=None, sort=None):
        self._count(collection)
        return super().query(collection, predicate, sort)
