"""
Redis-backed decision cache for authorization outcomes.

Entries are keyed by (user, permission, resource id) and hold the decision
together with the time it was cached. Each user has an index set listing the
entry keys written for them so a mutation can drop every decision for that
user in one round-trip.

Guarantees:
- An entry older than its own TTL is a miss even if Redis still holds it.
- Cache failures never reach the caller: reads degrade to a miss, writes and
  invalidations to a logged no-op.
- Invalidation is whole-user; ``invalidate_permission`` exists for
  administrative cleanup only.

Invalidation runs synchronously with the mutating call, so a caller that
mutates and then checks never sees its own stale decision. Other callers may
briefly observe a decision computed before the mutation if their check raced
with it; that window is bounded by the TTL.
"""

import hashlib
import json
import time
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import structlog
from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ConfigDict, Field, field_validator
from redis import Redis
from redis.exceptions import RedisError

from authz_engine.auth.exceptions import AuthorizationErrorCode
from authz_engine.data.models import as_aware_datetime, utc_now

logger = structlog.get_logger(__name__)

cache_operations_total = Counter(
    'authz_decision_cache_operations_total',
    'Decision cache operations by type and result',
    ['operation', 'result']
)
cache_operation_duration = Histogram(
    'authz_decision_cache_operation_duration_seconds',
    'Decision cache operation latency',
    ['operation'],
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1]
)
cache_invalidations_total = Counter(
    'authz_decision_cache_invalidations_total',
    'Decision cache invalidations by scope',
    ['scope']
)

DEFAULT_TTL_SECONDS = 300

# Caught around every Redis round-trip; ValueError covers undecodable entries.
CACHE_ERRORS = (RedisError, ValueError, TypeError)


class CacheKeyPatterns:
    """Redis key layout for the decision cache."""

    DECISION = "authz_decision:{digest}"
    USER_INDEX = "authz_decision_index:{user_id}"
    DECISION_SCAN = "authz_decision:*"
    USER_INDEX_SCAN = "authz_decision_index:*"


class DecisionCacheEntry(BaseModel):
    """A cached authorization outcome."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    permission: str
    resource_id: Optional[str] = Field(default=None, alias="resourceId")
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    authorized: bool
    reason: Optional[str] = None
    matched_permission: Optional[str] = Field(default=None, alias="matchedPermission")
    matched_scope: Optional[str] = Field(default=None, alias="matchedScope")
    cached_at: datetime = Field(alias="cachedAt")
    ttl_seconds: int = Field(alias="ttlSeconds")

    @field_validator('cached_at', mode='before')
    @classmethod
    def validate_cached_at(cls, v):
        return as_aware_datetime(v)

    def is_expired(self, now: datetime) -> bool:
        return (now - self.cached_at).total_seconds() >= self.ttl_seconds


def generate_cache_key(user_id: str, permission: str, resource_id: Optional[str] = None) -> str:
    """Redis key for a (user, permission, resource) tuple."""
    material = json.dumps([user_id, permission, resource_id], separators=(',', ':'))
    digest = hashlib.sha256(material.encode('utf-8')).hexdigest()
    return CacheKeyPatterns.DECISION.format(digest=digest)


def cache_operation_metrics(operation: str):
    """Record the latency of a cache operation."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                cache_operation_duration.labels(operation=operation).observe(
                    time.perf_counter() - start_time
                )
        return wrapper
    return decorator


class DecisionCache:
    """
    TTL cache of authorization decisions.

    Args:
        redis_client: Redis connection (``decode_responses=True`` expected)
        ttl_seconds: Lifetime of new entries
        enabled: When False, reads always miss and writes are skipped
        clock: Callable returning the current aware datetime
    """

    def __init__(
        self,
        redis_client: Redis,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        enabled: bool = True,
        clock: Callable[[], datetime] = utc_now
    ):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self.clock = clock

    @cache_operation_metrics("get")
    def get(
        self,
        user_id: str,
        permission: str,
        resource_id: Optional[str] = None
    ) -> Optional[DecisionCacheEntry]:
        if not self.enabled:
            return None

        key = generate_cache_key(user_id, permission, resource_id)
        try:
            raw = self.redis_client.get(key)
            if raw is None:
                cache_operations_total.labels(operation='get', result='miss').inc()
                return None
            entry = DecisionCacheEntry.model_validate_json(raw)
        except CACHE_ERRORS as e:
            self._record_failure('get', e, user_id=user_id, permission=permission)
            return None

        if entry.is_expired(self.clock()):
            cache_operations_total.labels(operation='get', result='expired').inc()
            return None

        cache_operations_total.labels(operation='get', result='hit').inc()
        logger.debug("Decision cache hit", user_id=user_id, permission=permission, resource_id=resource_id)
        return entry

    @cache_operation_metrics("put")
    def put(
        self,
        user_id: str,
        permission: str,
        authorized: bool,
        reason: Optional[str] = None,
        matched_permission: Optional[str] = None,
        matched_scope: Optional[str] = None,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        """
        Store a decision; concurrent writes for the same key are last-write-wins.

        ``ttl_seconds`` shortens the entry's lifetime below the cache default.
        It never lengthens it, and a lifetime under one second skips the write.
        """
        if not self.enabled:
            return False

        ttl = self.ttl_seconds if ttl_seconds is None else min(ttl_seconds, self.ttl_seconds)
        if ttl <= 0:
            cache_operations_total.labels(operation='put', result='skipped').inc()
            return False

        entry = DecisionCacheEntry(
            user_id=user_id,
            permission=permission,
            resource_id=resource_id,
            resource_type=resource_type,
            authorized=authorized,
            reason=reason,
            matched_permission=matched_permission,
            matched_scope=matched_scope,
            cached_at=self.clock(),
            ttl_seconds=ttl,
        )
        key = generate_cache_key(user_id, permission, resource_id)
        index_key = CacheKeyPatterns.USER_INDEX.format(user_id=user_id)
        try:
            pipe = self.redis_client.pipeline()
            pipe.set(key, entry.model_dump_json(by_alias=True), ex=ttl)
            pipe.sadd(index_key, key)
            # Index outlives its longest entry so invalidation still finds it
            pipe.expire(index_key, self.ttl_seconds)
            pipe.execute()
        except CACHE_ERRORS as e:
            self._record_failure('put', e, user_id=user_id, permission=permission)
            return False

        cache_operations_total.labels(operation='put', result='success').inc()
        return True

    @cache_operation_metrics("invalidate_user")
    def invalidate_user(self, user_id: str) -> int:
        """Drop every cached decision for a user. Returns the number of entries removed."""
        index_key = CacheKeyPatterns.USER_INDEX.format(user_id=user_id)
        try:
            keys = list(self.redis_client.smembers(index_key))
            deleted = self.redis_client.delete(*keys) if keys else 0
            self.redis_client.delete(index_key)
        except CACHE_ERRORS as e:
            self._record_failure('invalidate_user', e, user_id=user_id)
            return 0

        cache_invalidations_total.labels(scope='user').inc()
        logger.info("Decision cache invalidated", user_id=user_id, deleted_entries=deleted)
        return deleted

    @cache_operation_metrics("invalidate_permission")
    def invalidate_permission(self, user_id: str, permission: str) -> int:
        """Drop cached decisions for one permission of one user, any resource."""
        index_key = CacheKeyPatterns.USER_INDEX.format(user_id=user_id)
        try:
            keys = list(self.redis_client.smembers(index_key))
            stale = []
            for key, raw in zip(keys, self.redis_client.mget(keys) if keys else []):
                if raw is None:
                    stale.append(key)
                elif DecisionCacheEntry.model_validate_json(raw).permission == permission:
                    stale.append(key)
            deleted = self.redis_client.delete(*stale) if stale else 0
            if stale:
                self.redis_client.srem(index_key, *stale)
        except CACHE_ERRORS as e:
            self._record_failure('invalidate_permission', e, user_id=user_id, permission=permission)
            return 0

        cache_invalidations_total.labels(scope='permission').inc()
        logger.info(
            "Decision cache invalidated for permission",
            user_id=user_id,
            permission=permission,
            deleted_entries=deleted
        )
        return deleted

    @cache_operation_metrics("clear_all")
    def clear_all(self) -> int:
        """Drop every cached decision. Returns the number of entries removed."""
        try:
            entry_keys = list(self.redis_client.scan_iter(match=CacheKeyPatterns.DECISION_SCAN))
            index_keys = list(self.redis_client.scan_iter(match=CacheKeyPatterns.USER_INDEX_SCAN))
            deleted = self.redis_client.delete(*entry_keys) if entry_keys else 0
            if index_keys:
                self.redis_client.delete(*index_keys)
        except CACHE_ERRORS as e:
            self._record_failure('clear_all', e)
            return 0

        cache_invalidations_total.labels(scope='all').inc()
        logger.warning("Decision cache cleared", deleted_entries=deleted)
        return deleted

    def stats(self) -> Dict[str, Any]:
        """Entry and user counts as seen by Redis right now."""
        try:
            entry_keys = list(self.redis_client.scan_iter(match=CacheKeyPatterns.DECISION_SCAN))
            raw_entries: List[Optional[str]] = self.redis_client.mget(entry_keys) if entry_keys else []
            users = {
                DecisionCacheEntry.model_validate_json(raw).user_id
                for raw in raw_entries if raw is not None
            }
        except CACHE_ERRORS as e:
            self._record_failure('stats', e)
            return {'totalEntries': 0, 'uniqueUsers': 0, 'enabled': self.enabled}

        return {
            'totalEntries': sum(1 for raw in raw_entries if raw is not None),
            'uniqueUsers': len(users),
            'enabled': self.enabled,
        }

    def _record_failure(self, operation: str, error: Exception, **context) -> None:
        cache_operations_total.labels(operation=operation, result='error').inc()
        logger.error(
            "Decision cache operation failed",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            error_code=AuthorizationErrorCode.CACHE_UNAVAILABLE.value,
            **context
        )
