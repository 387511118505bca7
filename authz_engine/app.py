"""
Composition root.

``create_authorization_service`` wires stores, cache, scope evaluator, event
publisher and group mapper into one ``AuthorizationFacade`` from settings.
Every dependency is an explicit handle on the returned ``AuthorizationService``;
nothing is kept in module globals, so tests and multiple tenants can build
independent instances side by side.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from pymongo import MongoClient
from redis import Redis

from authz_engine.auth.authorization import AuthorizationFacade
from authz_engine.auth.cache import DecisionCache
from authz_engine.auth.events import EventPublisher, HttpEventPublisher, LoggingEventPublisher
from authz_engine.auth.groups import ExternalGroupMapper
from authz_engine.auth.scopes import MedicalScopePolicy, ResourceScopeEvaluator
from authz_engine.config.database import create_mongo_client, create_redis_client, get_database
from authz_engine.config.settings import BaseConfig, get_config
from authz_engine.data.grants import UserGrantStore
from authz_engine.data.models import utc_now
from authz_engine.data.roles import RoleStore
from authz_engine.data.stores import DocumentStore, InMemoryDocumentStore, MongoDocumentStore

logger = structlog.get_logger(__name__)


@dataclass
class AuthorizationService:
    """A wired facade plus the handles it was built from."""

    config: BaseConfig
    facade: AuthorizationFacade
    role_store: RoleStore
    user_store: UserGrantStore
    cache: DecisionCache
    publisher: EventPublisher
    mongo_client: Optional[MongoClient] = None
    redis_client: Optional[Redis] = None

    def close(self) -> None:
        self.publisher.close()
        if self.mongo_client is not None:
            self.mongo_client.close()
        if self.redis_client is not None:
            self.redis_client.close()


def create_event_publisher(config: BaseConfig) -> EventPublisher:
    if config.PUBLISH_EVENTS_OVER_HTTP and config.EVENT_PUBLISHER_ENDPOINT:
        return HttpEventPublisher(
            config.EVENT_PUBLISHER_ENDPOINT,
            access_key=config.EVENT_PUBLISHER_KEY,
            timeout=config.EVENT_PUBLISHER_TIMEOUT,
            max_attempts=config.EVENT_PUBLISH_MAX_ATTEMPTS
        )
    return LoggingEventPublisher()


def create_authorization_service(
    config: Optional[BaseConfig] = None,
    document_store: Optional[DocumentStore] = None,
    redis_client: Optional[Redis] = None,
    publisher: Optional[EventPublisher] = None,
    clock: Callable[[], datetime] = utc_now
) -> AuthorizationService:
    """
    Build a fully wired authorization service.

    Args:
        config: Loaded settings; defaults to ``get_config()``
        document_store: Overrides the store chosen from settings
        redis_client: Overrides the client built from ``REDIS_URL``
        publisher: Overrides the publisher chosen from settings
        clock: Callable returning the current aware datetime

    Returns:
        The facade together with its collaborators
    """
    config = config or get_config()

    mongo_client = None
    if document_store is None:
        if config.USE_IN_MEMORY_STORE:
            document_store = InMemoryDocumentStore()
        else:
            mongo_client = create_mongo_client(config)
            document_store = MongoDocumentStore(get_database(mongo_client, config))

    owns_redis = redis_client is None
    if owns_redis:
        redis_client = create_redis_client(config)

    cache = DecisionCache(
        redis_client,
        ttl_seconds=config.DECISION_CACHE_TTL_SECONDS,
        enabled=config.DECISION_CACHE_ENABLED,
        clock=clock
    )
    role_store = RoleStore(document_store, clock=clock)
    user_store = UserGrantStore(
        document_store,
        role_store,
        cache=cache,
        clock=clock,
        max_temp_grant_days=config.TEMP_GRANT_MAX_DAYS
    )
    publisher = publisher or create_event_publisher(config)

    facade = AuthorizationFacade(
        role_store,
        user_store,
        cache,
        scope_evaluator=ResourceScopeEvaluator(MedicalScopePolicy(config.MEDICAL_SCOPE_POLICY)),
        publisher=publisher,
        group_mapper=ExternalGroupMapper(config.GROUP_ROLE_MAPPING),
        clock=clock
    )

    logger.info(
        "Authorization service created",
        environment=config.ENVIRONMENT,
        store_backend=document_store.backend,
        publisher=publisher.name,
        cache_enabled=config.DECISION_CACHE_ENABLED,
        cache_ttl_seconds=config.DECISION_CACHE_TTL_SECONDS,
        medical_scope_policy=config.MEDICAL_SCOPE_POLICY
    )
    return AuthorizationService(
        config=config,
        facade=facade,
        role_store=role_store,
        user_store=user_store,
        cache=cache,
        publisher=publisher,
        mongo_client=mongo_client,
        redis_client=redis_client if owns_redis else None
    )
