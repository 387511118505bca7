"""
Global pytest configuration and fixtures.

Every fixture builds a fresh, fully in-process engine: an in-memory document
store that counts reads, a Redis double behind the decision cache, a frozen
clock and a recording event publisher. No MongoDB, Redis or network access is
needed to run the unit tier; the integration tier additionally starts MongoDB
and Redis containers when Docker is available (see ``tests/fixtures/containers.py``).
"""

import pytest

from authz_engine.auth.authorization import AuthorizationFacade
from authz_engine.auth.cache import DecisionCache
from authz_engine.auth.groups import ExternalGroupMapper
from authz_engine.auth.scopes import ResourceScopeEvaluator
from authz_engine.config.settings import get_config
from authz_engine.data.defaults import seed_default_roles
from authz_engine.data.grants import UserGrantStore
from authz_engine.data.roles import RoleStore
from tests.fixtures import GROUP_ROLE_MAPPING, START_TIME
from tests.fixtures.doubles import (
    CountingDocumentStore,
    FakeRedis,
    FrozenClock,
    RecordingEventPublisher,
)


def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Unit tests with isolated component testing"
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests wiring the full engine together"
    )
    config.addinivalue_line(
        "markers",
        "cache: Decision cache behaviour"
    )
    config.addinivalue_line(
        "markers",
        "database: Document store and persistence behaviour"
    )
    config.addinivalue_line(
        "markers",
        "testcontainers: Tests running against MongoDB and Redis containers"
    )


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory."""
    for item in items:
        test_file_path = str(item.fspath)
        if "/unit/" in test_file_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_file_path:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def clock():
    return FrozenClock(START_TIME)


@pytest.fixture
def document_store():
    return CountingDocumentStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def decision_cache(fake_redis, clock):
    return DecisionCache(fake_redis, ttl_seconds=300, clock=clock)


@pytest.fixture
def role_store(document_store, clock):
    """Role catalogue pre-seeded with the default system roles."""
    store = RoleStore(document_store, clock=clock)
    seed_default_roles(store)
    return store


@pytest.fixture
def user_store(document_store, role_store, decision_cache, clock):
    return UserGrantStore(document_store, role_store, cache=decision_cache, clock=clock)


@pytest.fixture
def publisher():
    return RecordingEventPublisher()


@pytest.fixture
def group_mapper():
    return ExternalGroupMapper(GROUP_ROLE_MAPPING)


@pytest.fixture
def facade(role_store, user_store, decision_cache, publisher, group_mapper, clock):
    return AuthorizationFacade(
        role_store,
        user_store,
        decision_cache,
        scope_evaluator=ResourceScopeEvaluator(),
        publisher=publisher,
        group_mapper=group_mapper,
        clock=clock
    )


@pytest.fixture
def testing_config():
    return get_config('testing', environ={})
