"""
The engine against real MongoDB and Redis.

These tests start containers through Testcontainers and are skipped when
Docker is not available. They cover what the in-process doubles cannot: the
Redis pipeline, key expiry and index decoding, and the PyMongo store's
queries, sorting and duplicate handling.
"""

from datetime import timedelta

import pytest

from authz_engine.app import create_authorization_service
from authz_engine.auth.cache import CacheKeyPatterns, DecisionCache, generate_cache_key
from authz_engine.config.database import get_database, health_check
from authz_engine.data.defaults import seed_default_roles
from authz_engine.data.grants import USERS_COLLECTION
from authz_engine.data.roles import RoleStore
from authz_engine.data.stores import MongoDocumentStore
from tests.fixtures.doubles import RecordingEventPublisher

pytestmark = pytest.mark.testcontainers

FOREIGN_CUSTOMER = {'type': 'customer', 'id': 'cust-9', 'ownerId': 'other'}


@pytest.fixture
def mongo_store(mongo_client, container_config):
    return MongoDocumentStore(get_database(mongo_client, container_config))


@pytest.fixture
def real_cache(redis_client, clock):
    return DecisionCache(redis_client, ttl_seconds=300, clock=clock)


@pytest.fixture
def service(container_config, mongo_store, redis_client, clock):
    service = create_authorization_service(
        container_config,
        document_store=mongo_store,
        redis_client=redis_client,
        publisher=RecordingEventPublisher(),
        clock=clock
    )
    seed_default_roles(service.role_store)
    return service


class TestRedisDecisionCache:
    """Decision cache commands as Redis actually executes them."""

    def test_put_sets_expiry_and_index(self, real_cache, redis_client):
        assert real_cache.put('u1', 'customers:read', True, matched_scope='own')
        key = generate_cache_key('u1', 'customers:read')
        index_key = CacheKeyPatterns.USER_INDEX.format(user_id='u1')

        assert 0 < redis_client.ttl(key) <= 300
        assert 0 < redis_client.ttl(index_key) <= 300
        assert redis_client.smembers(index_key) == {key}
        assert real_cache.get('u1', 'customers:read').matched_scope == 'own'

    def test_shortened_ttl_reaches_redis(self, real_cache, redis_client):
        real_cache.put('u1', 'customers:read', True, ttl_seconds=45)
        assert 0 < redis_client.ttl(generate_cache_key('u1', 'customers:read')) <= 45
        assert redis_client.ttl(CacheKeyPatterns.USER_INDEX.format(user_id='u1')) > 45

    def test_invalidation_and_scan(self, real_cache):
        real_cache.put('u1', 'customers:read', True)
        real_cache.put('u1', 'customers:read', False, resource_id='c1')
        real_cache.put('u2', 'quotes:read', True)

        assert real_cache.invalidate_permission('u1', 'customers:read') == 2
        assert real_cache.stats() == {'totalEntries': 1, 'uniqueUsers': 1, 'enabled': True}
        assert real_cache.invalidate_user('u2') == 1
        real_cache.put('u3', 'quotes:read', True)
        assert real_cache.clear_all() == 1
        assert real_cache.stats()['totalEntries'] == 0


class TestMongoDocumentStore:
    """Role and user records through PyMongo."""

    def test_roles_round_trip_with_sorting(self, mongo_store, clock):
        roles = RoleStore(mongo_store, clock=clock)
        seed_default_roles(roles)
        names = [entry.role.display_name for entry in roles.list_roles()]
        assert names == sorted(names)
        assert roles.get_role('broker').created_at == clock()

    def test_membership_query(self, service):
        facade = service.facade
        facade.create_user('u1', roles=['broker'])
        facade.create_user('u2', roles=['underwriter', 'broker'])
        facade.create_user('u3', roles=['customer'])
        users = service.user_store.list_users_with_roles(['broker'])
        assert [user.user_id for user in users] == ['u1', 'u2']

    def test_stored_datetimes_are_aware(self, service, mongo_store, clock):
        service.facade.create_user('u1', roles=['broker'])
        service.facade.grant_temporary_permission(
            'u1', 'quotes:approve', 'manager-1', 'Cover', clock() + timedelta(days=1)
        )
        document = mongo_store.get_by_id(USERS_COLLECTION, 'u1')
        assert document['temporaryPermissions'][0]['validUntil'] == clock() + timedelta(days=1)


class TestServiceAgainstContainers:
    """End-to-end checks with both backends real."""

    def test_temporary_access_expires_inside_cache_ttl(self, service, clock):
        facade = service.facade
        facade.create_user('b1', roles=['broker'])
        facade.grant_temporary_permission(
            'b1', 'customers:read', 'manager-1', 'Cover', clock() + timedelta(minutes=1)
        )
        assert facade.check_resource_permission('b1', 'customers:read', FOREIGN_CUSTOMER).authorized

        clock.advance(minutes=2)
        decision = facade.check_resource_permission('b1', 'customers:read', FOREIGN_CUSTOMER)
        assert decision.authorized is False
        assert decision.reason == 'not_owner'

    def test_role_change_invalidates_real_cache(self, service):
        facade = service.facade
        facade.create_user('b1', roles=['customer'])
        assert facade.check_permission('b1', 'quotes:create').authorized is False
        facade.assign_role('b1', 'broker', 'admin-1')
        assert facade.check_permission('b1', 'quotes:create').authorized is True

    def test_health_check(self, mongo_client, redis_client):
        assert health_check(mongo_client, redis_client)['status'] == 'healthy'
