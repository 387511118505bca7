"""
Unit tests for the authorization facade.

Checks run against the default role catalogue held in an in-memory store, the
Redis double behind the decision cache and a frozen clock.
"""

from datetime import timedelta

import pytest

from authz_engine.auth.authorization import AuthorizationFacade
from authz_engine.auth.events import AuthzEventType
from authz_engine.auth.exceptions import (
    InvalidPermissionError,
    InvalidResourceError,
    UserNotFoundError,
)
from authz_engine.auth.scopes import ResourceScopeEvaluator
from authz_engine.data.exceptions import StorageUnavailableError
from tests.fixtures.doubles import FailingEventPublisher

OWN_CUSTOMER = {'type': 'customer', 'id': 'c1', 'ownerId': 'u1'}
OTHER_CUSTOMER = {'type': 'customer', 'id': 'c2', 'ownerId': 'other'}


@pytest.fixture
def broker(facade):
    return facade.create_user(
        'u1', email='u1@example.com', roles=['broker'], territory=['north'], team_id='team-a'
    )


@pytest.fixture
def claims_nurse(facade):
    facade.create_role('claims-nurse', 'Claims Nurse', ['customers:read:medical'], 'admin')
    return facade.create_user('n1', roles=['claims-nurse'])


class TestCheckPermission:
    """Checks without a resource."""

    def test_unknown_user_is_denied_without_event(self, facade, publisher):
        decision = facade.check_permission('ghost', 'customers:read')
        assert decision.authorized is False
        assert decision.reason == 'user_not_found'
        assert publisher.events == []

    def test_scoped_grant_satisfies_plain_check(self, facade, broker):
        decision = facade.check_permission('u1', 'customers:read')
        assert decision.authorized is True
        assert decision.matched_permission == 'customers:read:own'
        assert decision.matched_scope == 'own'
        assert decision.cached is False

    def test_denial_publishes_event(self, facade, broker, publisher):
        decision = facade.check_permission('u1', 'policies:approve')
        assert decision.authorized is False
        assert decision.reason == 'insufficient_permissions'

        [event] = publisher.of_type(AuthzEventType.PERMISSION_DENIED)
        assert event.subject == '/users/u1'
        assert event.data['permission'] == 'policies:approve'
        assert event.data['userRoles'] == ['broker']
        assert 'resource' not in event.data
        assert 'matchedScope' not in event.data
        assert event.data['decision'] == 'deny'

    def test_second_check_is_served_from_cache(self, facade, broker, document_store):
        facade.check_permission('u1', 'quotes:create')
        document_store.reset_counts()

        decision = facade.check_permission('u1', 'quotes:create')
        assert decision.authorized is True
        assert decision.cached is True
        assert decision.matched_permission == 'quotes:create'
        assert document_store.reads == {}

    def test_denials_are_cached(self, facade, broker, publisher):
        facade.check_permission('u1', 'policies:approve')
        decision = facade.check_permission('u1', 'policies:approve')
        assert decision.cached is True
        assert decision.reason == 'insufficient_permissions'
        assert len(publisher.of_type(AuthzEventType.PERMISSION_DENIED)) == 1

    def test_malformed_permission(self, facade, broker):
        with pytest.raises(InvalidPermissionError):
            facade.check_permission('u1', 'Customers')

    def test_storage_failure_propagates(self, facade, broker, document_store, decision_cache):
        document_store.fail_reads = True
        with pytest.raises(StorageUnavailableError):
            facade.check_permission('u1', 'customers:read')
        assert decision_cache.get('u1', 'customers:read') is None

    def test_expired_temporary_grant_stops_authorizing(self, facade, broker, clock):
        facade.grant_temporary_permission(
            'u1', 'policies:approve', 'manager-1', 'Cover', clock() + timedelta(hours=1)
        )
        assert facade.check_permission('u1', 'policies:approve').authorized is True

        clock.advance(hours=2)
        decision = facade.check_permission('u1', 'policies:approve')
        assert decision.authorized is False
        assert decision.cached is False


class TestGrantBoundariesAndCaching:
    """Cached decisions never outlive a temporary grant starting or expiring."""

    def test_grant_expiring_inside_cache_ttl(self, facade, broker, clock):
        facade.grant_temporary_permission(
            'u1', 'policies:delete', 'manager-1', 'Cleanup', clock() + timedelta(minutes=1)
        )
        assert facade.check_permission('u1', 'policies:delete').authorized is True
        assert facade.check_permission('u1', 'policies:delete').cached is True

        clock.advance(minutes=2)
        decision = facade.check_permission('u1', 'policies:delete')
        assert decision.authorized is False
        assert decision.reason == 'insufficient_permissions'
        assert decision.cached is False

    def test_expiry_boundary_is_exclusive(self, facade, broker, clock):
        facade.grant_temporary_permission(
            'u1', 'policies:delete', 'manager-1', 'Cleanup', clock() + timedelta(seconds=90)
        )
        facade.check_permission('u1', 'policies:delete')
        clock.advance(seconds=89)
        assert facade.check_permission('u1', 'policies:delete').authorized is True
        clock.advance(seconds=1)
        assert facade.check_permission('u1', 'policies:delete').authorized is False

    def test_denial_before_grant_starts(self, facade, broker, clock):
        facade.grant_temporary_permission(
            'u1', 'policies:delete', 'manager-1', 'Cover',
            clock() + timedelta(hours=1), valid_from=clock() + timedelta(minutes=1)
        )
        assert facade.check_permission('u1', 'policies:delete').authorized is False

        clock.advance(minutes=1)
        decision = facade.check_permission('u1', 'policies:delete')
        assert decision.authorized is True
        assert decision.matched_permission == 'policies:delete'

    def test_resource_decision_bounded_by_grant(self, facade, broker, clock):
        facade.grant_temporary_permission(
            'u1', 'customers:read:territory', 'manager-1', 'Cover', clock() + timedelta(minutes=1)
        )
        resource = {'type': 'customer', 'id': 'c3', 'ownerId': 'other', 'territory': 'north'}
        assert facade.check_resource_permission('u1', 'customers:read', resource).authorized is True

        clock.advance(minutes=2)
        decision = facade.check_resource_permission('u1', 'customers:read', resource)
        assert decision.authorized is False
        assert decision.cached is False

    def test_unrelated_grant_still_bounds_entry(self, facade, broker, decision_cache, clock):
        facade.grant_temporary_permission(
            'u1', 'policies:delete', 'manager-1', 'Cleanup', clock() + timedelta(minutes=1)
        )
        facade.check_permission('u1', 'quotes:create')
        assert decision_cache.get('u1', 'quotes:create').ttl_seconds == 60

    def test_without_grants_full_ttl_applies(self, facade, broker, decision_cache):
        facade.check_permission('u1', 'quotes:create')
        assert decision_cache.get('u1', 'quotes:create').ttl_seconds == 300


class TestCheckResourcePermission:
    """Checks narrowed to a concrete resource."""

    def test_owner_match(self, facade, broker):
        decision = facade.check_resource_permission('u1', 'customers:read', OWN_CUSTOMER)
        assert decision.authorized is True
        assert decision.reason == 'owner_match'
        assert decision.matched_permission == 'customers:read:own'
        assert decision.matched_scope == 'own'

    def test_not_owner_publishes_resource(self, facade, broker, publisher):
        decision = facade.check_resource_permission('u1', 'customers:read', OTHER_CUSTOMER)
        assert decision.authorized is False
        assert decision.reason == 'not_owner'
        assert decision.matched_permission is None

        [event] = publisher.of_type(AuthzEventType.PERMISSION_DENIED)
        assert event.data['resource'] == {'type': 'customer', 'id': 'c2'}
        assert event.data['reason'] == 'not_owner'

    def test_decisions_are_cached_per_resource(self, facade, broker):
        facade.check_resource_permission('u1', 'customers:read', OWN_CUSTOMER)
        other = facade.check_resource_permission('u1', 'customers:read', OTHER_CUSTOMER)
        assert other.cached is False
        assert other.authorized is False
        again = facade.check_resource_permission('u1', 'customers:read', OWN_CUSTOMER)
        assert again.cached is True
        assert again.reason == 'owner_match'

    def test_territory_scope(self, facade):
        facade.create_user('w1', roles=['underwriter'], territory=['north', 'east'])
        north = facade.check_resource_permission(
            'w1', 'customers:read', {'type': 'customer', 'id': 'c1', 'territory': 'north'}
        )
        south = facade.check_resource_permission(
            'w1', 'customers:read', {'type': 'customer', 'id': 'c2', 'territory': 'south'}
        )
        assert (north.authorized, north.reason) == (True, 'territory_match')
        assert (south.authorized, south.reason) == (False, 'not_in_territory')

    def test_team_scope(self, facade):
        facade.create_user('s1', roles=['customer-support'], team_id='team-a')
        same = facade.check_resource_permission(
            's1', 'customers:update', {'type': 'customer', 'id': 'c1', 'teamId': 'team-a'}
        )
        other = facade.check_resource_permission(
            's1', 'customers:update', {'type': 'customer', 'id': 'c2', 'teamId': 'team-b'}
        )
        assert (same.authorized, same.reason) == (True, 'team_match')
        assert (other.authorized, other.reason) == (False, 'not_in_team')

    def test_self_scope(self, facade):
        facade.create_user('cust-1', roles=['customer'])
        own = facade.check_resource_permission('cust-1', 'customers:read', {'type': 'customer', 'id': 'cust-1'})
        other = facade.check_resource_permission('cust-1', 'customers:read', {'type': 'customer', 'id': 'cust-2'})
        assert (own.authorized, own.reason) == (True, 'self_match')
        assert (other.authorized, other.reason) == (False, 'not_self')

    def test_unscoped_grant_is_full_access(self, facade):
        facade.create_user('s1', roles=['customer-support'])
        decision = facade.check_resource_permission('s1', 'customers:read', OTHER_CUSTOMER)
        assert decision.authorized is True
        assert decision.reason == 'full_access'
        assert decision.matched_permission == 'customers:read'
        assert decision.matched_scope is None

    def test_universal_grant(self, facade):
        facade.create_user('root', roles=['super-admin'])
        decision = facade.check_resource_permission('root', 'claims:settle', OTHER_CUSTOMER)
        assert decision.authorized is True
        assert decision.reason == 'full_access'
        assert decision.matched_permission == '*:*'

    def test_missing_permission(self, facade, broker):
        decision = facade.check_resource_permission('u1', 'policies:approve', OWN_CUSTOMER)
        assert decision.reason == 'insufficient_permissions'

    def test_unknown_user(self, facade, publisher):
        decision = facade.check_resource_permission('ghost', 'customers:read', OWN_CUSTOMER)
        assert decision.reason == 'user_not_found'
        assert publisher.events == []

    @pytest.mark.parametrize("resource", [
        {'type': 'customer'},
        {'id': 'c1'},
        {'type': '', 'id': 'c1'},
        'customer/c1',
    ])
    def test_invalid_resource(self, facade, broker, resource):
        with pytest.raises(InvalidResourceError):
            facade.check_resource_permission('u1', 'customers:read', resource)

    def test_medical_scope_denied_by_default(self, facade, claims_nurse):
        decision = facade.check_resource_permission('n1', 'customers:read', OTHER_CUSTOMER)
        assert decision.authorized is False
        assert decision.reason == 'medical_scope_disabled'

    def test_medical_scope_allowed_by_policy(self, role_store, user_store, decision_cache,
                                             publisher, clock, claims_nurse):
        facade = AuthorizationFacade(
            role_store,
            user_store,
            decision_cache,
            scope_evaluator=ResourceScopeEvaluator('allow'),
            publisher=publisher,
            clock=clock
        )
        decision = facade.check_resource_permission('n1', 'customers:read', OTHER_CUSTOMER)
        assert decision.authorized is True
        assert decision.reason == 'medical_access'
        assert decision.matched_scope == 'medical'


class TestCompoundChecks:
    """Any-of and all-of checks."""

    def test_any_permission(self, facade, broker):
        decision = facade.check_any_permission('u1', ['policies:approve', 'quotes:create'])
        assert decision.authorized is True
        assert decision.matched_permission == 'quotes:create'

        denied = facade.check_any_permission('u1', ['policies:approve', 'staff:manage'])
        assert denied.authorized is False
        assert denied.reason == 'insufficient_permissions'

    def test_any_permission_unknown_user(self, facade):
        assert facade.check_any_permission('ghost', ['quotes:create']).reason == 'user_not_found'

    def test_all_permissions(self, facade, broker):
        decision = facade.check_all_permissions('u1', ['quotes:create', 'policies:approve', 'staff:manage'])
        assert decision.authorized is False
        assert decision.missing_permissions == ['policies:approve', 'staff:manage']

        assert facade.check_all_permissions('u1', ['quotes:create', 'forms:read']).authorized is True

    def test_all_permissions_unknown_user(self, facade):
        decision = facade.check_all_permissions('ghost', ['quotes:create'])
        assert decision.authorized is False
        assert decision.missing_permissions == ['quotes:create']


class TestEffectivePermissions:

    def test_view_includes_active_grants(self, facade, broker, clock):
        valid_until = clock() + timedelta(days=2)
        facade.grant_temporary_permission('u1', 'policies:approve', 'manager-1', 'Holiday cover', valid_until)

        view = facade.get_effective_permissions('u1')
        assert view.roles == ['broker']
        assert 'policies:approve' in view.permissions
        assert 'customers:read:own' in view.permissions
        assert view.territory == ['north']
        assert view.team_id == 'team-a'
        [grant] = view.temporary_permissions
        assert grant.valid_until == valid_until
        assert grant.reason == 'Holiday cover'

    def test_future_grant_is_not_listed(self, facade, broker, clock):
        facade.grant_temporary_permission(
            'u1', 'policies:approve', 'manager-1', 'Next week',
            clock() + timedelta(days=10), valid_from=clock() + timedelta(days=7)
        )
        view = facade.get_effective_permissions('u1')
        assert 'policies:approve' not in view.permissions
        assert view.temporary_permissions == []

    def test_unknown_user(self, facade):
        with pytest.raises(UserNotFoundError):
            facade.get_effective_permissions('ghost')


class TestMutationEvents:
    """Mutations publish events and invalidate cached decisions."""

    def test_assign_role(self, facade, broker, publisher):
        result = facade.assign_role('u1', 'underwriter', 'admin')
        assert result.assigned is True
        assert result.roles == ['broker', 'underwriter']

        [event] = publisher.of_type(AuthzEventType.ROLE_ASSIGNED)
        assert event.subject == '/users/u1/roles/underwriter'
        assert event.data['assignedBy'] == 'admin'

    def test_high_privilege_role_requires_approval(self, facade, broker, publisher):
        result = facade.assign_role('u1', 'compliance-officer', 'admin')
        assert result.approval_required is True
        assert result.approval_id
        assert result.error_code == 'AUTHZ_2003'
        assert facade.get_effective_permissions('u1').roles == ['broker']

        [event] = publisher.of_type(AuthzEventType.ROLE_APPROVAL_REQUIRED)
        assert event.data['approvalId'] == result.approval_id
        assert event.data['errorCode'] == 'AUTHZ_2003'
        assert publisher.of_type(AuthzEventType.ROLE_ASSIGNED) == []

    def test_assigning_held_role_publishes_nothing(self, facade, broker, publisher):
        result = facade.assign_role('u1', 'broker', 'admin')
        assert result.already_assigned is True
        assert publisher.events == []

    def test_remove_role(self, facade, broker, publisher):
        facade.assign_role('u1', 'underwriter', 'admin')
        user = facade.remove_role('u1', 'broker', 'admin')
        assert user.roles == ['underwriter']
        [event] = publisher.of_type(AuthzEventType.ROLE_REMOVED)
        assert event.data['removedBy'] == 'admin'
        assert event.data['email'] == 'u1@example.com'

    def test_temporary_grant_lifecycle(self, facade, broker, publisher, clock):
        grant = facade.grant_temporary_permission(
            'u1', 'policies:approve', 'manager-1', 'Cover', clock() + timedelta(days=1)
        )
        revoked = facade.revoke_temporary_permission('u1', grant.id, 'manager-1')
        assert revoked.id == grant.id

        [granted] = publisher.of_type(AuthzEventType.PERMISSION_TEMP_GRANTED)
        [revoked_event] = publisher.of_type(AuthzEventType.PERMISSION_TEMP_REVOKED)
        assert granted.subject == f'/users/u1/permissions/{grant.id}'
        assert granted.data['validUntil'] == grant.valid_until.isoformat()
        assert revoked_event.data['revokedBy'] == 'manager-1'

    def test_update_role_refreshes_holders(self, facade, broker, publisher):
        assert facade.check_permission('u1', 'policies:approve').authorized is False

        updated = facade.update_role(
            'broker', 'admin',
            permissions=['customers:read:own', 'policies:approve', 'quotes:create']
        )
        assert 'policies:approve' in updated.effective_permissions

        decision = facade.check_permission('u1', 'policies:approve')
        assert decision.authorized is True
        assert decision.cached is False

        [event] = publisher.of_type(AuthzEventType.ROLE_UPDATED)
        assert event.data['affectedUsers'] == 1

    def test_delete_role_refreshes_holders(self, facade, claims_nurse, publisher):
        facade.delete_role('claims-nurse', 'admin')
        assert facade.get_effective_permissions('n1').permissions == []
        [event] = publisher.of_type(AuthzEventType.ROLE_DELETED)
        assert event.data['affectedUsers'] == 1

    def test_create_role_event(self, facade, publisher):
        facade.create_role('claims-handler', 'Claims Handler', ['claims:read', 'claims:update:own'], 'admin')
        [event] = publisher.of_type(AuthzEventType.ROLE_CREATED)
        assert event.subject == '/roles/claims-handler'
        assert event.data['permissions'] == ['claims:read', 'claims:update:own']
        assert event.data['performedBy'] == 'admin'

    def test_sync_event(self, facade, publisher):
        result = facade.sync_from_external_groups('ext-1', ['Nectaria-Brokers'], email='ext-1@example.com')
        assert result.created is True
        [event] = publisher.of_type(AuthzEventType.USER_ROLES_SYNCED)
        assert event.data['rolesAdded'] == ['broker']
        assert event.data['currentRoles'] == ['broker']


class TestPublisherFailures:
    """A failing publisher changes neither decisions nor mutations."""

    @pytest.fixture
    def failing_facade(self, role_store, user_store, decision_cache, clock):
        return AuthorizationFacade(
            role_store,
            user_store,
            decision_cache,
            publisher=FailingEventPublisher(),
            clock=clock
        )

    def test_denial_still_returned(self, failing_facade):
        failing_facade.create_user('u1', roles=['broker'])
        decision = failing_facade.check_resource_permission('u1', 'customers:read', OTHER_CUSTOMER)
        assert decision.authorized is False
        assert decision.reason == 'not_owner'
        assert failing_facade.publisher.attempts == 1

    def test_mutation_still_persisted(self, failing_facade):
        failing_facade.create_user('u1', roles=['broker'])
        result = failing_facade.assign_role('u1', 'underwriter', 'admin')
        assert result.assigned is True
        assert failing_facade.get_effective_permissions('u1').roles == ['broker', 'underwriter']
