"""
Authorization facade.

Answers "may user X do P [on resource R]?" and exposes the mutations that
change the answer. Checks consult the decision cache first; on a miss the
user's record is loaded, role permissions and active temporary grants are
combined, the permission matcher runs and, for scoped matches against a
concrete resource, the scope evaluator narrows the result. Every computed
outcome is cached, positive or negative, until the cache TTL or the next
start or expiry of one of the user's temporary grants, whichever is sooner.

Failure semantics:
- Checks fail closed: anything short of a positive match is a denial.
- A backing store failure while reading propagates as
  ``StorageUnavailableError``; it is never turned into an allow or a deny.
- Cache failures degrade to recomputation inside ``DecisionCache``.
- Event publishing is best effort and never fails a decision or a mutation.

Consistency: invalidation happens synchronously inside each mutation, so a
caller that mutates and then checks sees the new outcome. Concurrent callers
may observe a decision cached just before the mutation until it expires.
"""

import time
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

import structlog
from prometheus_client import Counter, Histogram

from authz_engine.auth.cache import DecisionCache, DecisionCacheEntry
from authz_engine.auth.events import AuthzEventType, EventPublisher, LoggingEventPublisher, build_event
from authz_engine.auth.groups import ExternalGroupMapper
from authz_engine.auth.permissions import (
    Permission,
    has_all_permissions,
    has_any_permission,
    has_permission,
)
from authz_engine.auth.scopes import (
    ResourceScopeEvaluator,
    UserScopeContext,
    get_matching_scopes,
    has_full_access,
)
from authz_engine.data.grants import UserGrantStore
from authz_engine.data.models import (
    ActiveGrantView,
    AllPermissionsDecision,
    AuthorizationDecision,
    ResourceContext,
    RoleAssignmentResult,
    RoleDefinition,
    RoleWithEffectivePermissions,
    SyncResult,
    TemporaryGrant,
    UserPermissionsView,
    UserRoleAssignment,
    utc_now,
)
from authz_engine.data.roles import RoleStore

logger = structlog.get_logger(__name__)

authorization_metrics = {
    'decisions_total': Counter(
        'authz_decisions_total',
        'Authorization decisions by outcome',
        ['check_type', 'decision', 'cache_status']
    ),
    'decision_duration': Histogram(
        'authz_decision_duration_seconds',
        'Time to reach an authorization decision',
        ['check_type', 'cache_status'],
        buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5]
    ),
    'event_publish_failures': Counter(
        'authz_event_publish_failures_total',
        'Events that could not be published',
        ['event_type']
    ),
}

USER_NOT_FOUND = 'user_not_found'
INSUFFICIENT_PERMISSIONS = 'insufficient_permissions'
FULL_ACCESS = 'full_access'


class AuthorizationFacade:
    """
    Entry point for permission checks, introspection and grant mutations.

    Args:
        role_store: Role catalogue
        user_store: User role assignments and temporary grants
        cache: Decision cache; the same instance must be wired into ``user_store``
        scope_evaluator: Resource scope rules
        publisher: Event destination; defaults to the structured log
        group_mapper: Identity-provider group mapping used by external sync
        clock: Callable returning the current aware datetime
    """

    def __init__(
        self,
        role_store: RoleStore,
        user_store: UserGrantStore,
        cache: DecisionCache,
        scope_evaluator: Optional[ResourceScopeEvaluator] = None,
        publisher: Optional[EventPublisher] = None,
        group_mapper: Optional[ExternalGroupMapper] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.role_store = role_store
        self.user_store = user_store
        self.cache = cache
        self.scope_evaluator = scope_evaluator or ResourceScopeEvaluator()
        self.publisher = publisher or LoggingEventPublisher()
        self.group_mapper = group_mapper or ExternalGroupMapper()
        self.clock = clock

    # Checks

    def check_permission(self, user_id: str, permission: str) -> AuthorizationDecision:
        """
        Decide whether a user holds a permission, ignoring resource scopes.

        Raises:
            InvalidPermissionError: malformed permission
            StorageUnavailableError: the user record could not be read
        """
        start_time = time.perf_counter()
        permission = str(Permission.parse(permission))

        cached = self.cache.get(user_id, permission)
        if cached is not None:
            return self._from_cache('permission', cached, start_time)

        user = self.user_store.find_user(user_id)
        if user is None:
            decision = AuthorizationDecision(authorized=False, reason=USER_NOT_FOUND)
            self._cache_decision(user_id, permission, decision)
            return self._finish('permission', user_id, permission, decision, start_time)

        now = self.clock()
        all_permissions = self.user_store.all_effective_permissions(user, now)
        result = has_permission(all_permissions, permission)

        if result.authorized:
            decision = AuthorizationDecision(
                authorized=True,
                matched_permission=result.matched_permission,
                matched_scope=result.scope
            )
        else:
            decision = AuthorizationDecision(authorized=False, reason=INSUFFICIENT_PERMISSIONS)

        self._cache_decision(user_id, permission, decision, ttl_seconds=self._decision_ttl(user, now))
        if not decision.authorized:
            self._publish_denial(user, permission, decision, all_permissions)
        return self._finish('permission', user_id, permission, decision, start_time)

    def check_resource_permission(
        self,
        user_id: str,
        permission: str,
        resource: Union[ResourceContext, Mapping[str, Any]]
    ) -> AuthorizationDecision:
        """
        Decide whether a user may exercise a permission on a concrete resource.

        Unscoped grants authorize outright. Otherwise every scope granted for
        the permission is evaluated, broadest first.

        Raises:
            InvalidPermissionError: malformed permission
            InvalidResourceError: resource without a type or id
            StorageUnavailableError: the user record could not be read
        """
        start_time = time.perf_counter()
        permission = str(Permission.parse(permission))
        resource = ResourceContext.parse(resource)

        cached = self.cache.get(user_id, permission, resource.id)
        if cached is not None:
            return self._from_cache('resource', cached, start_time)

        user = self.user_store.find_user(user_id)
        if user is None:
            decision = AuthorizationDecision(authorized=False, reason=USER_NOT_FOUND)
            self._cache_decision(user_id, permission, decision, resource)
            return self._finish('resource', user_id, permission, decision, start_time)

        now = self.clock()
        all_permissions = self.user_store.all_effective_permissions(user, now)
        base = has_permission(all_permissions, permission)

        if not base.authorized:
            decision = AuthorizationDecision(authorized=False, reason=INSUFFICIENT_PERMISSIONS)
        elif has_full_access(all_permissions, permission):
            decision = AuthorizationDecision(
                authorized=True,
                reason=FULL_ACCESS,
                matched_permission=base.matched_permission
            )
        else:
            scoped = self.scope_evaluator.check_resource_with_scopes(
                get_matching_scopes(all_permissions, permission),
                UserScopeContext.from_assignment(user),
                resource
            )
            decision = AuthorizationDecision(
                authorized=scoped.authorized,
                reason=scoped.reason,
                matched_permission=base.matched_permission if scoped.authorized else None,
                matched_scope=scoped.matched_scope
            )

        self._cache_decision(user_id, permission, decision, resource, self._decision_ttl(user, now))
        if not decision.authorized:
            self._publish_denial(user, permission, decision, all_permissions, resource)
        return self._finish('resource', user_id, permission, decision, start_time)

    def check_any_permission(self, user_id: str, permissions: Iterable[str]) -> AuthorizationDecision:
        """Authorized if the user holds at least one of ``permissions``."""
        start_time = time.perf_counter()
        permissions = [str(Permission.parse(p)) for p in permissions]
        user = self.user_store.find_user(user_id)
        if user is None:
            decision = AuthorizationDecision(authorized=False, reason=USER_NOT_FOUND)
        else:
            result = has_any_permission(self.user_store.all_effective_permissions(user, self.clock()), permissions)
            decision = AuthorizationDecision(
                authorized=result.authorized,
                reason=None if result.authorized else INSUFFICIENT_PERMISSIONS,
                matched_permission=result.matched_permission,
                matched_scope=result.scope
            )
        return self._finish('any', user_id, ','.join(permissions), decision, start_time)

    def check_all_permissions(self, user_id: str, permissions: Iterable[str]) -> AllPermissionsDecision:
        """Authorized only if the user holds every one of ``permissions``."""
        permissions = [str(Permission.parse(p)) for p in permissions]
        user = self.user_store.find_user(user_id)
        if user is None:
            result = AllPermissionsDecision(authorized=False, missing_permissions=permissions)
        else:
            result = has_all_permissions(self.user_store.all_effective_permissions(user, self.clock()), permissions)

        authorization_metrics['decisions_total'].labels(
            check_type='all',
            decision='allow' if result.authorized else 'deny',
            cache_status='bypass'
        ).inc()
        return result

    def get_effective_permissions(self, user_id: str) -> UserPermissionsView:
        """
        Everything a user can currently do.

        Raises:
            UserNotFoundError: the user has no record
        """
        user = self.user_store.get_user(user_id)
        now = self.clock()
        active = self.user_store.active_temporary_permissions(user, now)
        return UserPermissionsView(
            user_id=user.user_id,
            roles=user.roles,
            permissions=self.user_store.all_effective_permissions(user, now),
            temporary_permissions=[
                ActiveGrantView(permission=g.permission, valid_until=g.valid_until, reason=g.reason)
                for g in active
            ],
            territory=user.territory,
            team_id=user.team_id
        )

    # User grants

    def create_user(self, user_id: str, **kwargs) -> UserRoleAssignment:
        return self.user_store.create_user(user_id, **kwargs)

    def update_user_scope(self, user_id: str, **kwargs) -> UserRoleAssignment:
        return self.user_store.update_user_scope(user_id, **kwargs)

    def assign_role(self, user_id: str, role_id: str, assigned_by: str) -> RoleAssignmentResult:
        result = self.user_store.assign_role(user_id, role_id, assigned_by)
        if result.approval_required:
            self._publish(
                AuthzEventType.ROLE_APPROVAL_REQUIRED,
                f'/users/{user_id}/roles/{role_id}',
                userId=user_id,
                roleId=role_id,
                assignedBy=assigned_by,
                approvalId=result.approval_id,
                errorCode=result.error_code
            )
        elif result.assigned:
            self._publish(
                AuthzEventType.ROLE_ASSIGNED,
                f'/users/{user_id}/roles/{role_id}',
                userId=user_id,
                roleId=role_id,
                assignedBy=assigned_by,
                roles=result.roles
            )
        return result

    def remove_role(self, user_id: str, role_id: str, removed_by: str) -> UserRoleAssignment:
        user = self.user_store.remove_role(user_id, role_id, removed_by)
        self._publish(
            AuthzEventType.ROLE_REMOVED,
            f'/users/{user_id}/roles/{role_id}',
            userId=user_id,
            email=user.email,
            roleId=role_id,
            removedBy=removed_by,
            effectivePermissions=user.effective_permissions
        )
        return user

    def sync_from_external_groups(
        self,
        user_id: str,
        group_ids: Iterable[str],
        group_to_role_map: Optional[Mapping[str, str]] = None,
        email: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> SyncResult:
        """Reconcile a user's roles with their identity-provider groups."""
        mapper = ExternalGroupMapper(group_to_role_map) if group_to_role_map is not None else self.group_mapper
        result = self.user_store.sync_from_external_groups(
            user_id, group_ids, mapper, email=email, organization_id=organization_id
        )
        self._publish(
            AuthzEventType.USER_ROLES_SYNCED,
            f'/users/{user_id}',
            userId=user_id,
            created=result.created,
            rolesAdded=result.added,
            rolesRemoved=result.removed,
            currentRoles=result.current_roles
        )
        return result

    def grant_temporary_permission(
        self,
        user_id: str,
        permission: str,
        granted_by: str,
        reason: str,
        valid_until: datetime,
        valid_from: Optional[datetime] = None
    ) -> TemporaryGrant:
        grant = self.user_store.grant_temporary_permission(
            user_id, permission, granted_by, reason, valid_until, valid_from
        )
        self._publish(
            AuthzEventType.PERMISSION_TEMP_GRANTED,
            f'/users/{user_id}/permissions/{grant.id}',
            userId=user_id,
            permission=grant.permission,
            grantedBy=granted_by,
            validFrom=grant.valid_from.isoformat(),
            validUntil=grant.valid_until.isoformat(),
            reason=reason
        )
        return grant

    def revoke_temporary_permission(self, user_id: str, grant_id: str, revoked_by: str) -> TemporaryGrant:
        grant = self.user_store.revoke_temporary_permission(user_id, grant_id, revoked_by)
        self._publish(
            AuthzEventType.PERMISSION_TEMP_REVOKED,
            f'/users/{user_id}/permissions/{grant_id}',
            userId=user_id,
            permission=grant.permission,
            revokedBy=revoked_by,
            validUntil=grant.valid_until.isoformat(),
            reason=grant.reason
        )
        return grant

    # Role administration

    def create_role(self, role_id: str, display_name: str, permissions: Iterable[str],
                    created_by: str, **kwargs) -> RoleWithEffectivePermissions:
        created = self.role_store.create_role(role_id, display_name, permissions, created_by, **kwargs)
        self._publish(
            AuthzEventType.ROLE_CREATED,
            f'/roles/{role_id}',
            roleId=role_id,
            displayName=display_name,
            permissions=created.role.permissions,
            performedBy=created_by
        )
        return created

    def update_role(self, role_id: str, updated_by: str, **changes) -> RoleWithEffectivePermissions:
        """Update a role and refresh every user whose permissions depend on it."""
        updated = self.role_store.update_role(role_id, updated_by, **changes)
        refreshed = self._propagate_role_change(role_id)
        self._publish(
            AuthzEventType.ROLE_UPDATED,
            f'/roles/{role_id}',
            roleId=role_id,
            displayName=updated.role.display_name,
            permissions=updated.role.permissions,
            performedBy=updated_by,
            affectedUsers=len(refreshed)
        )
        return updated

    def delete_role(self, role_id: str, deleted_by: str) -> RoleDefinition:
        deleted = self.role_store.delete_role(role_id, deleted_by)
        refreshed = self._propagate_role_change(role_id)
        self._publish(
            AuthzEventType.ROLE_DELETED,
            f'/roles/{role_id}',
            roleId=role_id,
            displayName=deleted.display_name,
            performedBy=deleted_by,
            affectedUsers=len(refreshed)
        )
        return deleted

    # Helpers

    def _propagate_role_change(self, role_id: str) -> List[str]:
        return self.user_store.recompute_for_roles(self.role_store.dependent_role_ids(role_id))

    def _cache_decision(
        self,
        user_id: str,
        permission: str,
        decision: AuthorizationDecision,
        resource: Optional[ResourceContext] = None,
        ttl_seconds: Optional[int] = None
    ) -> None:
        self.cache.put(
            user_id,
            permission,
            decision.authorized,
            reason=decision.reason,
            matched_permission=decision.matched_permission,
            matched_scope=decision.matched_scope,
            resource_id=resource.id if resource else None,
            resource_type=resource.type if resource else None,
            ttl_seconds=ttl_seconds
        )

    def _decision_ttl(self, user: UserRoleAssignment, now: datetime) -> Optional[int]:
        """Whole seconds until one of the user's temporary grants starts or expires."""
        transition = self.user_store.next_grant_transition(user, now)
        if transition is None:
            return None
        return int((transition - now).total_seconds())

    def _from_cache(self, check_type: str, entry: DecisionCacheEntry, start_time: float) -> AuthorizationDecision:
        decision = AuthorizationDecision(
            authorized=entry.authorized,
            reason=entry.reason,
            matched_permission=entry.matched_permission,
            matched_scope=entry.matched_scope,
            cached=True
        )
        self._record(check_type, decision, 'hit', start_time)
        return decision

    def _finish(
        self,
        check_type: str,
        user_id: str,
        permission: str,
        decision: AuthorizationDecision,
        start_time: float
    ) -> AuthorizationDecision:
        self._record(check_type, decision, 'miss', start_time)
        logger.debug(
            "Authorization decision",
            check_type=check_type,
            user_id=user_id,
            permission=permission,
            authorized=decision.authorized,
            reason=decision.reason,
            matched_scope=decision.matched_scope
        )
        return decision

    @staticmethod
    def _record(check_type: str, decision: AuthorizationDecision, cache_status: str, start_time: float) -> None:
        authorization_metrics['decisions_total'].labels(
            check_type=check_type,
            decision='allow' if decision.authorized else 'deny',
            cache_status=cache_status
        ).inc()
        authorization_metrics['decision_duration'].labels(
            check_type=check_type, cache_status=cache_status
        ).observe(time.perf_counter() - start_time)

    def _publish_denial(
        self,
        user: UserRoleAssignment,
        permission: str,
        decision: AuthorizationDecision,
        all_permissions: List[str],
        resource: Optional[ResourceContext] = None
    ) -> None:
        logger.info(
            "Permission denied",
            user_id=user.user_id,
            permission=permission,
            reason=decision.reason,
            resource_type=resource.type if resource else None,
            resource_id=resource.id if resource else None
        )
        self._publish(
            AuthzEventType.PERMISSION_DENIED,
            f'/users/{user.user_id}',
            userId=user.user_id,
            email=user.email,
            permission=permission,
            decision='deny',
            reason=decision.reason,
            matchedScope=decision.matched_scope,
            resource={'type': resource.type, 'id': resource.id} if resource else None,
            userRoles=user.roles,
            userPermissions=all_permissions
        )

    def _publish(self, event_type: AuthzEventType, subject: str, **data: Any) -> None:
        try:
            self.publisher.publish(build_event(event_type, subject, clock=self.clock, **data))
        except Exception as e:
            # Delivery is best effort; the decision or mutation already stands
            authorization_metrics['event_publish_failures'].labels(event_type=event_type.value).inc()
            logger.warning(
                "Failed to publish authorization event",
                event_type=event_type.value,
                subject=subject,
                error=str(e),
                error_type=type(e).__name__
            )
