"""
User role assignments and temporary grants.

Each user has one record in the ``user_roles`` collection holding the roles
they hold, a materialized copy of the inheritance-resolved permissions of
those roles, their territory and team, and any temporary grants. Every
mutation recomputes what it affects, persists the record with a single
upsert and then invalidates the user's cached decisions.

Concurrent mutations of the same user are last-writer-wins at the record
level; no locking is layered on top of the document store.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Mapping, Optional, Union

import structlog
from prometheus_client import Counter

from authz_engine.auth.exceptions import (
    AuthorizationErrorCode,
    ExceedsMaxDurationError,
    GrantMustBeFutureError,
    InvalidGrantError,
    RoleInactiveError,
    RoleNotAssignedError,
    TemporaryGrantNotFoundError,
    UserNotFoundError,
    WildcardNotAllowedError,
)
from authz_engine.auth.groups import ExternalGroupMapper
from authz_engine.auth.permissions import UNIVERSAL_PERMISSION, Permission
from authz_engine.data.exceptions import DocumentConflictError, StorageOperationType
from authz_engine.data.models import (
    RoleAssignmentResult,
    SyncResult,
    TemporaryGrant,
    UserRoleAssignment,
    UserSource,
    as_aware_datetime,
    utc_now,
)
from authz_engine.data.roles import RoleStore
from authz_engine.data.stores import DocumentStore

logger = structlog.get_logger(__name__)

grant_operations_total = Counter(
    'authz_user_grant_operations_total',
    'User role and temporary grant mutations by type and result',
    ['operation', 'result']
)

USERS_COLLECTION = 'user_roles'
DEFAULT_MAX_TEMP_GRANT_DAYS = 30


class UserGrantStore:
    """
    Durable per-user role assignments and temporary grants.

    Args:
        store: Document store holding the ``user_roles`` collection
        role_store: Role catalogue used for lookups and inheritance resolution
        cache: Decision cache exposing ``invalidate_user``; None disables invalidation
        clock: Callable returning the current aware datetime
        max_temp_grant_days: Upper bound on a temporary grant's lifetime at creation
    """

    def __init__(
        self,
        store: DocumentStore,
        role_store: RoleStore,
        cache=None,
        clock: Callable[[], datetime] = utc_now,
        max_temp_grant_days: int = DEFAULT_MAX_TEMP_GRANT_DAYS
    ):
        self.store = store
        self.role_store = role_store
        self.resolver = role_store.resolver
        self.cache = cache
        self.clock = clock
        self.max_temp_grant_days = max_temp_grant_days

    # Reads

    def find_user(self, user_id: str) -> Optional[UserRoleAssignment]:
        document = self.store.get_by_id(USERS_COLLECTION, user_id)
        if document is None:
            return None
        return UserRoleAssignment.from_document(document)

    def get_user(self, user_id: str) -> UserRoleAssignment:
        user = self.find_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def list_users_with_roles(self, role_ids: Iterable[str]) -> List[UserRoleAssignment]:
        role_ids = list(dict.fromkeys(role_ids))
        if not role_ids:
            return []
        documents = self.store.query(
            USERS_COLLECTION, {'roles': {'$in': role_ids}}, sort=[('userId', 1)]
        )
        return [UserRoleAssignment.from_document(document) for document in documents]

    def active_temporary_permissions(
        self,
        user: UserRoleAssignment,
        now: Optional[datetime] = None
    ) -> List[TemporaryGrant]:
        now = now or self.clock()
        return [grant for grant in user.temporary_permissions if grant.is_active(now)]

    def all_effective_permissions(
        self,
        user: UserRoleAssignment,
        now: Optional[datetime] = None
    ) -> List[str]:
        """Role permissions plus active temporary grants, deduplicated and sorted."""
        permissions = set(user.effective_permissions)
        permissions.update(
            grant.permission for grant in self.active_temporary_permissions(user, now)
        )
        return sorted(permissions)

    def next_grant_transition(
        self,
        user: UserRoleAssignment,
        now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Earliest grant start or expiry after ``now``; None when no grant will change state."""
        now = now or self.clock()
        boundaries = [
            moment
            for grant in user.temporary_permissions
            for moment in (grant.valid_from, grant.valid_until)
            if moment > now
        ]
        return min(boundaries, default=None)

    # User lifecycle

    def create_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        organization_id: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        territory: Optional[Iterable[str]] = None,
        team_id: Optional[str] = None,
        source: UserSource = UserSource.MANUAL,
        external_groups: Optional[Iterable[str]] = None
    ) -> UserRoleAssignment:
        if self.find_user(user_id) is not None:
            raise DocumentConflictError(
                f'User "{user_id}" already exists.',
                operation=StorageOperationType.WRITE,
                collection=USERS_COLLECTION
            )

        roles = list(dict.fromkeys(roles or []))
        now = self.clock()
        user = UserRoleAssignment(
            user_id=user_id,
            email=email,
            organization_id=organization_id,
            roles=roles,
            effective_permissions=self.resolver.effective_user_permissions(roles),
            territory=list(territory or []),
            team_id=team_id,
            external_groups=list(external_groups or []),
            source=source,
            synced_at=now if source == UserSource.EXTERNAL_SYNC else None,
            created_at=now,
            updated_at=now,
        )
        self._save(user)
        grant_operations_total.labels(operation='create_user', result='success').inc()
        logger.info("User created", user_id=user_id, roles=roles, source=str(user.source))
        return user

    def update_user_scope(
        self,
        user_id: str,
        territory: Optional[Iterable[str]] = None,
        team_id: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> UserRoleAssignment:
        """Change the fields scope rules compare against. None leaves a field unchanged."""
        user = self.get_user(user_id)
        updates = {'updated_at': self.clock()}
        if territory is not None:
            updates['territory'] = list(territory)
        if team_id is not None:
            updates['team_id'] = team_id
        if organization_id is not None:
            updates['organization_id'] = organization_id

        updated = user.model_copy(update=updates)
        self._save(updated)
        self._invalidate(user_id)
        grant_operations_total.labels(operation='update_scope', result='success').inc()
        logger.info("User scope updated", user_id=user_id, fields=sorted(updates))
        return updated

    # Role assignment

    def assign_role(self, user_id: str, role_id: str, assigned_by: str) -> RoleAssignmentResult:
        """
        Assign a role to a user.

        High-privilege roles are not assigned here: the result carries
        ``approval_required`` and an approval id for the external workflow,
        and the user's record is left untouched. Assigning a role the user
        already holds is a successful no-op.

        Raises:
            RoleNotFoundError: the role does not exist
            RoleInactiveError: the role is soft-deleted
            UserNotFoundError: the user has no record
        """
        role = self.role_store.require_role(role_id)
        if not role.is_active:
            grant_operations_total.labels(operation='assign_role', result='rejected').inc()
            raise RoleInactiveError(role_id)

        user = self.get_user(user_id)

        if role.is_high_privilege:
            approval_id = str(uuid.uuid4())
            grant_operations_total.labels(operation='assign_role', result='approval_required').inc()
            logger.info(
                "High-privilege role assignment requires approval",
                user_id=user_id,
                role_id=role_id,
                approval_id=approval_id,
                assigned_by=assigned_by
            )
            return RoleAssignmentResult(
                user_id=user_id,
                role_id=role_id,
                approval_required=True,
                approval_id=approval_id,
                error_code=AuthorizationErrorCode.ROLE_APPROVAL_REQUIRED.value,
                roles=user.roles
            )

        if role_id in user.roles:
            grant_operations_total.labels(operation='assign_role', result='noop').inc()
            return RoleAssignmentResult(
                user_id=user_id,
                role_id=role_id,
                already_assigned=True,
                roles=user.roles
            )

        updated = self._with_roles(user, user.roles + [role_id], source=UserSource.MANUAL)
        self._save(updated)
        self._invalidate(user_id)

        grant_operations_total.labels(operation='assign_role', result='success').inc()
        logger.info("Role assigned", user_id=user_id, role_id=role_id, assigned_by=assigned_by)
        return RoleAssignmentResult(
            user_id=user_id,
            role_id=role_id,
            assigned=True,
            roles=updated.roles
        )

    def remove_role(self, user_id: str, role_id: str, removed_by: str) -> UserRoleAssignment:
        user = self.get_user(user_id)
        if role_id not in user.roles:
            grant_operations_total.labels(operation='remove_role', result='rejected').inc()
            raise RoleNotAssignedError(user_id, role_id)

        remaining = [held for held in user.roles if held != role_id]
        updated = self._with_roles(user, remaining, source=UserSource.MANUAL)
        self._save(updated)
        self._invalidate(user_id)

        grant_operations_total.labels(operation='remove_role', result='success').inc()
        logger.info("Role removed", user_id=user_id, role_id=role_id, removed_by=removed_by)
        return updated

    def sync_from_external_groups(
        self,
        user_id: str,
        group_ids: Iterable[str],
        group_to_role_map: Union[ExternalGroupMapper, Mapping[str, str]],
        email: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> SyncResult:
        """
        Replace a user's roles with those mapped from identity-provider groups.

        Unmapped groups are ignored. The user record is created when missing.
        """
        mapper = group_to_role_map
        if not isinstance(mapper, ExternalGroupMapper):
            mapper = ExternalGroupMapper(group_to_role_map)

        group_ids = list(group_ids)
        current_roles = mapper.map_groups_to_roles(group_ids)
        user = self.find_user(user_id)

        if user is None:
            self.create_user(
                user_id,
                email=email,
                organization_id=organization_id,
                roles=current_roles,
                source=UserSource.EXTERNAL_SYNC,
                external_groups=group_ids
            )
            previous_roles: List[str] = []
            created = True
        else:
            previous_roles = list(user.roles)
            now = self.clock()
            updated = self._with_roles(user, current_roles, source=UserSource.EXTERNAL_SYNC)
            updated = updated.model_copy(update={
                'external_groups': group_ids,
                'synced_at': now,
                'email': email or user.email,
            })
            self._save(updated)
            created = False

        self._invalidate(user_id)
        changes = mapper.diff_roles(previous_roles, current_roles)

        grant_operations_total.labels(operation='sync', result='success').inc()
        logger.info(
            "User roles synced from external groups",
            user_id=user_id,
            created=created,
            added=changes.added,
            removed=changes.removed
        )
        return SyncResult(
            user_id=user_id,
            created=created,
            previous_roles=previous_roles,
            current_roles=current_roles,
            added=changes.added,
            removed=changes.removed
        )

    def recompute_for_roles(self, role_ids: Iterable[str]) -> List[str]:
        """
        Recompute materialized permissions for every holder of ``role_ids``.

        Returns the ids of the users that were rewritten.
        """
        refreshed = []
        for user in self.list_users_with_roles(role_ids):
            updated = self._with_roles(user, user.roles)
            self._save(updated)
            self._invalidate(user.user_id)
            refreshed.append(user.user_id)

        if refreshed:
            logger.info("Recomputed effective permissions", user_count=len(refreshed))
        return refreshed

    # Temporary grants

    def grant_temporary_permission(
        self,
        user_id: str,
        permission: str,
        granted_by: str,
        reason: str,
        valid_until: datetime,
        valid_from: Optional[datetime] = None
    ) -> TemporaryGrant:
        """
        Attach a time-boxed permission to a user.

        Raises:
            InvalidPermissionError: malformed permission
            WildcardNotAllowedError: the universal grant was requested
            GrantMustBeFutureError: ``valid_until`` is not after now
            ExceedsMaxDurationError: ``valid_until`` is too far out
            UserNotFoundError: the user has no record
        """
        now = self.clock()
        permission = str(Permission.parse(permission))
        valid_until = as_aware_datetime(valid_until)
        valid_from = as_aware_datetime(valid_from)

        try:
            if permission == UNIVERSAL_PERMISSION:
                raise WildcardNotAllowedError(permission)
            if valid_until <= now:
                raise GrantMustBeFutureError(valid_until)
            if valid_until > now + timedelta(days=self.max_temp_grant_days):
                raise ExceedsMaxDurationError(valid_until, self.max_temp_grant_days)
            valid_from = valid_from or now
            if valid_from >= valid_until:
                raise InvalidGrantError(
                    'validFrom must be before validUntil.',
                    permission=permission
                )
        except InvalidGrantError as e:
            grant_operations_total.labels(operation='grant_temp', result='rejected').inc()
            logger.warning(
                "Temporary grant rejected",
                user_id=user_id,
                permission=permission,
                error_code=e.error_code.value
            )
            raise

        user = self.get_user(user_id)
        grant = TemporaryGrant(
            id=str(uuid.uuid4()),
            permission=permission,
            granted_by=granted_by,
            reason=reason,
            valid_from=valid_from,
            valid_until=valid_until,
            created_at=now,
        )
        updated = user.model_copy(update={
            'temporary_permissions': user.temporary_permissions + [grant],
            'updated_at': now,
        })
        self._save(updated)
        self._invalidate(user_id)

        grant_operations_total.labels(operation='grant_temp', result='success').inc()
        logger.info(
            "Temporary permission granted",
            user_id=user_id,
            permission=permission,
            grant_id=grant.id,
            valid_until=valid_until.isoformat(),
            granted_by=granted_by
        )
        return grant

    def revoke_temporary_permission(self, user_id: str, grant_id: str, revoked_by: str) -> TemporaryGrant:
        user = self.get_user(user_id)
        revoked = next((g for g in user.temporary_permissions if g.id == grant_id), None)
        if revoked is None:
            grant_operations_total.labels(operation='revoke_temp', result='rejected').inc()
            raise TemporaryGrantNotFoundError(user_id, grant_id)

        updated = user.model_copy(update={
            'temporary_permissions': [g for g in user.temporary_permissions if g.id != grant_id],
            'updated_at': self.clock(),
        })
        self._save(updated)
        self._invalidate(user_id)

        grant_operations_total.labels(operation='revoke_temp', result='success').inc()
        logger.info(
            "Temporary permission revoked",
            user_id=user_id,
            grant_id=grant_id,
            permission=revoked.permission,
            revoked_by=revoked_by
        )
        return revoked

    # Helpers

    def _with_roles(
        self,
        user: UserRoleAssignment,
        roles: List[str],
        source: Optional[UserSource] = None
    ) -> UserRoleAssignment:
        roles = list(dict.fromkeys(roles))
        updates = {
            'roles': roles,
            'effective_permissions': self.resolver.effective_user_permissions(roles),
            'updated_at': self.clock(),
        }
        if source is not None:
            updates['source'] = source.value
        return user.model_copy(update=updates)

    def _save(self, user: UserRoleAssignment) -> None:
        self.store.upsert(USERS_COLLECTION, user.user_id, user.to_document())

    def _invalidate(self, user_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate_user(user_id)
