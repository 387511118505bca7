"""
Role definition catalogue.

Stores role definitions in the ``roles`` collection keyed by role id and
provides administrative CRUD with validation: kebab-case ids, ids reserved for
the system catalogue, well-formed permissions, existing parents and an
inheritance graph free of cycles. Deletion is a soft delete; inactive roles
are excluded from permission resolution.
"""

import re
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Set

import structlog
from prometheus_client import Counter

from authz_engine.auth.exceptions import (
    AuthorizationErrorCode,
    InvalidPermissionError,
    RoleNotFoundError,
    RoleValidationError,
    SystemRoleProtectedError,
)
from authz_engine.auth.permissions import UNIVERSAL_PERMISSION, normalize_permissions
from authz_engine.auth.resolver import RoleResolver
from authz_engine.data.models import RoleDefinition, RoleWithEffectivePermissions, utc_now
from authz_engine.data.stores import DocumentStore

logger = structlog.get_logger(__name__)

role_operations_total = Counter(
    'authz_role_operations_total',
    'Role catalogue operations by type and result',
    ['operation', 'result']
)

ROLES_COLLECTION = 'roles'

ROLE_ID_PATTERN = re.compile(r'^[a-z][a-z0-9]*(-[a-z0-9]+)*$')

RESERVED_ROLE_IDS = frozenset([
    'super-admin',
    'compliance-officer',
    'broker-manager',
    'senior-broker',
    'junior-broker',
    'underwriter',
    'customer-support',
    'customer',
])

_UPDATABLE_FIELDS = (
    'display_name',
    'description',
    'permissions',
    'inherits_from',
    'is_high_privilege',
    'is_active',
    'external_group',
)


def is_valid_role_id(role_id: str) -> bool:
    return isinstance(role_id, str) and ROLE_ID_PATTERN.match(role_id) is not None


class RoleStore:
    """
    Durable catalogue of role definitions.

    Args:
        store: Document store holding the ``roles`` collection
        clock: Callable returning the current aware datetime
    """

    def __init__(self, store: DocumentStore, clock: Callable = utc_now):
        self.store = store
        self.clock = clock
        self.resolver = RoleResolver(self)

    # Reads

    def get_role(self, role_id: str) -> Optional[RoleDefinition]:
        document = self.store.get_by_id(ROLES_COLLECTION, role_id)
        if document is None:
            return None
        return RoleDefinition.from_document(document)

    def require_role(self, role_id: str) -> RoleDefinition:
        role = self.get_role(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    def get_roles_by_ids(self, role_ids: Iterable[str]) -> List[RoleDefinition]:
        """Active roles among ``role_ids``; missing and inactive ids are skipped."""
        role_ids = list(dict.fromkeys(role_ids))
        if not role_ids:
            return []
        documents = self.store.query(
            ROLES_COLLECTION,
            {'roleId': {'$in': role_ids}, 'isActive': True},
            sort=[('roleId', 1)]
        )
        return [RoleDefinition.from_document(document) for document in documents]

    def get_role_with_effective_permissions(self, role_id: str) -> Optional[RoleWithEffectivePermissions]:
        role = self.get_role(role_id)
        if role is None:
            return None
        return self._with_effective_permissions(role)

    def list_roles(
        self,
        active_only: bool = True,
        include_system: bool = True
    ) -> List[RoleWithEffectivePermissions]:
        """List roles ordered by display name, each with effective permissions."""
        predicate = {}
        if active_only:
            predicate['isActive'] = True
        if not include_system:
            predicate['isSystem'] = False

        documents = self.store.query(ROLES_COLLECTION, predicate, sort=[('displayName', 1)])
        return [
            self._with_effective_permissions(RoleDefinition.from_document(document))
            for document in documents
        ]

    def dependent_role_ids(self, role_id: str) -> Set[str]:
        """``role_id`` plus every role that inherits from it, directly or not."""
        children: Dict[str, Set[str]] = defaultdict(set)
        for document in self.store.query(ROLES_COLLECTION):
            for parent_id in document.get('inheritsFrom') or []:
                children[parent_id].add(document['roleId'])

        dependents = {role_id}
        frontier = [role_id]
        while frontier:
            current = frontier.pop()
            for child in children[current] - dependents:
                dependents.add(child)
                frontier.append(child)
        return dependents

    # Writes

    def create_role(
        self,
        role_id: str,
        display_name: str,
        permissions: Iterable[str],
        created_by: str,
        inherits_from: Optional[Iterable[str]] = None,
        description: str = '',
        is_high_privilege: bool = False,
        external_group: Optional[str] = None
    ) -> RoleWithEffectivePermissions:
        """
        Create a custom (non-system) role.

        Raises:
            RoleValidationError: malformed, reserved or duplicate id, or unknown parent
            InvalidPermissionError: malformed permission or the universal grant
        """
        if not is_valid_role_id(role_id):
            self._reject('create', RoleValidationError(
                f'Invalid role ID format: {role_id}. Must be kebab-case.',
                AuthorizationErrorCode.ROLE_ID_INVALID,
                role_id=role_id
            ))
        if role_id in RESERVED_ROLE_IDS:
            self._reject('create', RoleValidationError(
                f'Role ID "{role_id}" is reserved for system roles.',
                AuthorizationErrorCode.ROLE_ID_RESERVED,
                role_id=role_id
            ))

        permissions = self._validate_permissions(permissions)

        if self.get_role(role_id) is not None:
            self._reject('create', RoleValidationError(
                f'Role with ID "{role_id}" already exists.',
                AuthorizationErrorCode.ROLE_ALREADY_EXISTS,
                role_id=role_id
            ))

        parents = list(dict.fromkeys(inherits_from or []))
        self._validate_parents(role_id, parents)

        now = self.clock()
        role = RoleDefinition(
            role_id=role_id,
            display_name=display_name,
            description=description,
            permissions=permissions,
            inherits_from=parents,
            is_system=False,
            is_high_privilege=is_high_privilege,
            is_active=True,
            external_group=external_group,
            created_at=now,
            created_by=created_by,
        )
        self.store.upsert(ROLES_COLLECTION, role_id, role.to_document())
        role_operations_total.labels(operation='create', result='success').inc()

        logger.info(
            "Role created",
            role_id=role_id,
            permission_count=len(permissions),
            inherits_from=parents,
            created_by=created_by
        )
        return self._with_effective_permissions(role)

    def update_role(self, role_id: str, updated_by: str, **changes) -> RoleWithEffectivePermissions:
        """
        Apply a partial update. Fields left out or passed as None are unchanged.

        Updatable fields: display_name, description, permissions, inherits_from,
        is_high_privilege, is_active, external_group.
        """
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise TypeError(f'Unknown role fields: {", ".join(sorted(unknown))}')

        role = self.require_role(role_id)
        updates = {key: value for key, value in changes.items() if value is not None}

        if role.is_system and updates.get('is_active') is False:
            self._reject('update', SystemRoleProtectedError(role_id))
        if 'permissions' in updates:
            updates['permissions'] = self._validate_permissions(
                updates['permissions'], allow_universal=role.is_system
            )
        if 'inherits_from' in updates:
            updates['inherits_from'] = list(dict.fromkeys(updates['inherits_from']))
            self._validate_parents(role_id, updates['inherits_from'])

        updated = role.model_copy(update={
            **updates,
            'updated_at': self.clock(),
            'updated_by': updated_by,
        })
        self.store.upsert(ROLES_COLLECTION, role_id, updated.to_document())
        role_operations_total.labels(operation='update', result='success').inc()

        logger.info(
            "Role updated",
            role_id=role_id,
            fields=sorted(updates),
            updated_by=updated_by
        )
        return self._with_effective_permissions(updated)

    def delete_role(self, role_id: str, deleted_by: str) -> RoleDefinition:
        """Soft-delete a role. System roles cannot be deleted."""
        role = self.require_role(role_id)
        if role.is_system:
            self._reject('delete', SystemRoleProtectedError(role_id))

        deleted = role.model_copy(update={
            'is_active': False,
            'updated_at': self.clock(),
            'updated_by': deleted_by,
        })
        self.store.upsert(ROLES_COLLECTION, role_id, deleted.to_document())
        role_operations_total.labels(operation='delete', result='success').inc()

        logger.info("Role deleted", role_id=role_id, deleted_by=deleted_by)
        return deleted

    def upsert_role(self, role: RoleDefinition) -> RoleDefinition:
        """Write a role definition as-is. Used for seeding the system catalogue."""
        if role.created_at is None:
            role = role.model_copy(update={'created_at': self.clock()})
        self.store.upsert(ROLES_COLLECTION, role.role_id, role.to_document())
        role_operations_total.labels(operation='upsert', result='success').inc()
        return role

    # Helpers

    def _with_effective_permissions(self, role: RoleDefinition) -> RoleWithEffectivePermissions:
        return RoleWithEffectivePermissions(
            role=role,
            effective_permissions=self.resolver.role_effective_permissions(role)
        )

    def _validate_permissions(self, permissions: Iterable[str], allow_universal: bool = False) -> List[str]:
        permissions = list(permissions)
        if not allow_universal and UNIVERSAL_PERMISSION in permissions:
            raise InvalidPermissionError(
                UNIVERSAL_PERMISSION, 'the universal grant is reserved for system roles'
            )
        return normalize_permissions(permissions)

    def _validate_parents(self, role_id: str, parent_ids: List[str]) -> None:
        for parent_id in parent_ids:
            if parent_id == role_id:
                self._reject('validate', RoleValidationError(
                    'Role cannot inherit from itself.',
                    AuthorizationErrorCode.ROLE_INHERITANCE_CYCLE,
                    role_id=role_id
                ))
            if self.get_role(parent_id) is None:
                self._reject('validate', RoleValidationError(
                    f'Parent role "{parent_id}" does not exist.',
                    AuthorizationErrorCode.ROLE_PARENT_INVALID,
                    role_id=role_id,
                    metadata={'parent_id': parent_id}
                ))

        if role_id in self._ancestor_ids(parent_ids):
            self._reject('validate', RoleValidationError(
                f'Inheriting from {parent_ids} would make "{role_id}" its own ancestor.',
                AuthorizationErrorCode.ROLE_INHERITANCE_CYCLE,
                role_id=role_id
            ))

    def _ancestor_ids(self, role_ids: Iterable[str]) -> Set[str]:
        """All roles reachable through inheritance, active or not."""
        seen: Set[str] = set()
        frontier = list(role_ids)
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            role = self.get_role(current)
            if role is not None:
                frontier.extend(role.inherits_from)
        return seen

    @staticmethod
    def _reject(operation: str, error: Exception) -> None:
        role_operations_total.labels(operation=operation, result='rejected').inc()
        logger.warning("Role change rejected", operation=operation, error=str(error))
        raise error
