"""
Role inheritance resolution.

Computes the transitive closure of permissions for a role and for the set of
roles a user holds. A visited set of role ids is threaded through the
recursion: a role already reached contributes nothing a second time, so
diamond-shaped hierarchies count shared ancestors once and cyclic ones
terminate.
"""

import time
from typing import Iterable, List, Optional, Set

import structlog
from prometheus_client import Histogram

from authz_engine.data.models import RoleDefinition

logger = structlog.get_logger(__name__)

resolution_duration = Histogram(
    'authz_role_resolution_duration_seconds',
    'Time spent resolving inherited permissions',
    ['target'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5]
)


class RoleResolver:
    """
    Resolves inherited permissions against a role source.

    The source needs a single method, ``get_roles_by_ids(role_ids)``, that
    returns the active roles among the given ids. Inactive and missing parents
    therefore contribute nothing.
    """

    def __init__(self, role_source):
        self.role_source = role_source

    def effective_permissions(
        self,
        direct_permissions: Iterable[str],
        parent_role_ids: Iterable[str],
        visited: Optional[Set[str]] = None
    ) -> Set[str]:
        """
        Union of ``direct_permissions`` with everything inherited from the parents.

        ``visited`` is updated in place with every role id reached.
        """
        if visited is None:
            visited = set()

        permissions = set(direct_permissions)
        pending = []
        for role_id in parent_role_ids:
            if role_id in visited:
                continue
            visited.add(role_id)
            pending.append(role_id)

        if not pending:
            return permissions

        for parent in self.role_source.get_roles_by_ids(pending):
            permissions |= self.effective_permissions(
                parent.permissions, parent.inherits_from, visited
            )
        return permissions

    def role_effective_permissions(self, role: RoleDefinition) -> List[str]:
        """Sorted effective permissions of a single role."""
        start_time = time.perf_counter()
        permissions = self.effective_permissions(
            role.permissions, role.inherits_from, {role.role_id}
        )
        resolution_duration.labels(target='role').observe(time.perf_counter() - start_time)
        return sorted(permissions)

    def effective_user_permissions(self, role_ids: Iterable[str]) -> List[str]:
        """Sorted effective permissions of a set of held roles; empty for no roles."""
        role_ids = list(dict.fromkeys(role_ids))
        if not role_ids:
            return []

        start_time = time.perf_counter()
        visited = set(role_ids)
        permissions: Set[str] = set()
        for role in self.role_source.get_roles_by_ids(role_ids):
            permissions |= self.effective_permissions(
                role.permissions, role.inherits_from, visited
            )
        resolution_duration.labels(target='user').observe(time.perf_counter() - start_time)

        logger.debug(
            "Resolved user permissions",
            roles=role_ids,
            permission_count=len(permissions)
        )
        return sorted(permissions)
