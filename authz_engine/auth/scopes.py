"""
Resource scope evaluation.

A scoped grant such as ``customers:read:own`` only authorizes resources that
stand in a particular relation to the acting user. This module decides that
relation for a single scope, picks the broadest scope among several grants,
and answers whether a user holds an unscoped (full) grant at all.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Tuple, Union

import structlog
from prometheus_client import Counter

from authz_engine.auth.permissions import Permission
from authz_engine.data.models import ResourceContext, UserRoleAssignment

logger = structlog.get_logger(__name__)

scope_evaluations_total = Counter(
    'authz_scope_evaluations_total',
    'Resource scope evaluations by scope and result',
    ['scope', 'result']
)

FULL_ACCESS_LEVEL = 4
UNKNOWN_SCOPE_LEVEL = -1

# Broader scopes rank higher; None stands for an unscoped grant.
SCOPE_HIERARCHY = {
    None: FULL_ACCESS_LEVEL,
    'territory': 3,
    'team': 2,
    'own': 1,
    'self': 0,
    'medical': 0,
}


class MedicalScopePolicy(str, Enum):
    """How grants carrying the ``medical`` scope are evaluated."""
    DENY = "deny"
    ALLOW = "allow"


def scope_level(scope: Optional[str]) -> int:
    return SCOPE_HIERARCHY.get(scope, UNKNOWN_SCOPE_LEVEL)


@dataclass(frozen=True)
class UserScopeContext:
    """The parts of a user record that scope rules compare against."""

    user_id: str
    team_id: Optional[str] = None
    territory: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_assignment(cls, user: UserRoleAssignment) -> 'UserScopeContext':
        return cls(
            user_id=user.user_id,
            team_id=user.team_id,
            territory=frozenset(user.territory)
        )


@dataclass(frozen=True)
class ScopeCheckResult:
    authorized: bool
    reason: str
    matched_scope: Optional[str] = None


class ResourceScopeEvaluator:
    """
    Decides whether a concrete resource is in bounds for a scoped grant.

    Args:
        medical_policy: ``deny`` fails ``medical`` grants closed; ``allow``
            authorizes any holder of a ``medical`` grant
    """

    def __init__(self, medical_policy: Union[MedicalScopePolicy, str] = MedicalScopePolicy.DENY):
        self.medical_policy = MedicalScopePolicy(medical_policy)

    def check_scope(
        self,
        scope: Optional[str],
        user: UserScopeContext,
        resource: ResourceContext
    ) -> ScopeCheckResult:
        result = self._evaluate(scope, user, resource)
        scope_evaluations_total.labels(
            scope=scope or 'full',
            result='allowed' if result.authorized else 'denied'
        ).inc()
        return result

    def _evaluate(
        self,
        scope: Optional[str],
        user: UserScopeContext,
        resource: ResourceContext
    ) -> ScopeCheckResult:
        if not scope:
            return ScopeCheckResult(True, 'full_access')

        if scope == 'own':
            if resource.owner_id is not None and resource.owner_id == user.user_id:
                return ScopeCheckResult(True, 'owner_match', scope)
            return ScopeCheckResult(False, 'not_owner')

        if scope == 'team':
            if user.team_id and resource.team_id == user.team_id:
                return ScopeCheckResult(True, 'team_match', scope)
            return ScopeCheckResult(False, 'not_in_team')

        if scope == 'territory':
            if resource.territory and resource.territory in user.territory:
                return ScopeCheckResult(True, 'territory_match', scope)
            return ScopeCheckResult(False, 'not_in_territory')

        if scope == 'self':
            if resource.id == user.user_id:
                return ScopeCheckResult(True, 'self_match', scope)
            return ScopeCheckResult(False, 'not_self')

        if scope == 'medical':
            if self.medical_policy is MedicalScopePolicy.ALLOW:
                return ScopeCheckResult(True, 'medical_access', scope)
            return ScopeCheckResult(False, 'medical_scope_disabled')

        logger.warning("Unknown permission scope", scope=scope, user_id=user.user_id)
        return ScopeCheckResult(False, f'unknown_scope:{scope}')

    def check_resource_with_scopes(
        self,
        scopes: Iterable[Optional[str]],
        user: UserScopeContext,
        resource: ResourceContext
    ) -> ScopeCheckResult:
        """
        Evaluate candidate scopes broadest first and return the first that authorizes.

        When none authorizes, the denial carries the reason from the broadest
        scope evaluated.
        """
        ordered = sorted(set(scopes), key=lambda s: (-scope_level(s), s or ''))
        if not ordered:
            return ScopeCheckResult(False, 'no_matching_scope')

        first_denial = None
        for scope in ordered:
            result = self.check_scope(scope, user, resource)
            if result.authorized:
                return result
            if first_denial is None:
                first_denial = result
        return first_denial


def _same_base(granted: Permission, requested: Permission) -> bool:
    return granted.resource == requested.resource and (
        granted.action == '*' or granted.action == requested.action
    )


def has_full_access(permissions: Iterable[str], requested: str) -> bool:
    """True if an unscoped grant (``*:*`` included) covers the request."""
    requested = Permission.parse(requested)
    for granted in permissions:
        granted = Permission.parse(granted)
        if granted.is_universal:
            return True
        if granted.scope is None and _same_base(granted, requested):
            return True
    return False


def get_matching_scopes(permissions: Iterable[str], requested: str) -> List[Optional[str]]:
    """
    Scopes of every grant covering the request's resource and action.

    ``None`` in the result stands for an unscoped grant.
    """
    requested = Permission.parse(requested)
    scopes = []
    for granted in sorted(set(permissions)):
        granted = Permission.parse(granted)
        if granted.is_universal:
            scopes.append(None)
        elif _same_base(granted, requested):
            scopes.append(granted.scope)
    return scopes


def get_broadest_scope(permissions: Iterable[str], requested: str) -> Tuple[Optional[str], int]:
    """Return the broadest matching scope and its level, or ``(None, -1)``."""
    scopes = get_matching_scopes(permissions, requested)
    if not scopes:
        return None, UNKNOWN_SCOPE_LEVEL
    broadest = max(scopes, key=scope_level)
    return broadest, scope_level(broadest)
