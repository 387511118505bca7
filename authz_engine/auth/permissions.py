"""
Permission strings and the permission matching algorithm.

A permission is ``resource:action`` or ``resource:action:scope`` made of
lowercase words, for example ``customers:read:own``. ``*`` in the action
position is a category wildcard and ``*:*`` is the universal grant.

Matching a requested permission against one granted permission:

1. ``*:*`` matches anything, with no scope.
2. Identical permissions match, with no scope.
3. Same resource and a ``*`` action match, carrying the granted scope if any.
4. Same resource and action match only when the grant carries a scope, which
   is returned so the caller can narrow the decision to a concrete resource.

Everything else is a miss. A requested ``customers:read:own`` is therefore not
satisfied by a granted ``customers:read``.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Union

import structlog

from authz_engine.auth.exceptions import InvalidPermissionError
from authz_engine.data.models import AllPermissionsDecision

logger = structlog.get_logger(__name__)

UNIVERSAL_PERMISSION = '*:*'
WILDCARD_ACTION = '*'

_WORD = r'[a-z][a-z0-9_-]*'
PERMISSION_PATTERN = re.compile(
    rf'^(?:\*:\*|{_WORD}:(?:\*|{_WORD})(?::{_WORD})?)$'
)


@dataclass(frozen=True)
class Permission:
    """Parsed ``resource:action[:scope]`` permission."""

    resource: str
    action: str
    scope: Optional[str] = None

    @classmethod
    def parse(cls, value: Union[str, 'Permission']) -> 'Permission':
        """
        Parse and validate a permission string.

        Raises:
            InvalidPermissionError: if the value is not a well-formed permission
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidPermissionError(value, 'expected a string')
        return _parse(value)

    @property
    def is_universal(self) -> bool:
        return self.resource == '*' and self.action == '*'

    @property
    def is_wildcard(self) -> bool:
        return self.action == WILDCARD_ACTION

    @property
    def base(self) -> str:
        """The permission without its scope segment."""
        return f'{self.resource}:{self.action}'

    def __str__(self) -> str:
        if self.scope:
            return f'{self.base}:{self.scope}'
        return self.base


@lru_cache(maxsize=4096)
def _parse(value: str) -> Permission:
    if not PERMISSION_PATTERN.match(value):
        raise InvalidPermissionError(value, 'expected resource:action[:scope]')
    parts = value.split(':')
    return Permission(
        resource=parts[0],
        action=parts[1],
        scope=parts[2] if len(parts) == 3 else None
    )


def is_valid_permission(value: str) -> bool:
    """Return True if ``value`` is a well-formed permission string."""
    return isinstance(value, str) and PERMISSION_PATTERN.match(value) is not None


def normalize_permissions(permissions: Iterable[str]) -> List[str]:
    """Validate, deduplicate and sort a collection of permission strings."""
    return sorted({str(Permission.parse(permission)) for permission in permissions})


@dataclass(frozen=True)
class PermissionMatch:
    """Result of matching one granted permission against a request."""

    matches: bool
    scope: Optional[str] = None


@dataclass(frozen=True)
class PermissionCheck:
    """Result of checking a request against a set of granted permissions."""

    authorized: bool
    matched_permission: Optional[str] = None
    scope: Optional[str] = None


NO_MATCH = PermissionMatch(matches=False)


def matches_permission(
    requested: Union[str, Permission],
    granted: Union[str, Permission]
) -> PermissionMatch:
    """Match a requested permission against a single granted permission."""
    requested = Permission.parse(requested)
    granted = Permission.parse(granted)

    if granted.is_universal:
        return PermissionMatch(matches=True)

    if granted == requested:
        return PermissionMatch(matches=True)

    if granted.resource == requested.resource:
        if granted.action == WILDCARD_ACTION:
            return PermissionMatch(matches=True, scope=granted.scope)
        if granted.action == requested.action and granted.scope:
            return PermissionMatch(matches=True, scope=granted.scope)

    return NO_MATCH


def _granted_in_order(granted_permissions: Iterable[Union[str, Permission]]) -> List[Permission]:
    parsed = []
    for granted in granted_permissions:
        try:
            parsed.append(Permission.parse(granted))
        except InvalidPermissionError:
            # A malformed stored grant can never authorize anything
            logger.warning("Ignoring malformed granted permission", permission=str(granted))
    return sorted(set(parsed), key=str)


def has_permission(
    granted_permissions: Iterable[Union[str, Permission]],
    requested: Union[str, Permission]
) -> PermissionCheck:
    """
    Check a request against granted permissions.

    Grants are evaluated in permission-string order and the first match wins,
    so the result is deterministic regardless of how the set was built.
    """
    requested = Permission.parse(requested)
    for granted in _granted_in_order(granted_permissions):
        result = matches_permission(requested, granted)
        if result.matches:
            return PermissionCheck(
                authorized=True,
                matched_permission=str(granted),
                scope=result.scope
            )
    return PermissionCheck(authorized=False)


def has_any_permission(
    granted_permissions: Iterable[Union[str, Permission]],
    required_permissions: Iterable[Union[str, Permission]]
) -> PermissionCheck:
    """Authorized if any required permission is granted; stops at the first."""
    granted = _granted_in_order(granted_permissions)
    for required in required_permissions:
        result = has_permission(granted, required)
        if result.authorized:
            return result
    return PermissionCheck(authorized=False)


def has_all_permissions(
    granted_permissions: Iterable[Union[str, Permission]],
    required_permissions: Iterable[Union[str, Permission]]
) -> AllPermissionsDecision:
    """Authorized only if every required permission is granted."""
    granted = _granted_in_order(granted_permissions)
    missing = [
        str(required) for required in required_permissions
        if not has_permission(granted, required).authorized
    ]
    return AllPermissionsDecision(authorized=not missing, missing_permissions=missing)


def is_wildcard_permission(permission: str) -> bool:
    return permission == UNIVERSAL_PERMISSION or permission.endswith(':*')


def has_scope(permission: str) -> bool:
    return Permission.parse(permission).scope is not None


def get_scope(permission: str) -> Optional[str]:
    return Permission.parse(permission).scope


def get_base_permission(permission: str) -> str:
    return Permission.parse(permission).base
