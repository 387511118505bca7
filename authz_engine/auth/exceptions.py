"""
Authorization Engine Exception Classes

This module provides the exception hierarchy raised by the authorization engine:
role catalogue errors, user-grant errors, temporary grant validation failures and
malformed permission or resource input rejected at the boundary.

The exception hierarchy is designed to:
- Give every failure a stable error code for monitoring and the HTTP shim
- Keep "not found" distinct from "invalid" and from "not allowed"
- Carry structured metadata for audit logging without leaking grant contents
- Leave storage failures to ``authz_engine.data.exceptions`` so callers can tell
  "don't know" apart from "no"

Outcomes that are not failures are deliberately absent: a high-privilege role
assignment returns an approval-required result, and an unknown scope token is a
denial reason rather than an exception.
"""

from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime, timezone
import uuid


class AuthorizationErrorCode(Enum):
    """
    Standardized error codes for the authorization engine.

    Codes are grouped by concern so dashboards and alerting can bucket them
    without parsing messages.
    """

    # Lookup errors (1000-1999)
    USER_NOT_FOUND = "AUTHZ_1001"
    ROLE_NOT_FOUND = "AUTHZ_1002"
    GRANT_NOT_FOUND = "AUTHZ_1003"

    # Role state errors (2000-2999)
    ROLE_INACTIVE = "AUTHZ_2001"
    ROLE_NOT_ASSIGNED = "AUTHZ_2002"
    ROLE_APPROVAL_REQUIRED = "AUTHZ_2003"
    SYSTEM_ROLE_PROTECTED = "AUTHZ_2004"

    # Temporary grant errors (3000-3999)
    GRANT_WILDCARD_NOT_ALLOWED = "AUTHZ_3001"
    GRANT_MUST_BE_FUTURE = "AUTHZ_3002"
    GRANT_EXCEEDS_MAX_DURATION = "AUTHZ_3003"
    GRANT_INVALID = "AUTHZ_3004"

    # Validation errors (4000-4999)
    PERMISSION_INVALID = "VAL_4001"
    RESOURCE_INVALID = "VAL_4002"
    ROLE_ID_INVALID = "VAL_4003"
    ROLE_ID_RESERVED = "VAL_4004"
    ROLE_ALREADY_EXISTS = "VAL_4005"
    ROLE_PARENT_INVALID = "VAL_4006"
    ROLE_INHERITANCE_CYCLE = "VAL_4007"

    # Infrastructure errors (5000-5999)
    STORAGE_UNAVAILABLE = "EXT_5001"
    STORAGE_CONFLICT = "EXT_5002"
    CACHE_UNAVAILABLE = "EXT_5003"
    EVENT_PUBLISH_FAILED = "EXT_5004"


class AuthorizationServiceException(Exception):
    """
    Base exception for every failure raised by the authorization engine.

    Args:
        message: Human-readable error description for logging
        error_code: Standardized error code for categorization
        metadata: Additional context for audit logging
        http_status: Status hint for the transport shim in front of the engine

    Example:
        try:
            store.assign_role(user_id, role_id)
        except AuthorizationServiceException as e:
            logger.warning("Role assignment rejected", **e.to_dict())
    """

    def __init__(
        self,
        message: str,
        error_code: AuthorizationErrorCode,
        metadata: Optional[Dict[str, Any]] = None,
        http_status: int = 400
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_id = str(uuid.uuid4())
        self.error_code = error_code
        self.metadata = metadata or {}
        self.http_status = http_status
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the exception for structured logs and error responses."""
        return {
            'error_id': self.error_id,
            'error_code': self.error_code.value,
            'error_type': self.__class__.__name__,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'metadata': self.metadata,
        }


class NotFoundException(AuthorizationServiceException):
    """Base class for lookups of users, roles or grants that do not exist."""

    def __init__(self, message: str, error_code: AuthorizationErrorCode, **kwargs) -> None:
        kwargs.setdefault('http_status', 404)
        super().__init__(message, error_code, **kwargs)


class UserNotFoundError(NotFoundException):
    def __init__(self, user_id: str) -> None:
        super().__init__(
            f'User "{user_id}" not found.',
            AuthorizationErrorCode.USER_NOT_FOUND,
            metadata={'user_id': user_id}
        )
        self.user_id = user_id


class RoleNotFoundError(NotFoundException):
    def __init__(self, role_id: str) -> None:
        super().__init__(
            f'Role "{role_id}" not found.',
            AuthorizationErrorCode.ROLE_NOT_FOUND,
            metadata={'role_id': role_id}
        )
        self.role_id = role_id


class TemporaryGrantNotFoundError(NotFoundException):
    def __init__(self, user_id: str, grant_id: str) -> None:
        super().__init__(
            f'Temporary permission "{grant_id}" not found.',
            AuthorizationErrorCode.GRANT_NOT_FOUND,
            metadata={'user_id': user_id, 'grant_id': grant_id}
        )
        self.grant_id = grant_id


class RoleInactiveError(AuthorizationServiceException):
    """Raised when a soft-deleted role is assigned."""

    def __init__(self, role_id: str) -> None:
        super().__init__(
            f'Role "{role_id}" is not active.',
            AuthorizationErrorCode.ROLE_INACTIVE,
            metadata={'role_id': role_id}
        )
        self.role_id = role_id


class RoleNotAssignedError(AuthorizationServiceException):
    """Raised when removing a role the user does not hold."""

    def __init__(self, user_id: str, role_id: str) -> None:
        super().__init__(
            f'User "{user_id}" does not have role "{role_id}".',
            AuthorizationErrorCode.ROLE_NOT_ASSIGNED,
            metadata={'user_id': user_id, 'role_id': role_id}
        )
        self.user_id = user_id
        self.role_id = role_id


class SystemRoleProtectedError(AuthorizationServiceException):
    """Raised when deleting or deactivating a system role."""

    def __init__(self, role_id: str) -> None:
        super().__init__(
            f'Cannot delete system role "{role_id}".',
            AuthorizationErrorCode.SYSTEM_ROLE_PROTECTED,
            metadata={'role_id': role_id},
            http_status=403
        )
        self.role_id = role_id


class InvalidGrantError(AuthorizationServiceException):
    """
    Base exception for rejected temporary grants.

    Subclasses identify which rule the grant broke; catching this class is
    enough for callers that only need to map the failure to a 400 response.
    """

    def __init__(
        self,
        message: str,
        error_code: AuthorizationErrorCode = AuthorizationErrorCode.GRANT_INVALID,
        permission: Optional[str] = None,
        **kwargs
    ) -> None:
        super().__init__(message, error_code, **kwargs)
        self.permission = permission
        if permission:
            self.metadata['permission'] = permission


class WildcardNotAllowedError(InvalidGrantError):
    def __init__(self, permission: str) -> None:
        super().__init__(
            'Cannot grant wildcard (*:*) permission temporarily.',
            AuthorizationErrorCode.GRANT_WILDCARD_NOT_ALLOWED,
            permission=permission
        )


class GrantMustBeFutureError(InvalidGrantError):
    def __init__(self, valid_until: datetime) -> None:
        super().__init__(
            'validUntil must be in the future.',
            AuthorizationErrorCode.GRANT_MUST_BE_FUTURE,
            metadata={'valid_until': valid_until.isoformat()}
        )


class ExceedsMaxDurationError(InvalidGrantError):
    def __init__(self, valid_until: datetime, max_days: int) -> None:
        super().__init__(
            f'Temporary permissions cannot exceed {max_days} days.',
            AuthorizationErrorCode.GRANT_EXCEEDS_MAX_DURATION,
            metadata={'valid_until': valid_until.isoformat(), 'max_days': max_days}
        )
        self.max_days = max_days


class InvalidPermissionError(AuthorizationServiceException):
    """Raised when a permission string is not ``resource:action[:scope]``."""

    def __init__(self, permission: Any, detail: Optional[str] = None) -> None:
        message = f'Invalid permission format: {permission!r}'
        if detail:
            message = f'{message} ({detail})'
        super().__init__(
            message,
            AuthorizationErrorCode.PERMISSION_INVALID,
            metadata={'permission': str(permission)}
        )
        self.permission = permission


class InvalidResourceError(AuthorizationServiceException):
    """Raised when a resource context is missing its type or id."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(
            message,
            AuthorizationErrorCode.RESOURCE_INVALID,
            metadata={'errors': errors or []}
        )


class RoleValidationError(AuthorizationServiceException):
    """
    Raised when a role definition change is rejected.

    Covers malformed or reserved role ids, duplicates, unknown parents and
    inheritance that would point a role back at itself.
    """

    def __init__(
        self,
        message: str,
        error_code: AuthorizationErrorCode,
        role_id: Optional[str] = None,
        **kwargs
    ) -> None:
        super().__init__(message, error_code, **kwargs)
        self.role_id = role_id
        if role_id:
            self.metadata['role_id'] = role_id


class EventPublishError(AuthorizationServiceException):
    """Raised by a publisher that could not deliver an event after retrying."""

    def __init__(self, event_type: str, detail: str) -> None:
        super().__init__(
            f'Failed to publish "{event_type}": {detail}',
            AuthorizationErrorCode.EVENT_PUBLISH_FAILED,
            metadata={'event_type': event_type},
            http_status=502
        )
        self.event_type = event_type


def create_error_response(exception: AuthorizationServiceException) -> Dict[str, Any]:
    """
    Build the error body the transport shim returns for an engine exception.

    Args:
        exception: Engine exception to convert

    Returns:
        Dictionary with the error code, message and correlation id
    """
    return {
        'error': exception.message,
        'error_code': exception.error_code.value,
        'error_id': exception.error_id,
        'status': exception.http_status,
    }
