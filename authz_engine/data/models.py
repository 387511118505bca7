"""
Data models for role definitions, user role assignments and temporary grants.

This module implements Pydantic 2 models over the stored document shapes. Field
names are snake_case in Python and camelCase in storage (``roleId``,
``inheritsFrom``, ``effectivePermissions``...) so existing documents load
unchanged. Result models returned by the authorization facade and the
user-grant store live here as well so that every public return type is a
validated, serializable value.

The models provide:
- Timezone-aware datetime normalization for every stored timestamp
- ``to_document`` / ``from_document`` helpers for the document store
- ``ResourceContext.parse`` rejecting malformed resource input at the boundary
- Temporary grant validity window evaluation
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from authz_engine.auth.exceptions import InvalidResourceError


def utc_now() -> datetime:
    """Default clock: the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_aware_datetime(value: Any) -> Any:
    """Parse ISO strings and treat naive datetimes as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        # ISO 8601 strings with a trailing Z from older writers
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserSource(str, Enum):
    """Where a user record was created from."""
    EXTERNAL_SYNC = "external_sync"
    MANUAL = "manual"


class DocumentModel(BaseModel):
    """
    Base model for stored documents.

    Provides alias handling, datetime normalization and conversion to and from
    the plain dictionaries the document store reads and writes.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        extra='ignore',
    )

    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator('created_at', 'updated_at', mode='before')
    @classmethod
    def validate_datetime_fields(cls, v):
        """Normalize stored timestamps to timezone-aware UTC datetimes."""
        return as_aware_datetime(v)

    def to_document(self) -> Dict[str, Any]:
        """Convert the model to the stored document format (camelCase keys)."""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]):
        """Create a model instance from a stored document, dropping ``_id``."""
        payload = {key: value for key, value in data.items() if key != '_id'}
        return cls.model_validate(payload)


class RoleDefinition(DocumentModel):
    """
    Role definition with direct permissions and parent roles.

    ``is_system`` roles cannot be deleted; ``is_high_privilege`` roles require an
    external approval step before assignment; inactive roles are soft-deleted
    and excluded from permission resolution.
    """

    role_id: str = Field(alias="roleId")
    display_name: str = Field(alias="displayName")
    description: str = ""
    permissions: List[str] = Field(default_factory=list)
    inherits_from: List[str] = Field(default_factory=list, alias="inheritsFrom")
    is_system: bool = Field(default=False, alias="isSystem")
    is_high_privilege: bool = Field(default=False, alias="isHighPrivilege")
    is_active: bool = Field(default=True, alias="isActive")
    external_group: Optional[str] = Field(default=None, alias="externalGroup")
    created_by: Optional[str] = Field(default=None, alias="createdBy")
    updated_by: Optional[str] = Field(default=None, alias="updatedBy")


class RoleWithEffectivePermissions(BaseModel):
    """Role definition together with its inheritance-resolved permissions."""

    model_config = ConfigDict(populate_by_name=True)

    role: RoleDefinition
    effective_permissions: List[str] = Field(default_factory=list, alias="effectivePermissions")


class TemporaryGrant(BaseModel):
    """A time-boxed permission attached directly to a user."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    permission: str
    granted_by: str = Field(alias="grantedBy")
    reason: str
    valid_from: datetime = Field(alias="validFrom")
    valid_until: datetime = Field(alias="validUntil")
    created_at: datetime = Field(alias="createdAt")

    @field_validator('valid_from', 'valid_until', 'created_at', mode='before')
    @classmethod
    def validate_datetime_fields(cls, v):
        return as_aware_datetime(v)

    def is_active(self, now: datetime) -> bool:
        """A grant is active from ``valid_from`` inclusive to ``valid_until`` exclusive."""
        return self.valid_from <= now < self.valid_until


class UserRoleAssignment(DocumentModel):
    """
    Per-user role assignment record.

    ``effective_permissions`` is a materialized, sorted and deduplicated copy of
    the inheritance-resolved permissions of ``roles``; it is recomputed on every
    role change and never includes temporary grants.
    """

    user_id: str = Field(alias="userId")
    email: Optional[str] = None
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    roles: List[str] = Field(default_factory=list)
    effective_permissions: List[str] = Field(default_factory=list, alias="effectivePermissions")
    territory: List[str] = Field(default_factory=list)
    team_id: Optional[str] = Field(default=None, alias="teamId")
    temporary_permissions: List[TemporaryGrant] = Field(
        default_factory=list, alias="temporaryPermissions"
    )
    external_groups: List[str] = Field(default_factory=list, alias="externalGroups")
    source: UserSource = Field(default=UserSource.MANUAL, validate_default=True)
    synced_at: Optional[datetime] = Field(default=None, alias="syncedAt")

    @field_validator('synced_at', mode='before')
    @classmethod
    def validate_synced_at(cls, v):
        return as_aware_datetime(v)

    @field_validator('territory', mode='before')
    @classmethod
    def validate_territory(cls, v):
        # Older records hold a single region tag
        if isinstance(v, str):
            return [v]
        return v or []


class ResourceContext(BaseModel):
    """
    Resource being acted on, supplied by the caller per request.

    Construct through ``parse`` at the boundary so that missing identifiers are
    rejected before any matching logic runs.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str = Field(min_length=1)
    id: str = Field(min_length=1)
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    territory: Optional[str] = None

    @classmethod
    def parse(cls, data: Any) -> 'ResourceContext':
        """
        Validate caller-supplied resource data.

        Raises:
            InvalidResourceError: when the type or id is missing or malformed
        """
        if isinstance(data, cls):
            return data
        if not isinstance(data, dict):
            raise InvalidResourceError(f'Resource context must be a mapping, got {type(data).__name__}')
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            errors = [
                {'field': '.'.join(str(part) for part in err['loc']), 'message': err['msg']}
                for err in e.errors()
            ]
            raise InvalidResourceError('Invalid resource context', errors=errors) from e


class AuthorizationDecision(BaseModel):
    """Outcome of a permission or resource permission check."""

    model_config = ConfigDict(populate_by_name=True)

    authorized: bool
    reason: Optional[str] = None
    matched_permission: Optional[str] = Field(default=None, alias="matchedPermission")
    matched_scope: Optional[str] = Field(default=None, alias="matchedScope")
    cached: bool = False


class AllPermissionsDecision(BaseModel):
    """Outcome of a check requiring every permission in a list."""

    model_config = ConfigDict(populate_by_name=True)

    authorized: bool
    missing_permissions: List[str] = Field(default_factory=list, alias="missingPermissions")


class RoleAssignmentResult(BaseModel):
    """
    Outcome of assigning a role to a user.

    When ``approval_required`` is set the user's record was not changed and
    ``approval_id`` identifies the request handed to the approval workflow;
    ``error_code`` then carries the role-approval error code.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    role_id: str = Field(alias="roleId")
    assigned: bool = False
    already_assigned: bool = Field(default=False, alias="alreadyAssigned")
    approval_required: bool = Field(default=False, alias="approvalRequired")
    approval_id: Optional[str] = Field(default=None, alias="approvalId")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    roles: List[str] = Field(default_factory=list)


class RoleChanges(BaseModel):
    """Role ids gained and lost between two role sets."""

    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Outcome of reconciling a user's roles with identity-provider groups."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    created: bool = False
    previous_roles: List[str] = Field(default_factory=list, alias="previousRoles")
    current_roles: List[str] = Field(default_factory=list, alias="currentRoles")
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)


class ActiveGrantView(BaseModel):
    """Temporary grant as shown by permission introspection."""

    model_config = ConfigDict(populate_by_name=True)

    permission: str
    valid_until: datetime = Field(alias="validUntil")
    reason: str


class UserPermissionsView(BaseModel):
    """Everything a user can currently do, for introspection."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    temporary_permissions: List[ActiveGrantView] = Field(
        default_factory=list, alias="temporaryPermissions"
    )
    territory: List[str] = Field(default_factory=list)
    team_id: Optional[str] = Field(default=None, alias="teamId")
