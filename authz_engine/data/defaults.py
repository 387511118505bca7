"""
Default system role catalogue.
"""

from typing import List

import structlog

from authz_engine.data.models import RoleDefinition
from authz_engine.data.roles import RoleStore

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = 'system'

DEFAULT_ROLES: List[RoleDefinition] = [
    RoleDefinition(
        role_id='super-admin',
        display_name='Super Administrator',
        description='Full system access',
        permissions=['*:*'],
        is_system=True,
        is_high_privilege=True,
    ),
    RoleDefinition(
        role_id='compliance-officer',
        display_name='Compliance Officer',
        description='Audit and compliance access',
        permissions=[
            'audit:export',
            'audit:read',
            'compliance:*',
            'customers:read',
            'policies:read',
            'quotes:read',
        ],
        is_system=True,
        is_high_privilege=True,
    ),
    RoleDefinition(
        role_id='broker-manager',
        display_name='Broker Manager',
        description='Team and territory management',
        permissions=[
            'customers:*',
            'documents:*',
            'forms:*',
            'leads:*',
            'policies:*',
            'quotes:*',
            'staff:*',
            'workflows:manage',
        ],
        is_system=True,
    ),
    RoleDefinition(
        role_id='senior-broker',
        display_name='Senior Broker',
        description='Full broker access with approval rights',
        permissions=[
            'customers:*',
            'documents:*',
            'forms:*',
            'leads:*',
            'policies:*',
            'quotes:*',
            'workflows:approve:team',
        ],
        inherits_from=['broker'],
        is_system=True,
    ),
    RoleDefinition(
        role_id='broker',
        display_name='Broker',
        description='Standard broker access',
        permissions=[
            'customers:create',
            'customers:read:own',
            'customers:update:own',
            'documents:create',
            'documents:read:own',
            'forms:read',
            'forms:submit',
            'leads:create',
            'leads:read:own',
            'leads:update:own',
            'policies:read:own',
            'quotes:create',
            'quotes:read:own',
        ],
        is_system=True,
    ),
    RoleDefinition(
        role_id='junior-broker',
        display_name='Junior Broker',
        description='Broker in training; reads and drafts within own book',
        permissions=[
            'customers:read:own',
            'documents:read:own',
            'forms:read',
            'forms:submit',
            'leads:create',
            'leads:read:own',
            'quotes:create',
            'quotes:read:own',
        ],
        is_system=True,
    ),
    RoleDefinition(
        role_id='underwriter',
        display_name='Underwriter',
        description='Risk assessment across the assigned territory',
        permissions=[
            'customers:read:territory',
            'documents:read:territory',
            'policies:approve',
            'policies:read',
            'quotes:approve',
            'quotes:read',
            'quotes:update',
        ],
        is_system=True,
    ),
    RoleDefinition(
        role_id='customer-support',
        display_name='Customer Support',
        description='Read access for handling customer enquiries',
        permissions=[
            'customers:read',
            'customers:update:team',
            'documents:read',
            'policies:read',
            'quotes:read',
        ],
        is_system=True,
    ),
    RoleDefinition(
        role_id='customer',
        display_name='Customer',
        description='Self-service portal access',
        permissions=[
            'customers:read:self',
            'customers:update:self',
            'documents:read:self',
            'forms:submit',
            'policies:read:self',
            'quotes:read:self',
        ],
        is_system=True,
    ),
]


def seed_default_roles(role_store: RoleStore) -> List[str]:
    """
    Write the default catalogue. Safe to run repeatedly.

    Existing definitions are overwritten with the defaults but keep their
    original creation time.
    """
    seeded = []
    for role in DEFAULT_ROLES:
        existing = role_store.get_role(role.role_id)
        now = role_store.clock()
        role_store.upsert_role(role.model_copy(update={
            'created_at': existing.created_at if existing and existing.created_at else now,
            'created_by': existing.created_by if existing and existing.created_by else SYSTEM_ACTOR,
            'updated_at': now,
            'updated_by': SYSTEM_ACTOR,
        }))
        seeded.append(role.role_id)

    logger.info("Default roles seeded", role_count=len(seeded))
    return seeded
