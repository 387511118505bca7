"""
Identity-provider group to role mapping.

The mapping is static configuration (``GROUP_ROLE_MAPPING``); this module only
interprets it.
"""

from typing import Dict, Iterable, List, Mapping, Optional

from authz_engine.data.models import RoleChanges


class ExternalGroupMapper:
    """Maps external group names to role ids."""

    def __init__(self, group_to_role: Optional[Mapping[str, str]] = None):
        self._group_to_role: Dict[str, str] = dict(group_to_role or {})

    @property
    def mapping(self) -> Dict[str, str]:
        return dict(self._group_to_role)

    def map_groups_to_roles(self, groups: Iterable[str]) -> List[str]:
        """Role ids for the mapped groups, deduplicated and sorted."""
        return sorted({
            self._group_to_role[group] for group in groups if group in self._group_to_role
        })

    def is_group_mapped(self, group: str) -> bool:
        return group in self._group_to_role

    def role_for_group(self, group: str) -> Optional[str]:
        return self._group_to_role.get(group)

    def group_for_role(self, role_id: str) -> Optional[str]:
        for group, mapped_role in self._group_to_role.items():
            if mapped_role == role_id:
                return group
        return None

    @staticmethod
    def diff_roles(previous_roles: Iterable[str], current_roles: Iterable[str]) -> RoleChanges:
        previous, current = set(previous_roles), set(current_roles)
        return RoleChanges(added=sorted(current - previous), removed=sorted(previous - current))

    def calculate_role_changes(
        self,
        previous_groups: Iterable[str],
        current_groups: Iterable[str]
    ) -> RoleChanges:
        """Roles gained and lost when a user's groups change."""
        return self.diff_roles(
            self.map_groups_to_roles(previous_groups),
            self.map_groups_to_roles(current_groups)
        )

    def validate_groups(self, groups: Iterable[str]) -> Dict[str, List[str]]:
        """Split groups into ``valid`` (mapped) and ``unknown``."""
        result: Dict[str, List[str]] = {'valid': [], 'unknown': []}
        for group in groups:
            result['valid' if self.is_group_mapped(group) else 'unknown'].append(group)
        return result
