"""
Exclusion rules for users, groups and subgroups.

Each kind has a literal exclude list and an optional regular expression. The
literal list is checked first; the pattern matches anywhere in the name.
"""

import logging
import re
from typing import Dict, Any, Iterable, Optional

from gitea_ldap_sync.config import ConfigurationError
from gitea_ldap_sync.models import EntityKind

logger = logging.getLogger(__name__)

REASON_LIST = 'exclude-list'
REASON_REGEX = 'regex-exclude-list'

_CONFIG_KEYS = {
    EntityKind.USER: ('exclude_users', 'exclude_users_regex'),
    EntityKind.GROUP: ('exclude_groups', 'exclude_groups_regex'),
    EntityKind.SUBGROUP: ('exclude_subgroups', 'exclude_subgroups_regex'),
}


class ExclusionFilter:
    """Decides whether an entity is left out of the sync."""

    def __init__(self, ldap_config: Dict[str, Any]):
        self.names = {}
        self.patterns = {}
        for kind, (list_key, regex_key) in _CONFIG_KEYS.items():
            self.names[kind] = _clean_names(ldap_config.get(list_key) or [])
            pattern = ldap_config.get(regex_key) or ''
            try:
                self.patterns[kind] = re.compile(pattern) if pattern else None
            except re.error as e:
                raise ConfigurationError(f"Invalid regular expression for ldap.{regex_key}: {e}")
        self.subgroups_by_team_name = bool(ldap_config.get('exclude_subgroups_by_team_name', False))

    def exclusion_reason(self, kind: EntityKind, name: str) -> Optional[str]:
        """Return why ``name`` is excluded, or None when it is not."""
        if name in self.names[kind]:
            return REASON_LIST
        pattern = self.patterns[kind]
        if pattern is not None and pattern.search(name):
            return REASON_REGEX
        return None

    def should_exclude(self, kind: EntityKind, name: str) -> bool:
        return self.exclusion_reason(kind, name) is not None

    def team_exclusion_reason(self, org_name: str, team_name: str) -> Optional[str]:
        """
        Exclusion check used when creating teams.

        The subgroup pattern is matched against the team name while the literal
        subgroup list is compared with the organization name, unless
        ``exclude_subgroups_by_team_name`` is set, in which case both use the
        team name.
        """
        if self.subgroups_by_team_name:
            return self.exclusion_reason(EntityKind.SUBGROUP, team_name)

        if org_name in self.names[EntityKind.SUBGROUP]:
            return REASON_LIST
        pattern = self.patterns[EntityKind.SUBGROUP]
        if pattern is not None and pattern.search(team_name):
            return REASON_REGEX
        return None


def _clean_names(names: Iterable[str]) -> frozenset:
    # Default configuration ships [""], which must never match anything
    return frozenset(name for name in names if name)
