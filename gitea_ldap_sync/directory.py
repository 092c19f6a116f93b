"""
Directory snapshot building.

Reads groups, subgroups and users from LDAP and assembles them into the
organization -> team -> user tree that the reconciler works on.
"""

import logging
from typing import Dict, Any, List, Optional, Set

from gitea_ldap_sync.ldap_client import LDAPClient
from gitea_ldap_sync.models import (
    DirectoryOrganization,
    DirectorySnapshot,
    DirectoryTeam,
    DirectoryUser,
    LDAPEntry,
)

logger = logging.getLogger(__name__)

# Groups and subgroups are told apart by this attribute, whatever the
# configured display name attributes are.
CLASSIFICATION_ATTRIBUTE = 'cn'
MEMBER_OF_ATTRIBUTE = 'memberOf'
MEMBER_ATTRIBUTE = 'member'


class DirectoryDataError(Exception):
    """Raised when directory data breaks an identity invariant."""
    pass


def organization_entries(groups: List[LDAPEntry], subgroups: List[LDAPEntry]) -> List[LDAPEntry]:
    """
    Return the group entries that are not also subgroups.

    The comparison uses the raw ``cn`` value and is case-sensitive. An entry
    found by both searches is treated as a subgroup only.
    """
    subgroup_names = {entry.get_value(CLASSIFICATION_ATTRIBUTE) for entry in subgroups}
    return [entry for entry in groups if entry.get_value(CLASSIFICATION_ATTRIBUTE) not in subgroup_names]


def trim_parent_name(name: str, separator: str) -> str:
    """
    Strip everything up to and including the first separator.

    A name without the separator (or an empty separator) is returned unchanged.
    """
    if not separator:
        return name
    index = name.find(separator)
    if index < 0:
        return name
    return name[index + len(separator):]


class DirectoryBuilder:
    """Builds a DirectorySnapshot from LDAP search results."""

    def __init__(self, ldap_config: Dict[str, Any], client_factory=LDAPClient):
        self.config = ldap_config
        self.client_factory = client_factory
        self.username_attribute = ldap_config['user_username_attribute']

    def build(self) -> DirectorySnapshot:
        """
        Connect to the directory, run every search and build the snapshot.

        The connection is released before returning, also on failure. Any
        search error propagates: a partial directory view is never returned.
        """
        logger.debug("Getting ldap directory")

        with self.client_factory(self.config) as client:
            groups = self._search(client, 'groups', self.config['group_search_base'], self.config['group_filter'])
            subgroups = self._search(
                client, 'teams', self.config['subgroup_search_base'], self.config['subgroup_filter']
            )
            users = self._search(client, 'users', self.config['user_search_base'], self.config['user_filter'])
            admins = self._optional_search(client, 'admin users', self.config.get('admin_filter'))
            restricted = self._optional_search(client, 'restricted users', self.config.get('restricted_filter'))

        logger.info("LDAP directory fetched")
        return self.assemble(groups, subgroups, users, admins, restricted)

    def _search(self, client: LDAPClient, label: str, base: str, search_filter: str) -> List[LDAPEntry]:
        logger.debug(f"Searching for {label} in ldap")
        entries = client.search(base, search_filter)
        logger.info(f"Found {len(entries)} {label} in ldap")
        return entries

    def _optional_search(self, client: LDAPClient, label: str,
                         search_filter: Optional[str]) -> Optional[List[LDAPEntry]]:
        if not search_filter:
            return None
        return self._search(client, label, self.config['user_search_base'], search_filter)

    def assemble(self, groups: List[LDAPEntry], subgroups: List[LDAPEntry], users: List[LDAPEntry],
                 admins: Optional[List[LDAPEntry]] = None,
                 restricted: Optional[List[LDAPEntry]] = None) -> DirectorySnapshot:
        """Build the snapshot from already fetched entries."""
        logger.debug("Building ldap directory")

        directory_users = self._build_users(users, admins, restricted)
        organizations = self._build_organizations(groups, subgroups, users, directory_users)

        logger.info(f"LDAP directory built: {len(organizations)} organizations, {len(directory_users)} users")
        return DirectorySnapshot(organizations=organizations, users=directory_users)

    def _build_users(self, users: List[LDAPEntry], admins: Optional[List[LDAPEntry]],
                     restricted: Optional[List[LDAPEntry]]) -> Dict[str, DirectoryUser]:
        admin_names = self._usernames(admins)
        restricted_names = self._usernames(restricted)

        result = {}
        for entry in users:
            name = entry.get_value(self.username_attribute)
            if not name:
                logger.warning(f"User entry has no {self.username_attribute} attribute, skipping: {entry.dn}")
                continue
            if name in result:
                raise DirectoryDataError(
                    f"Duplicate user in ldap: {name} ({result[name].dn} and {entry.dn})"
                )
            result[name] = DirectoryUser(
                name=name,
                entry=entry,
                is_admin=name in admin_names,
                is_restricted=name in restricted_names,
            )
        return result

    def _usernames(self, entries: Optional[List[LDAPEntry]]) -> Set[str]:
        if not entries:
            return set()
        return {entry.get_value(self.username_attribute) for entry in entries}

    def _build_organizations(self, groups: List[LDAPEntry], subgroups: List[LDAPEntry],
                             user_entries: List[LDAPEntry],
                             users: Dict[str, DirectoryUser]) -> Dict[str, DirectoryOrganization]:
        logger.debug("Building ldap groups")

        users_by_dn = {}
        for entry in user_entries:
            user = users.get(entry.get_value(self.username_attribute))
            if user is not None and user.dn == entry.dn:
                users_by_dn[entry.dn.lower()] = user

        name_attribute = self.config.get('group_name_attribute', 'cn')
        organizations = {}
        for org_entry in organization_entries(groups, subgroups):
            name = org_entry.get_value(name_attribute)
            if not name:
                logger.warning(f"Group entry has no {name_attribute} attribute, skipping: {org_entry.dn}")
                continue
            if name in organizations:
                raise DirectoryDataError(
                    f"Duplicate group in ldap: {name} ({organizations[name].dn} and {org_entry.dn})"
                )
            teams = self._build_teams(name, org_entry, subgroups, users_by_dn)
            organizations[name] = DirectoryOrganization(name=name, entry=org_entry, teams=teams)
        return organizations

    def _build_teams(self, org_name: str, org_entry: LDAPEntry, subgroups: List[LDAPEntry],
                     users_by_dn: Dict[str, DirectoryUser]) -> Dict[str, DirectoryTeam]:
        name_attribute = self.config.get('subgroup_name_attribute', 'cn')
        org_dn = org_entry.dn.lower()

        teams = {}
        for entry in subgroups:
            parents = {dn.lower() for dn in entry.get_values(MEMBER_OF_ATTRIBUTE)}
            if org_dn not in parents:
                continue

            members = {}
            for member_dn in entry.get_values(MEMBER_ATTRIBUTE):
                user = users_by_dn.get(member_dn.lower())
                if user is not None:
                    members[user.name] = user

            name = entry.get_value(name_attribute)
            if self.config.get('trim_parent_name'):
                name = trim_parent_name(name, self.config.get('subgroup_separator', ''))

            if name in teams:
                logger.warning(f"Duplicate subgroup {name} in group {org_name}, keeping {teams[name].entry.dn}")
                continue
            teams[name] = DirectoryTeam(name=name, entry=entry, users=members)
        return teams
