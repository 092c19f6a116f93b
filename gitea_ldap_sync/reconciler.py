"""
Reconciliation engine.

Given an immutable directory snapshot and a platform API, runs the four sync
phases in order:

A. directory users -> Gitea users (create if absent, then update)
B. directory groups/subgroups -> Gitea organizations/teams (create if absent)
C. Gitea users missing from the directory (deleted under full sync)
D. Gitea organizations and teams: delete under full sync when missing from the
   directory, otherwise reconcile team membership

Phases A and B only run when ``create_groups`` is enabled. Any error aborts
the run; nothing is retried here because the next cycle starts over from
fresh snapshots.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any, List, Mapping, Tuple

from gitea_ldap_sync.api.base import PlatformAPIBase
from gitea_ldap_sync.exclusion import ExclusionFilter
from gitea_ldap_sync.models import (
    DirectoryOrganization,
    DirectorySnapshot,
    DirectoryTeam,
    EntityKind,
    PlatformAccount,
    PlatformOrganization,
    PlatformTeam,
    contains_organization,
    contains_team,
    format_accounts,
)

logger = logging.getLogger(__name__)

ROOT_USER = 'root'
OWNERS_TEAM = 'Owners'


@dataclass
class SyncStats:
    """Counters for a single reconciliation run."""

    users_created: int = 0
    users_updated: int = 0
    users_deleted: int = 0
    organizations_created: int = 0
    organizations_deleted: int = 0
    teams_created: int = 0
    teams_deleted: int = 0
    members_added: int = 0
    members_removed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    def summary(self) -> str:
        return ', '.join(f"{key}={value}" for key, value in self.to_dict().items())


def compute_membership_diff(team: DirectoryTeam, accounts: Mapping[str, PlatformAccount],
                            ldap_config: Dict[str, Any]) -> Tuple[List[PlatformAccount], List[PlatformAccount]]:
    """
    Work out which accounts to add to and remove from a platform team.

    Args:
        team: Directory team with its resolved members
        accounts: Current platform members keyed by login
        ldap_config: The ``ldap`` configuration section

    Returns:
        Tuple of (to_add, to_remove). A directory member is added when the
        account recorded under its name has a different login (or there is
        none); a platform account is removed when its login is not a member
        name. ``root`` never appears in either list.
    """
    to_add = []
    for name in sorted(team.users):
        user = team.users[name]
        login = user.login(ldap_config)
        if login == ROOT_USER or name == ROOT_USER:
            continue
        current = accounts.get(name)
        if current is None or current.login != login:
            to_add.append(PlatformAccount(login=login, full_name=user.full_name(ldap_config)))

    to_remove = []
    for key in sorted(accounts):
        account = accounts[key]
        if account.login == ROOT_USER:
            continue
        if account.login not in team.users:
            to_remove.append(account)

    return to_add, to_remove


class Reconciler:
    """Applies a directory snapshot to Gitea."""

    def __init__(self, config: Dict[str, Any], api: PlatformAPIBase, exclusion: ExclusionFilter):
        """
        Args:
            config: Full application configuration
            api: Platform API used for every read and mutation
            exclusion: Exclusion rules built from the ``ldap`` section
        """
        self.ldap_config = config['ldap']
        self.sync_config = config['sync_config']
        self.defaults = self.sync_config['defaults']
        self.create_groups = bool(self.sync_config.get('create_groups', True))
        self.full_sync = bool(self.sync_config.get('full_sync', False))
        self.api = api
        self.exclusion = exclusion
        self.stats = SyncStats()

    def run(self, snapshot: DirectorySnapshot) -> SyncStats:
        """
        Run every phase against the snapshot.

        Returns:
            Statistics for this run

        Raises:
            Any error raised by the platform API, unchanged
        """
        self.stats = SyncStats()

        if self.create_groups:
            self.sync_users(snapshot)
            self.sync_groups(snapshot)
        else:
            logger.debug("create_groups disabled, skipping user and group creation")

        self.remove_users(snapshot)
        self.sync_hierarchy(snapshot)

        return self.stats

    def _skipped(self, kind: str, reason: str, name: str):
        self.stats.skipped += 1
        logger.info(f"{kind} skipped (reason: {reason}): {name}")

    # Phase A

    def sync_users(self, snapshot: DirectorySnapshot):
        logger.info("Syncing users from ldap to gitea")

        existing = {user.login for user in self.api.list_users()}
        user_defaults = self.defaults['user']

        for name in sorted(snapshot.users):
            user = snapshot.users[name]
            logger.debug(f"Processing ldap user: {name}")

            if name == ROOT_USER:
                self._skipped('User', 'root', name)
                continue
            reason = self.exclusion.exclusion_reason(EntityKind.USER, name)
            if reason:
                self._skipped('User', reason, name)
                continue

            login = user.login(self.ldap_config)
            full_name = user.full_name(self.ldap_config)
            email = user.email(self.ldap_config)
            avatar_url = user.avatar_url(self.ldap_config)
            logger.debug(f"Resolved ldap user {name}: login={login}, email={email}, avatar={avatar_url or '-'}")

            if login not in existing:
                created = self.api.create_user({
                    'username': login,
                    'full_name': full_name,
                    'email': email,
                    'visibility': user_defaults['visibility'],
                })
                if created:
                    self.stats.users_created += 1
                existing.add(login)

            self.api.edit_user(login, {
                'email': email,
                'full_name': full_name,
                'max_repo_creation': user_defaults['max_repo_creation'],
                'allow_create_organization': user_defaults['allow_create_organization'],
                'visibility': user_defaults['visibility'],
                'admin': user.is_admin,
                'restricted': user.is_restricted,
            })
            self.stats.users_updated += 1

        logger.info("Syncing users from ldap to gitea finished")

    # Phase B

    def sync_groups(self, snapshot: DirectorySnapshot):
        logger.info("Syncing groups and subgroups from ldap")

        platform_orgs = self.api.list_organizations()

        for name in sorted(snapshot.organizations):
            org = snapshot.organizations[name]
            logger.debug(f"Processing group: {name}")

            reason = self.exclusion.exclusion_reason(EntityKind.GROUP, name)
            if reason:
                self._skipped('Group', reason, name)
                continue

            if contains_organization(platform_orgs, name):
                logger.debug(f"Organization already exists: {name}")
            else:
                self._create_organization(org)
                platform_orgs.append(PlatformOrganization(id=0, username=name))

            self._sync_teams(org)
            logger.info(f"Group processed: {name}")

        logger.info("Syncing groups and subgroups from ldap finished")

    def _create_organization(self, org: DirectoryOrganization):
        org_defaults = self.defaults['organization']
        self.api.create_organization({
            'username': org.name,
            'full_name': org.attribute(self.ldap_config.get('group_fullname_attribute', 'cn')),
            'description': org.attribute(self.ldap_config.get('group_description_attribute', 'cn')),
            'visibility': org_defaults['visibility'],
            'repo_admin_change_team_access': org_defaults['repo_admin_change_team_access'],
        })
        self.stats.organizations_created += 1

    def _sync_teams(self, org: DirectoryOrganization):
        platform_teams = self.api.list_teams(org.name)
        team_defaults = self.defaults['team']

        for name in sorted(org.teams):
            team = org.teams[name]
            logger.debug(f"Processing subgroup: {name}")

            reason = self.exclusion.team_exclusion_reason(org.name, name)
            if reason:
                self._skipped('Subgroup', reason, name)
                continue

            if contains_team(platform_teams, name):
                logger.debug(f"Team already exists in organization: {name} (organization: {org.name})")
                continue

            self.api.create_team(org.name, {
                'name': name,
                'description': team.attribute(self.ldap_config.get('subgroup_description_attribute', 'cn')),
                'permission': team_defaults['permission'],
                'can_create_org_repo': team_defaults['can_create_org_repo'],
                'includes_all_repositories': team_defaults['includes_all_repositories'],
                'units': list(team_defaults['units']),
            })
            platform_teams.append(PlatformTeam(id=0, name=name, organization=org.name))
            self.stats.teams_created += 1
            logger.info(f"Subgroup processed: {name}")

    # Phase C

    def remove_users(self, snapshot: DirectorySnapshot):
        logger.info("Syncing users in gitea")

        platform_users = self.api.list_users()
        logger.info(f"{len(snapshot.users)} users were found in the LDAP server")
        logger.info(f"{len(platform_users)} users were found in Gitea")

        for platform_user in platform_users:
            login = platform_user.login
            if login == ROOT_USER:
                self._skipped('User', 'root', login)
                continue

            reason = self.exclusion.exclusion_reason(EntityKind.USER, login)
            if reason:
                self._skipped('User', reason, login)
                continue

            if login in snapshot.users:
                logger.debug(f"User exists in ldap: {login}")
                continue

            if not self.full_sync:
                logger.debug(f"User does not exist in LDAP, full sync disabled, skipping: {login}")
                continue

            logger.info(f"User does not exist in LDAP, deleting from gitea: {login}")
            self.api.delete_user(login)
            self.stats.users_deleted += 1

    # Phase D

    def sync_hierarchy(self, snapshot: DirectorySnapshot):
        logger.info("Syncing users to teams in gitea")
        logger.info(f"Number of organization groups in ldap: {len(snapshot.organizations)}")
        logger.debug(f"Organization groups in ldap: {snapshot.organization_names()}")

        platform_orgs = self.api.list_organizations()
        logger.info(f"Number of organizations in gitea: {len(platform_orgs)}")

        for platform_org in platform_orgs:
            self._sync_organization(snapshot, platform_org)

        logger.info("Syncing users to teams in gitea finished")

    def _sync_organization(self, snapshot: DirectorySnapshot, platform_org: PlatformOrganization):
        name = platform_org.username
        logger.info(f"Processing organization: {name} (id: {platform_org.id})")

        platform_teams = self.api.list_teams(name)
        logger.debug(f"Number of teams in {name} organization: {len(platform_teams)}")

        org = snapshot.organizations.get(name)
        if org is None:
            if not self.full_sync:
                logger.debug(f"Organization does not exist in LDAP, full sync is disabled, skipping: {name}")
                return
            logger.info(f"Organization does not exist in LDAP, deleting from gitea: {name}")
            self.api.delete_organization(name)
            self.stats.organizations_deleted += 1
            return

        for platform_team in platform_teams:
            self._sync_team(org, platform_team)

    def _sync_team(self, org: DirectoryOrganization, platform_team: PlatformTeam):
        logger.info(f"Processing team: {platform_team.name}")

        if platform_team.name == OWNERS_TEAM:
            logger.info(f"Team skipped (reason: owner): {platform_team.name}")
            return

        team = org.teams.get(platform_team.name)
        if team is None:
            if not self.full_sync:
                logger.debug(f"Team does not exist in ldap, full sync is disabled, skipping: {platform_team.name}")
                return
            logger.info(f"Team does not exist in ldap, full sync is enabled, deleting from gitea: {platform_team.name}")
            self.api.delete_team(platform_team.id)
            self.stats.teams_deleted += 1
            return

        accounts = self.api.list_team_members(platform_team.id)
        logger.debug(f"Gitea team {platform_team.name} (id: {platform_team.id}) has {len(accounts)} users")

        to_add, to_remove = compute_membership_diff(team, accounts, self.ldap_config)

        if to_add:
            logger.info(f"Users will be added to team: {format_accounts(to_add)} (team: {team.name})")
            self.stats.members_added += self.api.add_members(platform_team.id, to_add)
        else:
            logger.debug(f"No users to add to team: {team.name}")

        if to_remove:
            logger.info(f"Users will be removed from gitea team: {format_accounts(to_remove)} (team: {team.name})")
            self.stats.members_removed += self.api.remove_members(platform_team.id, to_remove)
        else:
            logger.debug(f"No users to remove from team: {team.name}")
