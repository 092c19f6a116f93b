"""
Gitea API integration module.

This module implements the PlatformAPIBase interface for the Gitea REST API
(v1). It reads organizations, teams, members and users, and exposes the
mutation verbs the reconciler drives. Every mutation is recorded through the
audit logger.
"""

import logging
from typing import Dict, List, Any
from urllib.parse import quote

from gitea_ldap_sync.api.base import PlatformAPIBase, PlatformAPIError
from gitea_ldap_sync.logging_setup import audit_logger
from gitea_ldap_sync.models import (
    PlatformAccount,
    PlatformOrganization,
    PlatformRepository,
    PlatformTeam,
    PlatformUser,
    format_accounts,
)

logger = logging.getLogger(__name__)


def _segment(value: Any) -> str:
    return quote(str(value), safe='')


class GiteaAPI(PlatformAPIBase):
    """
    Gitea API client implementation.

    List endpoints are paginated until exhausted. Requests are never retried;
    the first failure propagates to the caller.
    """

    API_PREFIX = '/api/v1'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Gitea API client.

        Args:
            config: The ``gitea`` section of the configuration
        """
        super().__init__(config)
        self.auth_source_id = int(config.get('auth_source_id', 0))

        logger.debug(f"Initialized Gitea API client for {self.base_url}")

    def _mutate(self, operation: str, target: str, method: str, path: str, body: Any = None) -> Any:
        try:
            result = self.request(method, path, body=body)
        except PlatformAPIError as e:
            audit_logger.log_mutation(operation, target, False, str(e))
            raise
        audit_logger.log_mutation(operation, target, True)
        return result

    def get_version(self) -> str:
        """Return the server version string, used by the health check."""
        data = self.request('GET', '/version') or {}
        return data.get('version', '')

    def current_user(self) -> str:
        """Return the login the configured credentials authenticate as."""
        data = self.request('GET', '/user') or {}
        return data.get('login', '')

    # Read operations

    def list_organizations(self) -> List[PlatformOrganization]:
        """Return every organization on the instance (admin endpoint)."""
        orgs = [PlatformOrganization.from_api(item) for item in self.paginate('/admin/orgs')]
        logger.debug(f"Listed {len(orgs)} organizations")
        return orgs

    def list_teams(self, org_name: str) -> List[PlatformTeam]:
        items = self.paginate(f'/orgs/{_segment(org_name)}/teams')
        return [PlatformTeam.from_api(item, organization=org_name) for item in items]

    def list_team_members(self, team_id: int) -> Dict[str, PlatformAccount]:
        """
        Return the members of a team keyed by login.

        Args:
            team_id: Numeric team identifier

        Returns:
            Mapping of login to PlatformAccount
        """
        accounts = {}
        for item in self.paginate(f'/teams/{_segment(team_id)}/members'):
            account = PlatformAccount.from_api(item)
            accounts[account.login] = account
        return accounts

    def list_users(self) -> List[PlatformUser]:
        users = [PlatformUser.from_api(item) for item in self.paginate('/admin/users')]
        logger.debug(f"Listed {len(users)} users")
        return users

    def list_org_repositories(self, org_name: str) -> List[PlatformRepository]:
        items = self.paginate(f'/orgs/{_segment(org_name)}/repos')
        return [PlatformRepository.from_api(item) for item in items]

    def search_users(self, keyword: str) -> List[PlatformUser]:
        """
        Search users by keyword (matches login and full name).

        The search endpoint wraps its results as ``{"data": [...], "ok": true}``
        so it is paged here rather than through ``paginate``.
        """
        users = []
        page = 1
        while True:
            response, headers = self._send(
                'GET', '/users/search', params={'q': keyword, 'page': page, 'limit': self.page_size}
            )
            response = response or {}
            if not isinstance(response, dict):
                raise PlatformAPIError(f"Unexpected user search response: {type(response).__name__}")
            if response.get('ok') is False:
                raise PlatformAPIError(f"User search failed for keyword: {keyword}")

            data = response.get('data') or []
            if not data:
                break
            users.extend(PlatformUser.from_api(item) for item in data)

            total = headers.get('x-total-count')
            if (total is not None and total.isdigit() and len(users) >= int(total)) or len(data) < self.page_size:
                break
            page += 1
        return users

    # Mutation verbs

    def create_user(self, payload: Dict[str, Any]) -> bool:
        """
        Create a user bound to the configured authentication source.

        Args:
            payload: CreateUserOption fields; ``username`` is required

        Returns:
            True if the user was created, False if it already existed

        Raises:
            PlatformAPIError: If the request fails for any other reason
        """
        username = payload['username']
        body = {
            'login_name': username,
            'must_change_password': False,
            'source_id': self.auth_source_id,
        }
        body.update(payload)

        logger.debug(f"Creating user: {username}")
        try:
            self.request('POST', '/admin/users', body=body)
        except PlatformAPIError as e:
            if 'already exists' in str(e):
                logger.debug(f"User already exists: {username}")
                return False
            audit_logger.log_mutation('create_user', username, False, str(e))
            raise

        audit_logger.log_mutation('create_user', username, True)
        logger.info(f"User created: {username}")
        return True

    def edit_user(self, login: str, payload: Dict[str, Any]) -> None:
        body = {
            'login_name': login,
            'source_id': self.auth_source_id,
        }
        body.update(payload)

        logger.debug(f"Updating user: {login}")
        self._mutate('edit_user', login, 'PATCH', f'/admin/users/{_segment(login)}', body)
        logger.info(f"User updated: {login}")

    def delete_user(self, login: str) -> None:
        logger.debug(f"Deleting user: {login}")
        self._mutate('delete_user', login, 'DELETE', f'/admin/users/{_segment(login)}')
        logger.info(f"User: {login} deleted")

    def create_organization(self, payload: Dict[str, Any]) -> None:
        name = payload['username']
        logger.debug(f"Creating organization: {name}")
        self._mutate('create_organization', name, 'POST', '/orgs', payload)
        logger.info(f"Organization created: {name}")

    def delete_organization(self, org_name: str) -> None:
        """
        Delete an organization together with all of its repositories.

        Gitea refuses to delete an organization that still owns repositories,
        so they are removed first.
        """
        logger.debug(f"Deleting organization: {org_name}")

        for repo in self.list_org_repositories(org_name):
            self._mutate(
                'delete_repository', f"{org_name}/{repo.name}", 'DELETE',
                f'/repos/{_segment(org_name)}/{_segment(repo.name)}'
            )
            logger.info(f"Repository: {repo.name} deleted")

        self._mutate('delete_organization', org_name, 'DELETE', f'/orgs/{_segment(org_name)}')
        logger.info(f"Organization: {org_name} deleted")

    def create_team(self, org_name: str, payload: Dict[str, Any]) -> None:
        name = payload['name']
        logger.info(f"Creating team in organization: {name} (organization: {org_name})")
        self._mutate('create_team', f"{org_name}/{name}", 'POST', f'/orgs/{_segment(org_name)}/teams', payload)
        logger.info(f"Team created in organization: {name} (organization: {org_name})")

    def delete_team(self, team_id: int) -> None:
        logger.debug(f"Deleting team with ID: {team_id}")
        self._mutate('delete_team', str(team_id), 'DELETE', f'/teams/{_segment(team_id)}')
        logger.info(f"Team with ID: {team_id} deleted")

    def add_members(self, team_id: int, accounts: List[PlatformAccount]) -> int:
        """
        Add accounts to a team.

        Each account is looked up with a user search on its full name (its
        login when the full name is empty). Every hit whose login equals the
        account login, ignoring case, is added. Accounts with no matching
        platform user are skipped.

        Returns:
            Number of membership additions performed
        """
        logger.debug(f"Adding users to team: {team_id}")

        added = 0
        for account in accounts:
            keyword = account.full_name or account.login
            logger.debug(f"Processing user: {keyword}")

            matches = [user for user in self.search_users(keyword)
                       if user.login.lower() == account.login.lower()]
            if not matches:
                logger.warning(f"User not found in gitea, cannot add to team {team_id}: {account.login}")
                continue

            for _ in matches:
                self._mutate(
                    'add_team_member', f"{team_id}/{account.login}", 'PUT',
                    f'/teams/{_segment(team_id)}/members/{_segment(account.login)}'
                )
                added += 1
                logger.info(f"User: {account.login} added to team: {team_id}")

        logger.debug(f"Users added to team {team_id}: {format_accounts(accounts)}")
        return added

    def remove_members(self, team_id: int, accounts: List[PlatformAccount]) -> int:
        """Remove accounts from a team by login. Returns the number removed."""
        logger.debug(f"Removing users from team with id: {team_id}")

        for account in accounts:
            self._mutate(
                'remove_team_member', f"{team_id}/{account.login}", 'DELETE',
                f'/teams/{_segment(team_id)}/members/{_segment(account.login)}'
            )
            logger.info(f"User: {account.login} removed from team: {team_id}")

        return len(accounts)
