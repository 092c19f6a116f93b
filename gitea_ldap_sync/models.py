"""
Domain model for Gitea LDAP Sync.

Directory-side entities are built once per sync cycle from LDAP search results
and are not modified afterwards. Platform-side entities mirror what the Gitea
API returns and carry only the fields the reconciliation needs.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping


class EntityKind(Enum):
    """Kinds of directory entities that exclusion rules apply to."""

    USER = 'user'
    GROUP = 'group'
    SUBGROUP = 'subgroup'


@dataclass(frozen=True)
class LDAPEntry:
    """A raw directory entry: its DN and a map of attribute name to values."""

    dn: str
    attributes: Mapping[str, List[str]] = field(default_factory=dict)

    def get_values(self, name: str) -> List[str]:
        if not name:
            return []
        values = self.attributes.get(name)
        if values is None:
            # Attribute names are case-insensitive in LDAP
            lowered = name.lower()
            for key, candidate in self.attributes.items():
                if key.lower() == lowered:
                    values = candidate
                    break
        return list(values or [])

    def get_value(self, name: str) -> str:
        """Return the first value of an attribute, or an empty string."""
        values = self.get_values(name)
        return values[0] if values else ''


@dataclass(frozen=True)
class DirectoryUser:
    """
    A user read from the directory.

    ``name`` is the value of the configured username attribute and is the key
    used everywhere the user is looked up.
    """

    name: str
    entry: LDAPEntry
    is_admin: bool = False
    is_restricted: bool = False

    @property
    def dn(self) -> str:
        return self.entry.dn

    def attribute(self, name: str) -> str:
        return self.entry.get_value(name)

    def full_name(self, ldap_config: Dict) -> str:
        """
        Resolve the display name of the user.

        First name and surname are joined when both attributes are present,
        otherwise the configured full name attribute is used.
        """
        first_name = self.attribute(ldap_config.get('user_first_name_attribute', ''))
        surname = self.attribute(ldap_config.get('user_surname_attribute', ''))
        if first_name and surname:
            return f"{first_name} {surname}"
        return self.attribute(ldap_config.get('user_fullname_attribute', ''))

    def login(self, ldap_config: Dict) -> str:
        return self.attribute(ldap_config.get('user_username_attribute', ''))

    def email(self, ldap_config: Dict) -> str:
        return self.attribute(ldap_config.get('user_email_attribute', ''))

    def avatar_url(self, ldap_config: Dict) -> str:
        return self.attribute(ldap_config.get('user_avatar_attribute', ''))


@dataclass(frozen=True)
class DirectoryTeam:
    """A directory subgroup, mapped to a Gitea team."""

    name: str
    entry: LDAPEntry
    users: Mapping[str, DirectoryUser] = field(default_factory=dict)

    def attribute(self, name: str) -> str:
        return self.entry.get_value(name)


@dataclass(frozen=True)
class DirectoryOrganization:
    """A directory group, mapped to a Gitea organization."""

    name: str
    entry: LDAPEntry
    teams: Mapping[str, DirectoryTeam] = field(default_factory=dict)

    @property
    def dn(self) -> str:
        return self.entry.dn

    def attribute(self, name: str) -> str:
        return self.entry.get_value(name)


@dataclass(frozen=True)
class DirectorySnapshot:
    """Immutable view of the directory for one sync cycle."""

    organizations: Mapping[str, DirectoryOrganization]
    users: Mapping[str, DirectoryUser]

    def __post_init__(self):
        object.__setattr__(self, 'organizations', MappingProxyType(dict(self.organizations)))
        object.__setattr__(self, 'users', MappingProxyType(dict(self.users)))

    def organization_names(self) -> str:
        return ','.join(sorted(self.organizations))


@dataclass
class PlatformOrganization:
    id: int
    username: str
    full_name: str = ''
    description: str = ''
    visibility: str = ''

    @classmethod
    def from_api(cls, data: Dict) -> 'PlatformOrganization':
        return cls(
            id=int(data.get('id', 0)),
            username=data.get('username') or data.get('name', ''),
            full_name=data.get('full_name', ''),
            description=data.get('description', ''),
            visibility=data.get('visibility', ''),
        )

    def __str__(self):
        return self.username


@dataclass
class PlatformTeam:
    id: int
    name: str
    description: str = ''
    organization: str = ''

    @classmethod
    def from_api(cls, data: Dict, organization: str = '') -> 'PlatformTeam':
        org = data.get('organization') or {}
        return cls(
            id=int(data.get('id', 0)),
            name=data.get('name', ''),
            description=data.get('description', ''),
            organization=organization or org.get('username', ''),
        )


@dataclass
class PlatformUser:
    id: int
    login: str
    full_name: str = ''
    email: str = ''
    is_admin: bool = False
    restricted: bool = False

    @classmethod
    def from_api(cls, data: Dict) -> 'PlatformUser':
        return cls(
            id=int(data.get('id', 0)),
            login=data.get('login') or data.get('username', ''),
            full_name=data.get('full_name', ''),
            email=data.get('email', ''),
            is_admin=bool(data.get('is_admin', False)),
            restricted=bool(data.get('restricted', False)),
        )


@dataclass(frozen=True)
class PlatformAccount:
    """Identity-only projection of a user, used for team membership diffs."""

    login: str
    full_name: str = ''
    id: int = 0
    email: str = ''

    @classmethod
    def from_api(cls, data: Dict) -> 'PlatformAccount':
        return cls(
            id=int(data.get('id', 0)),
            login=data.get('login') or data.get('username', ''),
            full_name=data.get('full_name', ''),
            email=data.get('email', ''),
        )

    def __str__(self):
        return self.login


@dataclass
class PlatformRepository:
    id: int
    name: str
    owner: str = ''

    @classmethod
    def from_api(cls, data: Dict) -> 'PlatformRepository':
        owner = data.get('owner') or {}
        return cls(
            id=int(data.get('id', 0)),
            name=data.get('name', ''),
            owner=owner.get('login') or owner.get('username', ''),
        )


def contains_organization(orgs: Iterable[PlatformOrganization], name: str) -> bool:
    return any(org.username == name for org in orgs)


def contains_team(teams: Iterable[PlatformTeam], name: str) -> bool:
    return any(team.name == name for team in teams)


def format_accounts(accounts: Iterable[PlatformAccount]) -> str:
    return ','.join(account.login for account in accounts)
