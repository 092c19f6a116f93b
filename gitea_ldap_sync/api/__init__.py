"""Platform API clients."""

from gitea_ldap_sync.api.base import (
    PlatformAPIBase,
    PlatformAPIError,
    PlatformAuthenticationError,
    PlatformNotFoundError,
)
from gitea_ldap_sync.api.gitea import GiteaAPI

__all__ = [
    'GiteaAPI',
    'PlatformAPIBase',
    'PlatformAPIError',
    'PlatformAuthenticationError',
    'PlatformNotFoundError',
]
