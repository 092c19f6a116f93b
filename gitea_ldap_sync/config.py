"""
Configuration loading and management for Gitea LDAP Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import copy
import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


DEFAULT_CONFIG: Dict[str, Any] = {
    'gitea': {
        'base_url': '',
        'user': '',
        'token': '',
        'auth_source_id': 0,
        'client_timeout': 10,
        'verify_ssl': True,
        'ca_cert_file': '',
        'truststore_file': '',
        'truststore_password': '',
        'page_size': 50,
    },
    'ldap': {
        'url': '',
        'port': 389,
        'use_tls': True,
        'allow_insecure_tls': True,
        'ca_cert_file': '',
        'bind_dn': '',
        'bind_password': '',
        'timeout': 10,
        'page_size': 1000,
        'user_filter': '',
        'user_search_base': '',
        'user_username_attribute': 'sAMAccountName',
        'user_fullname_attribute': 'cn',
        'user_first_name_attribute': 'name',
        'user_surname_attribute': '',
        'user_email_attribute': 'mail',
        'user_avatar_attribute': 'avatar',
        'exclude_users': ['root'],
        'exclude_users_regex': '',
        'admin_filter': '',
        'restricted_filter': '',
        'group_search_base': '',
        'group_filter': '',
        'group_name_attribute': 'cn',
        'group_fullname_attribute': 'cn',
        'group_description_attribute': 'cn',
        'subgroup_search_base': '',
        'subgroup_filter': '',
        'subgroup_name_attribute': 'cn',
        'subgroup_description_attribute': 'cn',
        'exclude_groups': [''],
        'exclude_groups_regex': '',
        'exclude_subgroups': [''],
        'exclude_subgroups_regex': '',
        'exclude_subgroups_by_team_name': False,
        'trim_parent_name': False,
        'subgroup_separator': '/',
    },
    'sync_config': {
        'create_groups': True,
        'full_sync': False,
        'defaults': {
            'organization': {
                'repo_admin_change_team_access': False,
                'visibility': 'private',
            },
            'team': {
                'can_create_org_repo': False,
                'includes_all_repositories': False,
                'permission': 'read',
                'units': [
                    'repo.code', 'repo.issues', 'repo.ext_issues', 'repo.wiki',
                    'repo.pulls', 'repo.releases', 'repo.projects', 'repo.ext_wiki',
                ],
            },
            'user': {
                'allow_create_organization': False,
                'max_repo_creation': 0,
                'visibility': 'private',
            },
        },
    },
    'cron_timer': '@every 1m',
    'cron_enabled': True,
    'shutdown_timeout': 60,
    'logging': {
        'level': 'INFO',
        'log_dir': '',
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': '',
    },
}

# Required settings, reported by the environment variable that sets them
REQUIRED_FIELDS = [
    'gitea.base_url',
    'gitea.token',
    'gitea.auth_source_id',
    'ldap.url',
    'ldap.user_filter',
    'ldap.user_search_base',
    'ldap.group_filter',
    'ldap.group_search_base',
    'ldap.subgroup_filter',
    'ldap.subgroup_search_base',
]

SEARCH_PATHS = ['config.yaml', '/etc/gitea-ldap-sync/config.yaml']

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off', ''}


def env_name(key_path: str) -> str:
    """Map a dotted config key to its environment variable name."""
    return key_path.replace('.', '_').upper()


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or
                the first existing file in SEARCH_PATHS
            environ: Environment mapping, defaults to os.environ
        """
        self.environ = os.environ if environ is None else environ
        self.explicit_path = bool(config_path or self.environ.get('CONFIG_PATH'))
        self.config_path = config_path or self.environ.get('CONFIG_PATH') or self._find_config_file()
        self.config = {}

    def _find_config_file(self) -> Optional[str]:
        for path in SEARCH_PATHS:
            if os.path.isfile(path):
                return path
        return None

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        file_config = self._read_file()

        self.config = copy.deepcopy(DEFAULT_CONFIG)
        self._merge(self.config, file_config)

        # Apply environment variable overrides
        self._apply_env_overrides()

        self._normalize()

        # Validate configuration
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path or 'environment'}")
        return self.config

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_path:
            logger.debug("No configuration file found, using environment and defaults")
            return {}

        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.debug(f"Configuration file not found: {self.config_path}")
            return {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")
        return data

    def _merge(self, target: Dict[str, Any], source: Dict[str, Any]):
        """Recursively merge file values into the defaults."""
        for key, value in source.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                self._merge(target[key], value)
            else:
                target[key] = value

    def _apply_env_overrides(self):
        """Apply environment variable overrides for every known key."""
        for key_path, default in self._iter_leaves(DEFAULT_CONFIG):
            env_var = env_name(key_path)
            if env_var not in self.environ:
                continue
            try:
                value = self._coerce(self.environ[env_var], default)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {e}")
            self._set_nested_value(self.config, key_path, value)
            logger.debug(f"Applied environment override for {key_path}")

    def _iter_leaves(self, tree: Dict[str, Any], prefix: str = ''):
        for key, value in tree.items():
            path = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                yield from self._iter_leaves(value, path)
            else:
                yield path, value

    def _coerce(self, raw: str, default: Any) -> Any:
        """Convert an environment string to the type of the default value."""
        if isinstance(default, bool):
            lowered = raw.strip().lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"expected a boolean, got '{raw}'")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, list):
            return split_list(raw)
        return raw

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _get_nested_value(self, key_path: str) -> Any:
        current = self.config
        for key in key_path.split('.'):
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current

    def _normalize(self):
        """
        Bring file values into the type of their defaults.

        Booleans and integers written as strings in the file ("false", "0",
        "636") are converted the same way environment values are. List-valued
        settings may be given as comma separated strings.

        Raises:
            ConfigurationError: If a value cannot be converted
        """
        errors = []
        for key_path, default in self._iter_leaves(DEFAULT_CONFIG):
            if not isinstance(default, (bool, int)):
                continue
            value = self._get_nested_value(key_path)
            if value is None:
                self._set_nested_value(self.config, key_path, default)
                continue
            if type(value) is type(default):
                continue
            try:
                self._set_nested_value(self.config, key_path, self._coerce(str(value), default))
            except ValueError as e:
                errors.append(f"Invalid value for {key_path}: {e}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

        ldap_config = self.config['ldap']
        for key in ('exclude_users', 'exclude_groups', 'exclude_subgroups'):
            ldap_config[key] = split_list(ldap_config.get(key))

        team_defaults = self.config['sync_config']['defaults']['team']
        team_defaults['units'] = split_list(team_defaults.get('units'))

    def _validate(self):
        """Validate required configuration fields."""
        missing = []

        for key_path in REQUIRED_FIELDS:
            if not self._get_nested_value(key_path):
                missing.append(env_name(key_path))

        ldap_config = self.config['ldap']
        if not ldap_config.get('bind_dn') and not ldap_config.get('bind_password'):
            missing.extend(['LDAP_BIND_DN', 'LDAP_BIND_PASSWORD'])

        if missing:
            raise ConfigurationError(f"Required attribute is missing: {', '.join(missing)}")

        errors = []
        for key in ('exclude_users_regex', 'exclude_groups_regex', 'exclude_subgroups_regex'):
            pattern = ldap_config.get(key)
            if pattern:
                try:
                    re.compile(pattern)
                except re.error as e:
                    errors.append(f"Invalid regular expression for ldap.{key}: {e}")

        try:
            port = int(ldap_config.get('port'))
        except (TypeError, ValueError):
            errors.append(f"Invalid LDAP port: {ldap_config.get('port')}")
        else:
            if not 0 < port < 65536:
                errors.append(f"Invalid LDAP port: {port}")

        if self.config.get('cron_enabled') and not self.config.get('cron_timer'):
            errors.append("cron_timer must be set when cron_enabled is true")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))


def split_list(value: Any) -> List[str]:
    """Turn a comma separated string or a list into a list of stripped strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(',')]
    return [str(item).strip() for item in value]


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
