"""
LDAP client for connecting to and querying LDAP directories.

This module provides the three operations the sync needs from a directory
service: bind, paged subtree search, and close.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, ALL_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.core.results import RESULT_SUCCESS

from gitea_ldap_sync.models import LDAPEntry

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# memberOf is an operational attribute on OpenLDAP and is not part of '*'
SEARCH_ATTRIBUTES = [ALL_ATTRIBUTES, 'memberOf']


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for connecting to and querying LDAP directories.

    Meant to be used as a context manager so the connection is released
    whether or not the searches succeed::

        with LDAPClient(config['ldap']) as client:
            entries = client.search(base, '(objectClass=person)')
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.host, self.port, self.use_ssl = self._parse_url(
            config['url'], config.get('port', 389), config.get('use_tls', True)
        )
        self.bind_dn = config.get('bind_dn') or None
        self.bind_password = config.get('bind_password') or None

        # SSL/TLS configuration
        self.allow_insecure_tls = config.get('allow_insecure_tls', False)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.timeout = config.get('timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.server = None
        self.connection = None
        self._connected = False

    @staticmethod
    def _parse_url(url: str, port: Any, use_tls: bool):
        """Accept either a bare host name or an ldap:// / ldaps:// URL."""
        lowered = url.lower()
        if lowered.startswith('ldaps://'):
            use_tls = True
            url = url[len('ldaps://'):]
        elif lowered.startswith('ldap://'):
            url = url[len('ldap://'):]
        url = url.rstrip('/')
        if ':' in url:
            url, _, url_port = url.partition(':')
            port = url_port
        return url, int(port), bool(use_tls)

    def connect(self) -> bool:
        """
        Establish connection to LDAP server and bind.

        An empty bind DN performs an anonymous bind.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If the connection or the bind fails
        """
        try:
            tls_config = self._create_tls_config()

            self.server = Server(
                self.host,
                port=self.port,
                use_ssl=self.use_ssl,
                tls=tls_config,
                connect_timeout=self.timeout
            )
            logger.debug(f"Created LDAP server object for {self.host}:{self.port} (SSL: {self.use_ssl})")

            self.connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.timeout
            )

            if not self.connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

            if not self.connection.bind():
                raise LDAPConnectionError(
                    f"Failed to bind with binddn: {self.bind_dn or '<anonymous>'}: {self.connection.result}"
                )
        except LDAPConnectionError:
            self._discard_connection()
            raise
        except LDAPException as e:
            self._discard_connection()
            raise LDAPConnectionError(f"Failed to connect to LDAP server {self.host}:{self.port}: {e}")

        self._connected = True
        logger.info(f"Connected and bound to LDAP server {self.host}:{self.port}")
        return True

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not self.use_ssl:
            return None

        tls_config = {}

        if self.allow_insecure_tls:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("LDAP TLS certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def _discard_connection(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error discarding LDAP connection: {e}")
        self.connection = None
        self._connected = False

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, search_base: str, search_filter: str,
               attributes: Optional[List[str]] = None) -> List[LDAPEntry]:
        """
        Run a paged subtree search and return every entry found.

        Args:
            search_base: Base DN of the search
            search_filter: LDAP filter
            attributes: Attributes to fetch, all user attributes by default

        Returns:
            List of entries with their DN and attribute values

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        attributes = attributes or SEARCH_ATTRIBUTES
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        cookie = None
        page_count = 0

        try:
            while True:
                self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )

                result = self.connection.result or {}
                if result.get('result') != RESULT_SUCCESS:
                    raise LDAPQueryError(
                        f"Search failed. searchbase: {search_base}, filter: {search_filter}: "
                        f"{result.get('description')} {result.get('message', '')}".rstrip()
                    )

                page_count += 1
                for item in self.connection.response or []:
                    if item.get('type') == 'searchResEntry':
                        entries.append(self._to_entry(item))

                cookie = self._next_cookie(result)
                if not cookie:
                    break
        except LDAPException as e:
            raise LDAPQueryError(
                f"LDAP search failed. searchbase: {search_base}, filter: {search_filter}: {e}"
            )

        logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    @staticmethod
    def _next_cookie(result: Dict[str, Any]):
        controls = result.get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID) or {}
        return (paged.get('value') or {}).get('cookie')

    @staticmethod
    def _to_entry(item: Dict[str, Any]) -> LDAPEntry:
        """Convert an ldap3 response item into an LDAPEntry of string values."""
        raw = item.get('raw_attributes') or {}
        attributes = {}
        for name, values in raw.items():
            if not isinstance(values, list):
                values = [values]
            attributes[name] = [
                value.decode('utf-8', errors='replace') if isinstance(value, bytes) else str(value)
                for value in values
            ]
        return LDAPEntry(dn=str(item.get('dn', '')), attributes=attributes)

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
