"""
Base platform API interface and common HTTP functionality.

This module defines the abstract base class for the platform integration,
along with the HTTP client plumbing, SSL handling and authentication headers
it relies on.
"""

import json
import ssl
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from gitea_ldap_sync.models import (
    PlatformAccount,
    PlatformOrganization,
    PlatformRepository,
    PlatformTeam,
    PlatformUser,
)

logger = logging.getLogger(__name__)


class PlatformAPIError(Exception):
    """Base exception for platform API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PlatformAuthenticationError(PlatformAPIError):
    """Raised when the platform rejects the configured credentials."""
    pass


class PlatformNotFoundError(PlatformAPIError):
    """Raised when the requested resource does not exist."""
    pass


class PlatformAPIBase(ABC):
    """
    Abstract base class for the platform integration.

    Subclasses implement the read operations and mutation verbs the
    reconciler uses. The base class provides JSON over HTTP(S) with a bounded
    per-request timeout and no automatic retries.
    """

    API_PREFIX = ''

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize platform API client.

        Args:
            config: Platform configuration dictionary
        """
        self.config = config
        self.base_url = config['base_url']
        self.timeout = config.get('client_timeout', 10)
        self.verify_ssl = config.get('verify_ssl', True)
        self.page_size = config.get('page_size', 50)

        self.parsed_url = urlparse(self.base_url)
        if self.parsed_url.scheme not in ('http', 'https') or not self.parsed_url.netloc:
            raise PlatformAPIError(f"Invalid base url: {self.base_url}")
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/') + self.API_PREFIX

        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
            except (OSError, ssl.SSLError) as e:
                raise PlatformAPIError(f"Failed to load CA certificate file {ca_cert_file}: {e}")
            logger.info(f"Loaded PEM CA certificates: {ca_cert_file}")

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_pkcs12_truststore(truststore_file)

    def _load_pkcs12_truststore(self, truststore_file: str):
        """Load CA certificates from a PKCS12 bundle."""
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.serialization import pkcs12

        truststore_password = self.config.get('truststore_password')

        try:
            with open(truststore_file, 'rb') as f:
                p12_data = f.read()

            _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                p12_data, truststore_password.encode() if truststore_password else None
            )
        except (OSError, ValueError) as e:
            raise PlatformAPIError(f"Truststore loading failed: {e}")

        ca_certs = []
        if certificate:
            ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
        for cert in (additional_certificates or []):
            ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

        if ca_certs:
            self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
            logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        token = self.config.get('token')
        username = self.config.get('user')

        if username and token:
            credentials = base64.b64encode(f"{username}:{token}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
            logger.debug(f"Configured basic authentication for {username}")
        elif token:
            self.auth_headers['Authorization'] = f"token {token}"
            logger.debug("Configured token authentication")
        else:
            logger.warning(f"No credentials configured for {self.host}")

    def _new_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        if self.parsed_url.scheme == 'https':
            return HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(self.host, timeout=self.timeout)

    def build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params)
        return full_path

    def _send(self, method: str, path: str, body: Optional[Any] = None,
              params: Optional[Dict[str, Any]] = None) -> Tuple[Any, Dict[str, str]]:
        """Send one request and return the decoded body and response headers."""
        full_path = self.build_path(path, params)

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        conn = self._new_connection()
        try:
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            headers = {key.lower(): value for key, value in response.getheaders()}

            logger.debug(f"Response status: {response.status} {response.reason}")
        except (HTTPException, OSError) as e:
            raise PlatformAPIError(f"Connection error to {self.host}: {e}")
        finally:
            conn.close()

        if response.status >= 400:
            message = self._error_message(response_data) or response.reason
            error = f"{method} {full_path} failed with HTTP {response.status}: {message}"
            if response.status in (401, 403):
                raise PlatformAuthenticationError(error, response.status)
            if response.status == 404:
                raise PlatformNotFoundError(error, response.status)
            raise PlatformAPIError(error, response.status)

        if not response_data:
            return None, headers
        try:
            return json.loads(response_data), headers
        except json.JSONDecodeError as e:
            raise PlatformAPIError(f"Invalid JSON response from {self.host}{full_path}: {e}")

    @staticmethod
    def _error_message(response_data: str) -> str:
        try:
            payload = json.loads(response_data)
        except (json.JSONDecodeError, TypeError):
            return response_data.strip()
        if isinstance(payload, dict):
            return str(payload.get('message') or payload)
        return str(payload)

    def request(self, method: str, path: str, body: Optional[Any] = None,
                params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make HTTP request to the platform API.

        Args:
            method: HTTP method (GET, POST, PATCH, PUT, DELETE)
            path: API endpoint path (relative to the API root)
            body: JSON-serializable request body
            params: Query string parameters

        Returns:
            Parsed response data, None for empty responses

        Raises:
            PlatformAPIError: If request fails or the response cannot be decoded
        """
        data, _ = self._send(method, path, body, params)
        return data

    def paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Fetch every page of a list endpoint.

        Stops on an empty page or once ``X-Total-Count`` items were collected.
        """
        items = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({'page': page, 'limit': self.page_size})
            data, headers = self._send('GET', path, params=query)

            if data is None:
                break
            if not isinstance(data, list):
                raise PlatformAPIError(f"Expected a list from {path}, got {type(data).__name__}")
            if not data:
                break

            items.extend(data)

            total = headers.get('x-total-count')
            if total is not None and total.isdigit() and len(items) >= int(total):
                break
            page += 1

        return items

    # Read operations

    @abstractmethod
    def list_organizations(self) -> List[PlatformOrganization]:
        pass

    @abstractmethod
    def list_teams(self, org_name: str) -> List[PlatformTeam]:
        pass

    @abstractmethod
    def list_team_members(self, team_id: int) -> Dict[str, PlatformAccount]:
        pass

    @abstractmethod
    def list_users(self) -> List[PlatformUser]:
        pass

    @abstractmethod
    def list_org_repositories(self, org_name: str) -> List[PlatformRepository]:
        pass

    # Mutation verbs

    @abstractmethod
    def create_user(self, payload: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def edit_user(self, login: str, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete_user(self, login: str) -> None:
        pass

    @abstractmethod
    def create_organization(self, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete_organization(self, org_name: str) -> None:
        pass

    @abstractmethod
    def create_team(self, org_name: str, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete_team(self, team_id: int) -> None:
        pass

    @abstractmethod
    def add_members(self, team_id: int, accounts: List[PlatformAccount]) -> int:
        pass

    @abstractmethod
    def remove_members(self, team_id: int, accounts: List[PlatformAccount]) -> int:
        pass
