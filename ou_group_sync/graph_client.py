"""
Microsoft Graph client for group lookup and dynamic group creation.

This module handles the OAuth2 client credentials flow against the Microsoft
identity platform and the two Graph calls the sync needs: find groups by
display name and create a dynamic-membership security group.
"""

import ssl
import json
import time
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from ou_group_sync.config import IdentityProviderSettings
from ou_group_sync.credentials import SecretProvider
from ou_group_sync.errors import GraphAPIError, GraphAuthenticationError, SetupError
from ou_group_sync.logging_setup import SyncLog
from ou_group_sync.models import GroupSpec

GRAPH_API_VERSION = 'v1.0'
DYNAMIC_MEMBERSHIP = 'DynamicMembership'
PROCESSING_STATE_ON = 'On'


def escape_odata_string(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return value.replace("'", "''")


class GraphClient:
    """
    Minimal Microsoft Graph client.

    A single HTTP connection is kept open to the Graph host and recreated after
    transport errors. Tokens are refreshed when expired or rejected with 401.
    """

    def __init__(self, settings: IdentityProviderSettings, secret_provider: SecretProvider,
                 log: Optional[SyncLog] = None):
        """
        Initialize Graph client.

        Args:
            settings: Identity provider settings
            secret_provider: Source of the application client secret
            log: Logging capability
        """
        self.settings = settings
        self.secret_provider = secret_provider
        self.log = log or SyncLog()

        self.parsed_url = urlparse(settings.graph_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')
        self.token_url = f"{settings.authority}/{settings.tenant_id}/oauth2/v2.0/token"
        self.scope = f"{settings.graph_url}/.default"

        self.connection = None
        self.ssl_context = self._create_ssl_context()

        self.auth_headers = {}
        self._token_expires_at = 0.0

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Set up SSL context based on configuration."""
        if not self.settings.verify_ssl:
            self.log.warning("SSL verification disabled for identity provider")
            return ssl._create_unverified_context()
        return ssl.create_default_context()

    def _open_connection(self, url) -> Union[HTTPSConnection, HTTPConnection]:
        if url.scheme == 'https':
            return HTTPSConnection(url.netloc, context=self.ssl_context, timeout=self.settings.timeout)
        return HTTPConnection(url.netloc, timeout=self.settings.timeout)

    def authenticate(self) -> bool:
        """
        Obtain an access token with the client credentials flow.

        Returns:
            True if a token was obtained

        Raises:
            SetupError: If the secret cannot be resolved or the token request fails
        """
        if self._is_token_valid():
            self.log.debug("Graph access token still valid")
            return True

        try:
            self._request_token()
        except GraphAPIError as e:
            raise SetupError(f"Cannot authenticate to identity provider: {e}")
        return True

    def _request_token(self):
        """Request a new access token and store it in the auth headers."""
        try:
            secret = self.secret_provider.get_client_secret()
        except SetupError as e:
            raise GraphAuthenticationError(f"Client secret unavailable: {e}")
        token_body = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.settings.client_id,
            'client_secret': secret.reveal(),
            'scope': self.scope
        })
        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        parsed_token_url = urlparse(self.token_url)
        token_conn = self._open_connection(parsed_token_url)
        try:
            self.log.debug(f"Requesting Graph access token for tenant {self.settings.tenant_id}")
            token_conn.request('POST', parsed_token_url.path, token_body, token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            raise GraphAuthenticationError(f"Token request to {parsed_token_url.netloc} failed: {e}")
        finally:
            token_conn.close()

        if response.status != 200:
            raise GraphAuthenticationError(
                f"Token request rejected: {response.status} {response.reason}"
                f"{self._error_detail(response_data)}",
                status_code=response.status
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise GraphAuthenticationError(f"Invalid JSON in token response: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise GraphAuthenticationError("Token response missing access_token")

        self.auth_headers['Authorization'] = f"Bearer {access_token}"
        expires_in = int(token_response.get('expires_in', 3600))
        self._token_expires_at = time.time() + expires_in - 60
        self.log.info(f"Obtained Graph access token for tenant {self.settings.tenant_id}")

    def _is_token_valid(self) -> bool:
        return bool(self.auth_headers) and time.time() < self._token_expires_at

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection is None:
            self.connection = self._open_connection(self.parsed_url)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make a request to the Graph API.

        Args:
            method: HTTP method
            path: Path relative to the API version root, including any query string
            body: JSON body

        Returns:
            Parsed JSON response, empty dict for an empty body

        Raises:
            GraphAPIError: If the request fails or returns an error status
        """
        full_path = f"{self.base_path}/{GRAPH_API_VERSION}/{path.lstrip('/')}"
        request_body = json.dumps(body) if body is not None else None

        for auth_attempt in range(2):
            if not self._is_token_valid():
                self._request_token()

            headers = dict(self.auth_headers)
            headers['Accept'] = 'application/json'
            if request_body is not None:
                headers['Content-Type'] = 'application/json'

            try:
                conn = self._get_connection()
                self.log.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (HTTPException, OSError) as e:
                self.close_connection()
                raise GraphAPIError(f"Connection error to {self.host}: {e}")

            self.log.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt == 0:
                self.log.info("401 received from Graph, refreshing access token")
                self.auth_headers.clear()
                continue

            if response.status == 401:
                raise GraphAuthenticationError("Authentication rejected by Graph", status_code=401)

            if response.status >= 400:
                raise GraphAPIError(
                    f"HTTP {response.status}: {response.reason}{self._error_detail(response_data)}",
                    status_code=response.status
                )

            try:
                return json.loads(response_data) if response_data else {}
            except json.JSONDecodeError as e:
                raise GraphAPIError(f"Invalid JSON response from Graph: {e}", status_code=response.status)

        raise GraphAuthenticationError("Authentication rejected by Graph", status_code=401)

    def _error_detail(self, response_data: str) -> str:
        """Pull the error code and message out of a Graph or token error body."""
        try:
            payload = json.loads(response_data)
        except (json.JSONDecodeError, TypeError):
            return ''
        if not isinstance(payload, dict):
            return ''
        error = payload.get('error')
        if isinstance(error, dict):
            return f" ({error.get('code', 'unknown')}: {error.get('message', '')})"
        if error:
            return f" ({error}: {payload.get('error_description', '')})"
        return ''

    def find_groups_by_display_name(self, display_name: str) -> List[Dict[str, Any]]:
        """
        Look up groups whose display name equals the given value.

        Returns:
            Matching group objects (id and displayName)
        """
        odata_filter = f"displayName eq '{escape_odata_string(display_name)}'"
        path = f"groups?$filter={quote(odata_filter, safe='')}&$select=id,displayName"
        response = self.request('GET', path)
        return response.get('value', [])

    def create_group(self, spec: GroupSpec) -> str:
        """
        Create a dynamic-membership security group.

        Returns:
            Id of the created group
        """
        body = {
            'displayName': spec.display_name,
            'description': spec.description,
            'mailEnabled': False,
            'mailNickname': spec.mail_nickname,
            'securityEnabled': True,
            'groupTypes': [DYNAMIC_MEMBERSHIP],
            'membershipRule': spec.membership_rule,
            'membershipRuleProcessingState': PROCESSING_STATE_ON
        }
        response = self.request('POST', 'groups', body)
        group_id = response.get('id')
        if not group_id:
            raise GraphAPIError(f"Group creation response for '{spec.display_name}' has no id")
        return group_id

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                self.log.warning(f"Error closing Graph connection: {e}")
            finally:
                self.connection = None
