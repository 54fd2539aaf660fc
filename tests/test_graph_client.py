#!/usr/bin/env python3
"""
Unit tests for the Microsoft Graph client.

HTTPSConnection is mocked; token and Graph hosts get separate fake connections.
"""

import os
import sys
import json
import unittest
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, unquote

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ou_group_sync.config import IdentityProviderSettings
from ou_group_sync.credentials import StaticSecretProvider, EnvironmentSecretProvider
from ou_group_sync.errors import GraphAPIError, GraphAuthenticationError, SetupError
from ou_group_sync.graph_client import GraphClient, escape_odata_string
from ou_group_sync.logging_setup import RecordingSyncLog
from ou_group_sync.models import GroupSpec

TENANT = '11111111-2222-3333-4444-555555555555'
CLIENT = 'aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee'


def make_response(status=200, body=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    payload = json.dumps(body) if body is not None else ''
    response.read.return_value = payload.encode('utf-8')
    return response


def token_response(token='access-token-1', expires_in=3600):
    return make_response(body={'access_token': token, 'expires_in': expires_in, 'token_type': 'Bearer'})


class GraphClientTestCase(unittest.TestCase):
    """Shared fixtures for Graph client tests."""

    def setUp(self):
        """Set up test fixtures."""
        self.settings = IdentityProviderSettings(tenant_id=TENANT, client_id=CLIENT)
        self.log = RecordingSyncLog()

        self.token_conn = Mock()
        self.graph_conn = Mock()
        self.token_conn.getresponse.return_value = token_response()

        patcher = patch('ou_group_sync.graph_client.HTTPSConnection')
        self.mock_https = patcher.start()
        self.addCleanup(patcher.stop)
        self.mock_https.side_effect = self._connection_for_host

        self.client = GraphClient(self.settings, StaticSecretProvider('client-secret-value'), self.log)

    def _connection_for_host(self, host, **kwargs):
        if host == 'login.microsoftonline.com':
            return self.token_conn
        if host == 'graph.microsoft.com':
            return self.graph_conn
        raise AssertionError(f"unexpected host {host}")


class TestAuthentication(GraphClientTestCase):
    """Test cases for the client credentials flow."""

    def test_authenticate_requests_token(self):
        """Token request posts client credentials to the tenant endpoint."""
        self.assertTrue(self.client.authenticate())

        method, path, body, headers = self.token_conn.request.call_args[0]
        self.assertEqual(method, 'POST')
        self.assertEqual(path, f'/{TENANT}/oauth2/v2.0/token')
        form = parse_qs(body)
        self.assertEqual(form['grant_type'], ['client_credentials'])
        self.assertEqual(form['client_id'], [CLIENT])
        self.assertEqual(form['client_secret'], ['client-secret-value'])
        self.assertEqual(form['scope'], ['https://graph.microsoft.com/.default'])
        self.assertEqual(headers['Content-Type'], 'application/x-www-form-urlencoded')
        self.assertEqual(self.client.auth_headers['Authorization'], 'Bearer access-token-1')
        self.token_conn.close.assert_called_once()

    def test_secret_never_logged(self):
        """Neither the secret nor the token appears in log output."""
        self.client.authenticate()
        for message in self.log.messages():
            self.assertNotIn('client-secret-value', message)
            self.assertNotIn('access-token-1', message)

    def test_authenticate_reuses_valid_token(self):
        self.client.authenticate()
        self.client.authenticate()
        self.assertEqual(self.token_conn.request.call_count, 1)

    def test_token_rejected(self):
        """A rejected token request is a fatal setup error."""
        self.token_conn.getresponse.return_value = make_response(
            status=401, reason='Unauthorized',
            body={'error': 'invalid_client', 'error_description': 'AADSTS7000215: Invalid client secret'}
        )

        with self.assertRaises(SetupError) as ctx:
            self.client.authenticate()
        self.assertIn('invalid_client', str(ctx.exception))

    def test_token_endpoint_unreachable(self):
        self.token_conn.request.side_effect = OSError('Name or service not known')
        with self.assertRaises(SetupError):
            self.client.authenticate()

    def test_token_response_without_access_token(self):
        self.token_conn.getresponse.return_value = make_response(body={'token_type': 'Bearer'})
        with self.assertRaises(SetupError):
            self.client.authenticate()

    def test_missing_secret_is_setup_error(self):
        """A secret provider failure surfaces as SetupError."""
        client = GraphClient(self.settings, EnvironmentSecretProvider('OU_SYNC_TEST_UNSET_SECRET'), self.log)
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(SetupError):
                client.authenticate()


class TestGroupCalls(GraphClientTestCase):
    """Test cases for group lookup and creation."""

    def setUp(self):
        super().setUp()
        self.client.authenticate()
        self.spec = GroupSpec(
            display_name="Devices - Sales",
            description='Dynamic device group for organizational unit OU=Sales,DC=example,DC=com',
            membership_rule='(device.organizationalUnit -eq "Sales")',
            mail_nickname='devices-sales'
        )

    def test_find_groups_by_display_name(self):
        """Lookup filters on exact display name."""
        self.graph_conn.getresponse.return_value = make_response(
            body={'value': [{'id': 'g1', 'displayName': 'Devices - Sales'}]}
        )

        groups = self.client.find_groups_by_display_name('Devices - Sales')

        self.assertEqual(groups, [{'id': 'g1', 'displayName': 'Devices - Sales'}])
        method, path, body, headers = self.graph_conn.request.call_args[0]
        self.assertEqual(method, 'GET')
        self.assertTrue(path.startswith('/v1.0/groups?$filter='))
        self.assertIn("displayName eq 'Devices - Sales'", unquote(path))
        self.assertIn('$select=id,displayName', path)
        self.assertNotIn(' ', path)
        self.assertEqual(headers['Authorization'], 'Bearer access-token-1')

    def test_find_groups_escapes_quotes(self):
        self.graph_conn.getresponse.return_value = make_response(body={'value': []})

        self.assertEqual(self.client.find_groups_by_display_name("Devices - O'Brien"), [])

        path = self.graph_conn.request.call_args[0][1]
        self.assertIn("displayName eq 'Devices - O''Brien'", unquote(path))

    def test_escape_odata_string(self):
        self.assertEqual(escape_odata_string("it's"), "it''s")

    def test_create_group_payload(self):
        """Creation posts a dynamic security group."""
        self.graph_conn.getresponse.return_value = make_response(status=201, reason='Created', body={'id': 'new-id'})

        group_id = self.client.create_group(self.spec)

        self.assertEqual(group_id, 'new-id')
        method, path, body, headers = self.graph_conn.request.call_args[0]
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/v1.0/groups')
        self.assertEqual(headers['Content-Type'], 'application/json')
        self.assertEqual(json.loads(body), {
            'displayName': 'Devices - Sales',
            'description': 'Dynamic device group for organizational unit OU=Sales,DC=example,DC=com',
            'mailEnabled': False,
            'mailNickname': 'devices-sales',
            'securityEnabled': True,
            'groupTypes': ['DynamicMembership'],
            'membershipRule': '(device.organizationalUnit -eq "Sales")',
            'membershipRuleProcessingState': 'On'
        })

    def test_create_group_http_error(self):
        """Graph error bodies are reported with status and code."""
        self.graph_conn.getresponse.return_value = make_response(
            status=400, reason='Bad Request',
            body={'error': {'code': 'Request_BadRequest', 'message': 'Invalid membership rule'}}
        )

        with self.assertRaises(GraphAPIError) as ctx:
            self.client.create_group(self.spec)

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn('Request_BadRequest', str(ctx.exception))

    def test_create_group_without_id(self):
        self.graph_conn.getresponse.return_value = make_response(status=201, body={})
        with self.assertRaises(GraphAPIError):
            self.client.create_group(self.spec)

    def test_transport_error_resets_connection(self):
        """Socket errors raise GraphAPIError and drop the cached connection."""
        self.graph_conn.request.side_effect = ConnectionResetError('connection reset by peer')

        with self.assertRaises(GraphAPIError):
            self.client.find_groups_by_display_name('Devices - Sales')

        self.assertIsNone(self.client.connection)
        self.graph_conn.close.assert_called()

    def test_401_refreshes_token_once(self):
        """A 401 triggers one token refresh and one resend."""
        self.token_conn.getresponse.return_value = token_response('access-token-2')
        self.graph_conn.getresponse.side_effect = [
            make_response(status=401, reason='Unauthorized'),
            make_response(body={'value': []}),
        ]

        self.assertEqual(self.client.find_groups_by_display_name('Devices - HR'), [])

        self.assertEqual(self.token_conn.request.call_count, 2)
        headers = self.graph_conn.request.call_args[0][3]
        self.assertEqual(headers['Authorization'], 'Bearer access-token-2')

    def test_repeated_401_raises(self):
        self.graph_conn.getresponse.return_value = make_response(status=401, reason='Unauthorized')

        with self.assertRaises(GraphAuthenticationError):
            self.client.find_groups_by_display_name('Devices - HR')
        self.assertEqual(self.graph_conn.request.call_count, 2)

    def test_refresh_without_secret_raises_graph_error(self):
        """A secret lookup failure during refresh is an API error, not a setup error."""
        self.client.secret_provider = EnvironmentSecretProvider('OU_SYNC_TEST_UNSET_SECRET')
        self.graph_conn.getresponse.return_value = make_response(status=401, reason='Unauthorized')

        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(GraphAuthenticationError) as ctx:
                self.client.find_groups_by_display_name('Devices - HR')

        self.assertIn('OU_SYNC_TEST_UNSET_SECRET', str(ctx.exception))
        self.assertEqual(self.token_conn.request.call_count, 1)

    def test_close_connection(self):
        self.graph_conn.getresponse.return_value = make_response(body={'value': []})
        self.client.find_groups_by_display_name('Devices - HR')

        self.client.close_connection()

        self.graph_conn.close.assert_called_once()
        self.assertIsNone(self.client.connection)


if __name__ == '__main__':
    unittest.main()
