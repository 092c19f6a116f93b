#!/usr/bin/env python3
"""
Unit tests for the Gitea API client.

HTTP is mocked at the http.client connection level for transport tests and at
the request level for the mutation verbs.
"""

import json
import unittest
from unittest.mock import Mock, patch, call
import sys
import os

# Add parent directory to path to import gitea_ldap_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gitea_ldap_sync.api.base import PlatformAPIError, PlatformAuthenticationError, PlatformNotFoundError
from gitea_ldap_sync.api.gitea import GiteaAPI
from gitea_ldap_sync.models import PlatformAccount, PlatformUser


def http_response(status=200, body=None, headers=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = b'' if body is None else json.dumps(body).encode('utf-8')
    response.getheaders.return_value = list((headers or {}).items())
    return response


class TestGiteaTransport(unittest.TestCase):
    """Test cases for the HTTP plumbing in PlatformAPIBase."""

    def setUp(self):
        self.config = {
            'base_url': 'https://gitea.example.com',
            'token': 'secret-token',
            'client_timeout': 7,
            'page_size': 2,
        }

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_request_sends_token_and_json(self, mock_conn_class):
        conn = mock_conn_class.return_value
        conn.getresponse.return_value = http_response(201, {'id': 1})

        api = GiteaAPI(self.config)
        result = api.request('POST', '/orgs', body={'username': 'eng'})

        self.assertEqual(result, {'id': 1})
        method, path, body, headers = conn.request.call_args.args
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/api/v1/orgs')
        self.assertEqual(json.loads(body), {'username': 'eng'})
        self.assertEqual(headers['Authorization'], 'token secret-token')
        self.assertEqual(headers['Content-Type'], 'application/json')
        self.assertEqual(mock_conn_class.call_args.kwargs['timeout'], 7)
        conn.close.assert_called_once()

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_basic_auth_when_user_set(self, mock_conn_class):
        self.config['user'] = 'admin'
        mock_conn_class.return_value.getresponse.return_value = http_response(200, {})

        GiteaAPI(self.config).request('GET', '/version')

        headers = mock_conn_class.return_value.request.call_args.args[3]
        self.assertTrue(headers['Authorization'].startswith('Basic '))

    @patch('gitea_ldap_sync.api.base.HTTPConnection')
    def test_plain_http_and_base_path(self, mock_conn_class):
        self.config['base_url'] = 'http://localhost:3000/gitea/'
        mock_conn_class.return_value.getresponse.return_value = http_response(204)

        result = GiteaAPI(self.config).request('DELETE', '/teams/5')

        self.assertIsNone(result)
        self.assertEqual(mock_conn_class.return_value.request.call_args.args[1], '/gitea/api/v1/teams/5')

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_status_codes_map_to_exceptions(self, mock_conn_class):
        conn = mock_conn_class.return_value
        api = GiteaAPI(self.config)

        conn.getresponse.return_value = http_response(401, {'message': 'token is required'}, reason='Unauthorized')
        with self.assertRaises(PlatformAuthenticationError) as context:
            api.request('GET', '/admin/users')
        self.assertIn('token is required', str(context.exception))
        self.assertEqual(context.exception.status_code, 401)

        conn.getresponse.return_value = http_response(404, {'message': 'not found'}, reason='Not Found')
        with self.assertRaises(PlatformNotFoundError):
            api.request('GET', '/orgs/missing')

        conn.getresponse.return_value = http_response(422, {'message': 'user already exists [name: alice]'})
        with self.assertRaises(PlatformAPIError) as context:
            api.request('POST', '/admin/users')
        self.assertIn('already exists', str(context.exception))

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_invalid_json_is_an_api_error(self, mock_conn_class):
        response = http_response(200)
        response.read.return_value = b'<html>'
        mock_conn_class.return_value.getresponse.return_value = response

        with self.assertRaises(PlatformAPIError):
            GiteaAPI(self.config).request('GET', '/admin/users')

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_connection_error_is_an_api_error(self, mock_conn_class):
        mock_conn_class.return_value.request.side_effect = ConnectionRefusedError('refused')

        with self.assertRaises(PlatformAPIError) as context:
            GiteaAPI(self.config).request('GET', '/version')

        self.assertIn('Connection error', str(context.exception))

    def test_invalid_base_url(self):
        self.config['base_url'] = 'gitea.example.com'

        with self.assertRaises(PlatformAPIError):
            GiteaAPI(self.config)

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_paginate_until_empty_page(self, mock_conn_class):
        mock_conn_class.return_value.getresponse.side_effect = [
            http_response(200, [{'id': 1}, {'id': 2}]),
            http_response(200, [{'id': 3}]),
            http_response(200, []),
        ]

        items = GiteaAPI(self.config).paginate('/admin/orgs')

        self.assertEqual([item['id'] for item in items], [1, 2, 3])
        paths = [c.args[1] for c in mock_conn_class.return_value.request.call_args_list]
        self.assertEqual(paths, [
            '/api/v1/admin/orgs?page=1&limit=2',
            '/api/v1/admin/orgs?page=2&limit=2',
            '/api/v1/admin/orgs?page=3&limit=2',
        ])

    @patch('gitea_ldap_sync.api.base.HTTPSConnection')
    def test_paginate_stops_at_total_count(self, mock_conn_class):
        mock_conn_class.return_value.getresponse.side_effect = [
            http_response(200, [{'id': 1}, {'id': 2}], headers={'X-Total-Count': '3'}),
            http_response(200, [{'id': 3}], headers={'X-Total-Count': '3'}),
        ]

        items = GiteaAPI(self.config).paginate('/admin/users')

        self.assertEqual(len(items), 3)
        self.assertEqual(mock_conn_class.return_value.request.call_count, 2)

    def test_ssl_verification_disabled(self):
        self.config['verify_ssl'] = False

        api = GiteaAPI(self.config)

        self.assertFalse(api.ssl_context.check_hostname)


class TestGiteaOperations(unittest.TestCase):
    """Test cases for GiteaAPI read operations and mutation verbs."""

    def setUp(self):
        self.api = GiteaAPI({
            'base_url': 'https://gitea.example.com',
            'token': 'secret-token',
            'auth_source_id': 3,
            'page_size': 50,
        })

    @patch.object(GiteaAPI, 'paginate')
    def test_list_team_members_keyed_by_login(self, mock_paginate):
        mock_paginate.return_value = [
            {'id': 4, 'login': 'alice', 'full_name': 'Alice Smith', 'email': 'alice@example.com'},
            {'id': 5, 'login': 'bob', 'full_name': '', 'email': ''},
        ]

        members = self.api.list_team_members(9)

        mock_paginate.assert_called_once_with('/teams/9/members')
        self.assertEqual(sorted(members), ['alice', 'bob'])
        self.assertEqual(members['alice'], PlatformAccount(login='alice', full_name='Alice Smith', id=4,
                                                           email='alice@example.com'))

    @patch.object(GiteaAPI, 'paginate')
    def test_list_teams_quotes_org_name(self, mock_paginate):
        mock_paginate.return_value = [{'id': 1, 'name': 'Owners'}]

        teams = self.api.list_teams('my org')

        mock_paginate.assert_called_once_with('/orgs/my%20org/teams')
        self.assertEqual(teams[0].organization, 'my org')

    @patch.object(GiteaAPI, '_send')
    def test_search_users_unwraps_data(self, mock_send):
        mock_send.return_value = ({'ok': True, 'data': [{'id': 1, 'login': 'alice', 'full_name': 'Alice'}]}, {})

        users = self.api.search_users('Alice')

        self.assertEqual([user.login for user in users], ['alice'])
        self.assertEqual(mock_send.call_args.kwargs['params']['q'], 'Alice')

    @patch.object(GiteaAPI, 'request')
    def test_create_user_payload(self, mock_request):
        created = self.api.create_user({'username': 'alice', 'full_name': 'Alice', 'email': 'a@example.com',
                                        'visibility': 'private'})

        self.assertTrue(created)
        body = mock_request.call_args.kwargs['body']
        self.assertEqual(mock_request.call_args.args, ('POST', '/admin/users'))
        self.assertEqual(body['login_name'], 'alice')
        self.assertEqual(body['source_id'], 3)
        self.assertFalse(body['must_change_password'])

    @patch.object(GiteaAPI, 'request')
    def test_create_user_already_exists_is_success(self, mock_request):
        mock_request.side_effect = PlatformAPIError('POST failed with HTTP 422: user already exists [name: alice]', 422)

        self.assertFalse(self.api.create_user({'username': 'alice'}))

    @patch.object(GiteaAPI, 'request')
    def test_create_user_other_errors_propagate(self, mock_request):
        mock_request.side_effect = PlatformAPIError('HTTP 500: boom', 500)

        with self.assertRaises(PlatformAPIError):
            self.api.create_user({'username': 'alice'})

    @patch.object(GiteaAPI, 'request')
    def test_edit_user(self, mock_request):
        self.api.edit_user('alice', {'admin': True})

        mock_request.assert_called_once_with(
            'PATCH', '/admin/users/alice', body={'login_name': 'alice', 'source_id': 3, 'admin': True}
        )

    @patch.object(GiteaAPI, 'request')
    @patch.object(GiteaAPI, 'paginate')
    def test_delete_organization_removes_repositories_first(self, mock_paginate, mock_request):
        mock_paginate.return_value = [{'id': 1, 'name': 'r1'}, {'id': 2, 'name': 'r2'}]

        self.api.delete_organization('legacy')

        self.assertEqual(mock_request.call_args_list, [
            call('DELETE', '/repos/legacy/r1', body=None),
            call('DELETE', '/repos/legacy/r2', body=None),
            call('DELETE', '/orgs/legacy', body=None),
        ])

    @patch.object(GiteaAPI, 'request')
    @patch.object(GiteaAPI, 'search_users')
    def test_add_members_matches_login_case_insensitively(self, mock_search, mock_request):
        mock_search.return_value = [
            PlatformUser(id=1, login='Alice', full_name='Alice Smith'),
            PlatformUser(id=2, login='alice2', full_name='Alice Smith'),
        ]

        added = self.api.add_members(7, [PlatformAccount(login='alice', full_name='Alice Smith')])

        self.assertEqual(added, 1)
        mock_search.assert_called_once_with('Alice Smith')
        mock_request.assert_called_once_with('PUT', '/teams/7/members/alice', body=None)

    @patch.object(GiteaAPI, 'request')
    @patch.object(GiteaAPI, 'search_users')
    def test_add_members_skips_unknown_users(self, mock_search, mock_request):
        mock_search.return_value = []

        added = self.api.add_members(7, [PlatformAccount(login='ghost', full_name='')])

        self.assertEqual(added, 0)
        mock_search.assert_called_once_with('ghost')
        mock_request.assert_not_called()

    @patch.object(GiteaAPI, 'request')
    def test_remove_members_uses_login(self, mock_request):
        removed = self.api.remove_members(7, [PlatformAccount(login='carol', full_name='Carol Jones')])

        self.assertEqual(removed, 1)
        mock_request.assert_called_once_with('DELETE', '/teams/7/members/carol', body=None)

    @patch('gitea_ldap_sync.api.gitea.audit_logger')
    @patch.object(GiteaAPI, 'request')
    def test_mutations_are_audited(self, mock_request, mock_audit):
        self.api.delete_team(3)
        mock_audit.log_mutation.assert_called_once_with('delete_team', '3', True)

        mock_request.side_effect = PlatformAPIError('HTTP 500', 500)
        with self.assertRaises(PlatformAPIError):
            self.api.delete_user('bob')
        mock_audit.log_mutation.assert_called_with('delete_user', 'bob', False, 'HTTP 500')


if __name__ == '__main__':
    unittest.main()
