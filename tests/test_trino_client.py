# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the Trino REST client."""

import httpx
import json
import pytest
from awslabs.trino_mcp_server.allowlist import AllowlistError
from awslabs.trino_mcp_server.connection.trino_client import (
    ReadOnlyQueryError,
    TrinoAuthenticationError,
    TrinoClient,
    TrinoQueryError,
    quote_identifier,
)
from awslabs.trino_mcp_server.models import QueryResult
from unittest.mock import AsyncMock, MagicMock, patch


STATEMENT_URL = 'http://localhost:8080/v1/statement'
NEXT_URI_1 = 'http://localhost:8080/v1/statement/queued/q1/1'
NEXT_URI_2 = 'http://localhost:8080/v1/statement/executing/q1/2'

QUEUED = {'id': 'q1', 'nextUri': NEXT_URI_1, 'stats': {'state': 'QUEUED'}}
FIRST_PAGE = {
    'id': 'q1',
    'nextUri': NEXT_URI_2,
    'columns': [{'name': 'id', 'type': 'integer'}, {'name': 'name', 'type': 'varchar'}],
    'data': [[1, 'alice']],
    'stats': {'state': 'RUNNING'},
}
LAST_PAGE = {
    'id': 'q1',
    'columns': [{'name': 'id', 'type': 'integer'}, {'name': 'name', 'type': 'varchar'}],
    'data': [[2, 'bob']],
    'stats': {'state': 'FINISHED'},
}
SINGLE_PAGE = {
    'id': 'q2',
    'columns': [{'name': '_col0', 'type': 'integer'}],
    'data': [[1]],
    'stats': {'state': 'FINISHED'},
}


def _http_client(mock_async_client):
    client = mock_async_client.return_value.__aenter__.return_value
    mock_async_client.return_value.__aexit__.return_value = False
    return client


def _authenticator(token='tok-1'):
    authenticator = MagicMock()
    authenticator.get_token = AsyncMock(return_value=token)
    return authenticator


class TestExecuteQuery:
    """Tests for TrinoClient.execute_query."""

    @pytest.mark.asyncio
    async def test_follows_next_uri(self, trino_config, response_factory):
        """Test rows are collected across every page."""
        trino = TrinoClient(trino_config)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(200, json_data=QUEUED))
            client.get = AsyncMock(
                side_effect=[
                    response_factory(200, json_data=FIRST_PAGE),
                    response_factory(200, json_data=LAST_PAGE),
                ]
            )

            result = await trino.execute_query('SELECT id, name FROM users')

        assert isinstance(result, QueryResult)
        assert result.columns == ['id', 'name']
        assert result.rows == [{'id': 1, 'name': 'alice'}, {'id': 2, 'name': 'bob'}]
        assert result.row_count == 2
        assert result.query_id == 'q1'
        assert result.execution_time_ms >= 0

        client.post.assert_called_once_with(STATEMENT_URL, content='SELECT id, name FROM users')
        assert [c.args[0] for c in client.get.call_args_list] == [NEXT_URI_1, NEXT_URI_2]

        headers = mock_client.call_args.kwargs['headers']
        assert headers['X-Trino-User'] == 'tester'
        assert headers['X-Trino-Source'] == 'trino-mcp-server'
        assert headers['X-Trino-Catalog'] == 'hive'
        assert headers['X-Trino-Schema'] == 'default'
        assert 'Authorization' not in headers
        assert mock_client.call_args.kwargs['auth'] is None
        assert mock_client.call_args.kwargs['verify'] is True

    @pytest.mark.asyncio
    async def test_basic_auth_with_password(self, trino_config, response_factory):
        """Test a configured password is sent with basic auth."""
        trino_config.password = 'secret'
        trino_config.ssl_insecure = True
        trino = TrinoClient(trino_config)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(200, json_data=SINGLE_PAGE))

            await trino.execute_query('SELECT 1')

        assert isinstance(mock_client.call_args.kwargs['auth'], httpx.BasicAuth)
        assert mock_client.call_args.kwargs['verify'] is False

    @pytest.mark.asyncio
    async def test_bearer_token_from_authenticator(self, trino_config, response_factory):
        """Test the broker token is sent as a bearer token."""
        trino_config.password = 'ignored'
        authenticator = _authenticator('tok-1')
        trino = TrinoClient(trino_config, authenticator)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(200, json_data=SINGLE_PAGE))

            result = await trino.execute_query('SELECT 1')

        assert result.rows == [{'_col0': 1}]
        assert mock_client.call_args.kwargs['headers']['Authorization'] == 'Bearer tok-1'
        assert mock_client.call_args.kwargs['auth'] is None
        authenticator.get_token.assert_awaited_once()

    def test_construction_is_lazy(self, trino_config):
        """Test creating a client does not authenticate."""
        authenticator = _authenticator()

        with patch('httpx.AsyncClient') as mock_client:
            TrinoClient(trino_config, authenticator)

        authenticator.get_token.assert_not_called()
        mock_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_query(self, trino_config):
        """Test empty statements are rejected."""
        trino = TrinoClient(trino_config)
        with pytest.raises(ValueError, match='Query cannot be empty'):
            await trino.execute_query('   ')

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        'sql',
        [
            'INSERT INTO t VALUES (1)',
            '-- note\nDROP TABLE t',
            'SELECT 1; DELETE FROM t',
            'EXPLAIN ANALYZE DELETE FROM t',
        ],
    )
    async def test_read_only_gate(self, trino_config, sql):
        """Test write statements never reach Trino when writes are disabled."""
        authenticator = _authenticator()
        trino = TrinoClient(trino_config, authenticator)

        with patch('httpx.AsyncClient') as mock_client:
            with pytest.raises(ReadOnlyQueryError, match='only allows readonly query'):
                await trino.execute_query(sql)

        mock_client.assert_not_called()
        authenticator.get_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_allowed(self, trino_config, response_factory):
        """Test write statements run when writes are enabled."""
        trino_config.allow_write_queries = True
        trino = TrinoClient(trino_config)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(
                return_value=response_factory(200, json_data={'id': 'q3', 'updateType': 'INSERT'})
            )

            result = await trino.execute_query('INSERT INTO t VALUES (1)')

        assert result.row_count == 0
        assert result.query_id == 'q3'

    @pytest.mark.asyncio
    async def test_error_payload(self, trino_config, response_factory):
        """Test a failed query raises with the Trino error message."""
        trino = TrinoClient(trino_config)
        failed = {
            'id': 'q4',
            'error': {
                'message': "line 1:15: Table 'hive.default.missing' does not exist",
                'errorName': 'TABLE_NOT_FOUND',
            },
        }

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(200, json_data=QUEUED))
            client.get = AsyncMock(return_value=response_factory(200, json_data=failed))

            with pytest.raises(TrinoQueryError, match='does not exist'):
                await trino.execute_query('SELECT * FROM missing')

    @pytest.mark.asyncio
    async def test_unexpected_status(self, trino_config, response_factory):
        """Test non 200 responses raise."""
        trino = TrinoClient(trino_config)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(500, text='boom'))

            with pytest.raises(TrinoQueryError, match='unexpected status code 500'):
                await trino.execute_query('SELECT 1')

    @pytest.mark.asyncio
    async def test_non_json_body(self, trino_config, response_factory):
        """Test a 200 response that is not JSON raises TrinoQueryError."""
        trino = TrinoClient(trino_config)
        response = response_factory(200, text='<html>proxy error</html>')
        response.json.side_effect = json.JSONDecodeError('Expecting value', response.text, 0)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response)

            with pytest.raises(TrinoQueryError, match='invalid JSON response from POST') as exc:
                await trino.execute_query('SELECT 1')

        assert isinstance(exc.value.__cause__, json.JSONDecodeError)

    @pytest.mark.asyncio
    async def test_busy_coordinator_is_retried(self, trino_config, response_factory):
        """Test 502/503/504 responses are retried."""
        trino = TrinoClient(trino_config, busy_retry_interval=0)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(
                side_effect=[
                    response_factory(503),
                    response_factory(502),
                    response_factory(200, json_data=SINGLE_PAGE),
                ]
            )

            result = await trino.execute_query('SELECT 1')

        assert result.row_count == 1
        assert client.post.call_count == 3

    @pytest.mark.asyncio
    async def test_query_timeout_cancels_query(self, trino_config, response_factory):
        """Test an expired deadline cancels the query on the coordinator."""
        config = trino_config.model_copy(update={'query_timeout': 0})
        trino = TrinoClient(config)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(200, json_data=QUEUED))
            client.get = AsyncMock()
            client.delete = AsyncMock(return_value=response_factory(204))

            with pytest.raises(TrinoQueryError, match='query timeout exceeded'):
                await trino.execute_query('SELECT 1')

        client.delete.assert_called_once_with(NEXT_URI_1)
        client.get.assert_not_called()


class TestReauthentication:
    """Tests for the re-authentication retry."""

    @pytest.mark.asyncio
    async def test_retry_after_401(self, trino_config, response_factory):
        """Test a rejected token is invalidated and the query retried once."""
        authenticator = MagicMock()
        authenticator.get_token = AsyncMock(side_effect=['expired', 'fresh'])
        trino = TrinoClient(trino_config, authenticator)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(
                side_effect=[
                    response_factory(401),
                    response_factory(200, json_data=SINGLE_PAGE),
                ]
            )

            result = await trino.execute_query('SELECT 1')

        assert result.row_count == 1
        authenticator.invalidate_token.assert_called_once()
        assert authenticator.get_token.await_count == 2
        assert mock_client.call_args.kwargs['headers']['Authorization'] == 'Bearer fresh'

    @pytest.mark.asyncio
    async def test_retry_after_connection_teardown(self, trino_config, response_factory):
        """Test connection teardown errors are retried with a fresh token."""
        authenticator = _authenticator()
        trino = TrinoClient(trino_config, authenticator)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(
                side_effect=[
                    httpx.RemoteProtocolError('connection closed by peer'),
                    response_factory(200, json_data=SINGLE_PAGE),
                ]
            )

            result = await trino.execute_query('SELECT 1')

        assert result.row_count == 1
        authenticator.invalidate_token.assert_called_once()

    @pytest.mark.asyncio
    async def test_second_failure_propagates(self, trino_config, response_factory):
        """Test only one retry is made."""
        authenticator = _authenticator()
        trino = TrinoClient(trino_config, authenticator)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(401))

            with pytest.raises(TrinoAuthenticationError, match='401 Unauthorized'):
                await trino.execute_query('SELECT 1')

        authenticator.invalidate_token.assert_called_once()
        assert client.post.call_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_without_authenticator(self, trino_config, response_factory):
        """Test 401 is returned as is when external auth is disabled."""
        trino = TrinoClient(trino_config)

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(401))

            with pytest.raises(TrinoAuthenticationError):
                await trino.execute_query('SELECT 1')

        assert client.post.call_count == 1

    @pytest.mark.asyncio
    async def test_no_retry_for_query_errors(self, trino_config, response_factory):
        """Test ordinary query failures are not retried."""
        authenticator = _authenticator()
        trino = TrinoClient(trino_config, authenticator)
        failed = {'id': 'q5', 'error': {'message': 'Column x cannot be resolved'}}

        with patch('httpx.AsyncClient') as mock_client:
            client = _http_client(mock_client)
            client.post = AsyncMock(return_value=response_factory(200, json_data=failed))

            with pytest.raises(TrinoQueryError, match='cannot be resolved'):
                await trino.execute_query('SELECT x')

        authenticator.invalidate_token.assert_not_called()


class TestMetadata:
    """Tests for the metadata helpers."""

    @staticmethod
    def _result(column, values):
        return QueryResult(
            columns=[column],
            rows=[{column: value} for value in values],
            row_count=len(values),
        )

    @pytest.mark.asyncio
    async def test_list_catalogs(self, trino_config):
        """Test catalogs are filtered by the allowlist."""
        trino_config.allowed_catalogs = ['hive', 'POSTGRESQL']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock(
            return_value=self._result('Catalog', ['hive', 'postgresql', 'system'])
        )

        assert await trino.list_catalogs() == ['hive', 'postgresql']
        trino._execute_with_reauth.assert_awaited_once_with('SHOW CATALOGS')

    @pytest.mark.asyncio
    async def test_list_schemas_default_catalog(self, trino_config):
        """Test the default catalog is used and schemas are filtered."""
        trino_config.allowed_schemas = ['hive.analytics']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock(
            return_value=self._result('Schema', ['analytics', 'staging'])
        )

        assert await trino.list_schemas() == ['analytics']
        trino._execute_with_reauth.assert_awaited_once_with('SHOW SCHEMAS FROM "hive"')

    @pytest.mark.asyncio
    async def test_list_schemas_catalog_not_allowed(self, trino_config):
        """Test schemas of a disallowed catalog are not listed."""
        trino_config.allowed_catalogs = ['hive']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock()

        with pytest.raises(AllowlistError, match='catalog postgresql'):
            await trino.list_schemas('postgresql')

        trino._execute_with_reauth.assert_not_called()

    @pytest.mark.asyncio
    async def test_list_tables(self, trino_config):
        """Test tables are listed with quoted identifiers and filtered."""
        trino_config.allowed_tables = ['hive.analytics.users']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock(
            return_value=self._result('Table', ['users', 'events'])
        )

        assert await trino.list_tables('hive', 'analytics') == ['users']
        trino._execute_with_reauth.assert_awaited_once_with(
            'SHOW TABLES FROM "hive"."analytics"'
        )

    @pytest.mark.asyncio
    async def test_list_tables_schema_not_allowed(self, trino_config):
        """Test tables of a disallowed schema are not listed."""
        trino_config.allowed_schemas = ['hive.analytics']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock()

        with pytest.raises(AllowlistError, match='schema hive.staging'):
            await trino.list_tables('hive', 'staging')

    @pytest.mark.asyncio
    async def test_get_table_schema(self, trino_config):
        """Test a schema.table name is resolved and described."""
        trino_config.allowed_tables = ['hive.analytics.users']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock(
            return_value=QueryResult(
                columns=['Column', 'Type', 'Extra', 'Comment'],
                rows=[
                    {'Column': 'id', 'Type': 'bigint', 'Extra': '', 'Comment': 'primary key'},
                    {'Column': 'name', 'Type': 'varchar', 'Extra': None, 'Comment': None},
                ],
                row_count=2,
            )
        )

        schema = await trino.get_table_schema('', '', 'analytics.users')

        trino._execute_with_reauth.assert_awaited_once_with(
            'DESCRIBE "hive"."analytics"."users"'
        )
        assert (schema.catalog, schema.schema_name, schema.table) == (
            'hive',
            'analytics',
            'users',
        )
        assert [c.name for c in schema.columns] == ['id', 'name']
        assert schema.columns[0].comment == 'primary key'
        assert schema.columns[1].extra == ''

    @pytest.mark.asyncio
    async def test_get_table_schema_not_allowed(self, trino_config):
        """Test a table outside the allowlist is not described."""
        trino_config.allowed_tables = ['hive.analytics.users']
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock()

        with pytest.raises(AllowlistError, match='hive.analytics.events'):
            await trino.get_table_schema('hive', 'analytics', 'events')

        trino._execute_with_reauth.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_table_schema_empty_table(self, trino_config):
        """Test a table name is required."""
        trino = TrinoClient(trino_config)
        with pytest.raises(ValueError, match='table name cannot be empty'):
            await trino.get_table_schema('hive', 'analytics', '')

    @pytest.mark.asyncio
    @pytest.mark.parametrize('explain_format', ['TEXT', 'graphviz', 'JSON'])
    async def test_explain_query(self, trino_config, explain_format):
        """Test the plan is requested in the chosen format."""
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock(return_value=self._result('Query Plan', ['plan']))

        result = await trino.explain_query('SELECT 1', explain_format)

        assert result.rows == [{'Query Plan': 'plan'}]
        trino._execute_with_reauth.assert_awaited_once_with(
            f'EXPLAIN (FORMAT {explain_format.upper()}) SELECT 1'
        )

    @pytest.mark.asyncio
    async def test_explain_query_invalid_format(self, trino_config):
        """Test unknown plan formats are rejected."""
        trino = TrinoClient(trino_config)
        with pytest.raises(ValueError, match='Invalid explain format'):
            await trino.explain_query('SELECT 1', 'XML')

    @pytest.mark.asyncio
    async def test_explain_query_multiple_statements(self, trino_config):
        """Test explaining smuggled statements is rejected."""
        trino = TrinoClient(trino_config)
        trino._execute_with_reauth = AsyncMock()

        with pytest.raises(ReadOnlyQueryError):
            await trino.explain_query('SELECT 1; DROP TABLE t')

        trino._execute_with_reauth.assert_not_called()


def test_quote_identifier():
    """Test identifiers are quoted and embedded quotes doubled."""
    assert quote_identifier('users') == '"users"'
    assert quote_identifier('we"ird') == '"we""ird"'
