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

"""Trino statement execution over the Trino client REST protocol."""

import asyncio
import httpx
from awslabs.trino_mcp_server.allowlist import AllowlistError, resolve_table_name
from awslabs.trino_mcp_server.config import TrinoConfig
from awslabs.trino_mcp_server.consts import (
    BUSY_RETRY_INTERVAL,
    ERROR_EMPTY_QUERY,
    ERROR_WRITE_QUERY_PROHIBITED,
    HEADER_TRINO_CATALOG,
    HEADER_TRINO_SCHEMA,
    HEADER_TRINO_SOURCE,
    HEADER_TRINO_USER,
    HTTP_CLIENT_TIMEOUT,
    RETRYABLE_STATUS_CODES,
    STATEMENT_PATH,
    TRINO_SOURCE,
)
from awslabs.trino_mcp_server.external_auth import TokenBroker, is_authentication_error
from awslabs.trino_mcp_server.models import QueryResult, TableColumn, TableSchema
from awslabs.trino_mcp_server.readonly_sql_detector import is_read_only_query
from loguru import logger
from typing import Any, Dict, List, Optional


EXPLAIN_FORMAT_VALUES = ('TEXT', 'GRAPHVIZ', 'JSON')


class TrinoQueryError(Exception):
    """Raised when Trino rejects or fails a statement."""


class TrinoAuthenticationError(TrinoQueryError):
    """Raised when Trino answers a statement request with 401 Unauthorized."""


class ReadOnlyQueryError(Exception):
    """Raised when a query is rejected by the read-only gate."""


def quote_identifier(name: str) -> str:
    """Quote a catalog, schema or table name for use in SQL."""
    return '"' + name.replace('"', '""') + '"'


class TrinoClient:
    """Runs statements against a Trino coordinator.

    Each statement opens its own HTTP client. No request is made until the first
    statement, so constructing a client with external authentication never opens the
    browser.
    """

    def __init__(
        self,
        config: TrinoConfig,
        authenticator: Optional[TokenBroker] = None,
        busy_retry_interval: float = BUSY_RETRY_INTERVAL,
    ):
        """Initialize the client.

        Args:
            config: Trino connection and policy settings
            authenticator: Token broker used when external authentication is enabled
            busy_retry_interval: Seconds to wait before retrying a 502/503/504 response
        """
        self.config = config
        self.authenticator = authenticator
        self.allowlist = config.allowlist
        self.busy_retry_interval = busy_retry_interval

    async def execute_query(self, sql: str) -> QueryResult:
        """Execute a SQL statement.

        Args:
            sql: The statement to run

        Returns:
            QueryResult with the collected rows

        Raises:
            ValueError: If the statement is empty
            ReadOnlyQueryError: If writes are disabled and the statement is not read-only
            TrinoQueryError: If Trino fails the statement
        """
        if not sql or not sql.strip():
            raise ValueError(ERROR_EMPTY_QUERY)

        if not self.config.allow_write_queries and not is_read_only_query(sql):
            logger.info(f'query is rejected because only read-only queries are allowed: {sql}')
            raise ReadOnlyQueryError(ERROR_WRITE_QUERY_PROHIBITED)

        return await self._execute_with_reauth(sql)

    async def list_catalogs(self) -> List[str]:
        """List the catalogs allowed by the catalog allowlist."""
        result = await self._execute_with_reauth('SHOW CATALOGS')
        return self.allowlist.filter_catalogs(_first_column(result))

    async def list_schemas(self, catalog: str = '') -> List[str]:
        """List the allowed schemas of a catalog, the default catalog when empty."""
        catalog = catalog or self.config.catalog
        self._check_catalog(catalog)

        result = await self._execute_with_reauth(f'SHOW SCHEMAS FROM {quote_identifier(catalog)}')
        return self.allowlist.filter_schemas(_first_column(result), catalog)

    async def list_tables(self, catalog: str = '', schema: str = '') -> List[str]:
        """List the allowed tables of a schema, using the defaults for empty names."""
        catalog = catalog or self.config.catalog
        schema = schema or self.config.schema_name
        self._check_catalog(catalog)
        self._check_schema(catalog, schema)

        result = await self._execute_with_reauth(
            f'SHOW TABLES FROM {quote_identifier(catalog)}.{quote_identifier(schema)}'
        )
        return self.allowlist.filter_tables(_first_column(result), catalog, schema)

    async def get_table_schema(self, catalog: str, schema: str, table: str) -> TableSchema:
        """Describe the columns of a table.

        The table may be given as ``table``, ``schema.table`` or
        ``catalog.schema.table``; missing parts come from the configured defaults.
        """
        if not table:
            raise ValueError('table name cannot be empty')

        catalog, schema, table = resolve_table_name(
            catalog, schema, table, self.config.catalog, self.config.schema_name
        )
        self._check_catalog(catalog)
        self._check_schema(catalog, schema)
        if not self.allowlist.is_table_allowed(catalog, schema, table):
            raise AllowlistError(f'table {catalog}.{schema}.{table} is not in the allowlist')

        qualified = '.'.join(quote_identifier(part) for part in (catalog, schema, table))
        result = await self._execute_with_reauth(f'DESCRIBE {qualified}')

        columns = [
            TableColumn(
                name=str(row.get('Column', '')),
                type=str(row.get('Type', '')),
                extra=str(row.get('Extra') or ''),
                comment=str(row.get('Comment') or ''),
            )
            for row in result.rows
        ]
        return TableSchema(catalog=catalog, schema_name=schema, table=table, columns=columns)

    async def explain_query(self, sql: str, explain_format: str = 'TEXT') -> QueryResult:
        """Return the plan of a statement without running it."""
        explain_format = explain_format.upper()
        if explain_format not in EXPLAIN_FORMAT_VALUES:
            raise ValueError(
                f'Invalid explain format: {explain_format}. '
                f'Expected one of {", ".join(EXPLAIN_FORMAT_VALUES)}'
            )
        if not sql or not sql.strip():
            raise ValueError(ERROR_EMPTY_QUERY)

        return await self.execute_query(f'EXPLAIN (FORMAT {explain_format}) {sql}')

    def _check_catalog(self, catalog: str) -> None:
        if not self.allowlist.is_catalog_allowed(catalog):
            raise AllowlistError(f'catalog {catalog} is not in the allowlist')

    def _check_schema(self, catalog: str, schema: str) -> None:
        if not self.allowlist.is_schema_allowed(catalog, schema):
            raise AllowlistError(f'schema {catalog}.{schema} is not in the allowlist')

    async def _execute_with_reauth(self, sql: str) -> QueryResult:
        try:
            return await self._execute(sql)
        except (TrinoQueryError, httpx.HTTPError) as e:
            if self.authenticator is None or not is_authentication_error(e):
                raise
            logger.warning(f'Authentication error detected, re-authenticating: {e}')
            self.authenticator.invalidate_token()
            return await self._execute(sql)

    def _headers(self) -> Dict[str, str]:
        return {
            HEADER_TRINO_USER: self.config.user,
            HEADER_TRINO_SOURCE: TRINO_SOURCE,
            HEADER_TRINO_CATALOG: self.config.catalog,
            HEADER_TRINO_SCHEMA: self.config.schema_name,
        }

    async def _execute(self, sql: str) -> QueryResult:
        """Submit a statement and follow nextUri until Trino has returned every row."""
        headers = self._headers()
        auth = None
        if self.authenticator is not None:
            token = await self.authenticator.get_token()
            headers['Authorization'] = f'Bearer {token}'
        elif self.config.password:
            auth = httpx.BasicAuth(self.config.user, self.config.password)

        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + self.config.query_timeout

        columns: List[str] = []
        rows: List[Dict[str, Any]] = []
        query_id = None

        async with httpx.AsyncClient(
            verify=not self.config.ssl_insecure,
            timeout=HTTP_CLIENT_TIMEOUT,
            headers=headers,
            auth=auth,
        ) as client:
            url = f'{self.config.base_url}{STATEMENT_PATH}'
            payload = await self._send(client, 'POST', url, deadline, content=sql)

            while True:
                query_id = payload.get('id', query_id)

                error = payload.get('error')
                if error:
                    message = error.get('message', 'Unknown error')
                    logger.error(f'Query {query_id} failed: {message}')
                    raise TrinoQueryError(message)

                if not columns and payload.get('columns'):
                    columns = [column['name'] for column in payload['columns']]
                for row in payload.get('data') or []:
                    rows.append(dict(zip(columns, row)))

                next_uri = payload.get('nextUri')
                if not next_uri:
                    break

                if loop.time() >= deadline:
                    await self._cancel(client, next_uri)
                    raise TrinoQueryError(
                        f'query timeout exceeded ({self.config.query_timeout}s), query {query_id} cancelled'
                    )

                payload = await self._send(client, 'GET', next_uri, deadline)

        execution_time_ms = int((loop.time() - start) * 1000)
        logger.debug(f'Query {query_id} returned {len(rows)} rows in {execution_time_ms}ms')
        return QueryResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            query_id=query_id,
            execution_time_ms=execution_time_ms,
        )

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        deadline: float,
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send one protocol request, retrying while the coordinator reports it is busy."""
        loop = asyncio.get_running_loop()
        while True:
            if method == 'POST':
                response = await client.post(url, content=content)
            else:
                response = await client.get(url)

            if response.status_code not in RETRYABLE_STATUS_CODES:
                break
            if loop.time() >= deadline:
                raise TrinoQueryError(
                    f'Trino is unavailable (status: {response.status_code}) and the query timeout was exceeded'
                )
            logger.debug(f'Trino returned {response.status_code}, retrying {method} {url}')
            await asyncio.sleep(self.busy_retry_interval)

        if response.status_code == 401:
            raise TrinoAuthenticationError(f'401 Unauthorized: {response.text}')
        if response.status_code != 200:
            raise TrinoQueryError(
                f'unexpected status code {response.status_code} from {method} {url}: {response.text}'
            )
        try:
            return response.json()
        except ValueError as e:
            raise TrinoQueryError(f'invalid JSON response from {method} {url}: {e}') from e

    async def _cancel(self, client: httpx.AsyncClient, next_uri: str) -> None:
        try:
            await client.delete(next_uri)
        except httpx.HTTPError as e:
            logger.warning(f'Failed to cancel query at {next_uri}: {e}')


def _first_column(result: QueryResult) -> List[str]:
    if not result.columns:
        return []
    key = result.columns[0]
    return [str(row[key]) for row in result.rows]
