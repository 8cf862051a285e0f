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

"""awslabs Trino MCP Server implementation."""

import argparse
import os
import sys
from awslabs.trino_mcp_server.config import (
    get_mcp_host,
    get_mcp_port,
    get_transport_from_env,
    load_config,
)
from awslabs.trino_mcp_server.connection.trino_client import TrinoClient
from awslabs.trino_mcp_server.consts import (
    ERROR_EXECUTE_QUERY,
    ERROR_EXPLAIN_QUERY,
    ERROR_GET_TABLE_SCHEMA,
    ERROR_LIST_CATALOGS,
    ERROR_LIST_SCHEMAS,
    ERROR_LIST_TABLES,
    ERROR_NOT_CONFIGURED,
    EXPLAIN_FORMATS,
)
from awslabs.trino_mcp_server.external_auth import TokenBroker
from awslabs.trino_mcp_server.models import QueryResult, TableSchema
from loguru import logger
from mcp.server.fastmcp import Context, FastMCP
from pydantic import Field
from typing import Annotated, List, Optional


trino_client: Optional[TrinoClient] = None


mcp = FastMCP(
    'awslabs.trino-mcp-server',
    instructions="""
    # Trino MCP Server

    This server runs SQL against a Trino cluster and explores its catalogs, schemas and tables.

    ## Usage Notes
    - Only read-only statements (SELECT, SHOW, DESCRIBE, EXPLAIN, WITH) are accepted unless
      the server was started with TRINO_ALLOW_WRITE_QUERIES=true
    - Send one statement per call
    - Use fully qualified names (catalog.schema.table) when querying outside the default schema
    - With external authentication enabled, the first query opens a browser login page
    """,
    dependencies=['loguru', 'httpx', 'pydantic'],
)


def get_trino_client() -> TrinoClient:
    """Return the configured Trino client."""
    if trino_client is None:
        raise Exception(ERROR_NOT_CONFIGURED)
    return trino_client


async def _report_error(ctx: Context, message: str, error: Exception) -> Exception:
    logger.exception(message)
    detail = f'{message}: {error}'
    await ctx.error(detail)
    return Exception(detail)


@mcp.tool(name='execute_query', description='Execute a SQL query against Trino')
async def execute_query(
    query: Annotated[str, Field(description='The SQL statement to execute')],
    ctx: Context,
) -> QueryResult:
    """Execute a SQL query against Trino.

    Args:
        query: The SQL statement to execute
        ctx: MCP context for logging and state management

    Returns:
        QueryResult with column names, rows and execution metadata
    """
    logger.info(f'Entered execute_query with sql:{query}')
    try:
        result = await get_trino_client().execute_query(query)
        logger.success(f'execute_query returned {result.row_count} rows')
        return result
    except Exception as e:
        raise await _report_error(ctx, ERROR_EXECUTE_QUERY, e)


@mcp.tool(name='list_catalogs', description='List the catalogs available in Trino')
async def list_catalogs(ctx: Context) -> List[str]:
    """List catalogs, filtered by the configured catalog allowlist."""
    logger.info('Entered list_catalogs')
    try:
        return await get_trino_client().list_catalogs()
    except Exception as e:
        raise await _report_error(ctx, ERROR_LIST_CATALOGS, e)


@mcp.tool(name='list_schemas', description='List the schemas in a Trino catalog')
async def list_schemas(
    ctx: Context,
    catalog: Annotated[
        str, Field(description='Catalog name. Uses the default catalog when empty')
    ] = '',
) -> List[str]:
    """List schemas in a catalog, filtered by the configured schema allowlist."""
    logger.info(f'Entered list_schemas with catalog:{catalog}')
    try:
        return await get_trino_client().list_schemas(catalog)
    except Exception as e:
        raise await _report_error(ctx, f'{ERROR_LIST_SCHEMAS} in catalog {catalog}', e)


@mcp.tool(name='list_tables', description='List the tables in a Trino schema')
async def list_tables(
    ctx: Context,
    catalog: Annotated[
        str, Field(description='Catalog name. Uses the default catalog when empty')
    ] = '',
    schema: Annotated[
        str, Field(description='Schema name. Uses the default schema when empty')
    ] = '',
) -> List[str]:
    """List tables in a schema, filtered by the configured table allowlist."""
    logger.info(f'Entered list_tables with catalog:{catalog}, schema:{schema}')
    try:
        return await get_trino_client().list_tables(catalog, schema)
    except Exception as e:
        raise await _report_error(
            ctx, f'{ERROR_LIST_TABLES} in schema {schema} of catalog {catalog}', e
        )


@mcp.tool(name='get_table_schema', description='Describe the columns of a Trino table')
async def get_table_schema(
    ctx: Context,
    table: Annotated[
        str,
        Field(description='Table name as table, schema.table or catalog.schema.table'),
    ],
    catalog: Annotated[
        str, Field(description='Catalog name. Uses the default catalog when empty')
    ] = '',
    schema: Annotated[
        str, Field(description='Schema name. Uses the default schema when empty')
    ] = '',
) -> TableSchema:
    """Describe a table.

    Args:
        ctx: MCP context for logging and state management
        table: Table name, optionally qualified with schema or catalog and schema
        catalog: Catalog name
        schema: Schema name

    Returns:
        TableSchema with the resolved table name and its columns
    """
    logger.info(f'Entered get_table_schema with catalog:{catalog}, schema:{schema}, table:{table}')
    try:
        return await get_trino_client().get_table_schema(catalog, schema, table)
    except Exception as e:
        raise await _report_error(ctx, f'{ERROR_GET_TABLE_SCHEMA} for table {table}', e)


@mcp.tool(name='explain_query', description='Show the Trino execution plan of a SQL query')
async def explain_query(
    query: Annotated[str, Field(description='The SQL statement to explain')],
    ctx: Context,
    explain_format: Annotated[
        EXPLAIN_FORMATS, Field(description='Plan output format: TEXT, GRAPHVIZ or JSON')
    ] = 'TEXT',
) -> QueryResult:
    """Return the execution plan of a query without running it."""
    logger.info(f'Entered explain_query with format:{explain_format}, sql:{query}')
    try:
        return await get_trino_client().explain_query(query, explain_format)
    except Exception as e:
        raise await _report_error(ctx, ERROR_EXPLAIN_QUERY, e)


def main():
    """Main entry point for the MCP server application.

    Trino connection settings come from TRINO_* environment variables.
    """
    global trino_client

    logger.remove()
    logger.add(sys.stderr, level=os.getenv('FASTMCP_LOG_LEVEL', 'WARNING'))

    parser = argparse.ArgumentParser(
        description='An AWS Labs Model Context Protocol (MCP) server for Trino'
    )
    parser.add_argument(
        '--allow-write-queries',
        action='store_true',
        help='Allow statements other than SELECT, SHOW, DESCRIBE, EXPLAIN and WITH',
    )
    parser.add_argument(
        '--transport',
        choices=['stdio', 'streamable-http'],
        help='MCP transport (default: MCP_TRANSPORT or stdio)',
    )
    args = parser.parse_args()

    try:
        config = load_config()
        transport = args.transport or get_transport_from_env()
        host = get_mcp_host()
        port = get_mcp_port()
    except ValueError as e:
        logger.error(f'Invalid configuration: {e}')
        sys.exit(1)

    if args.allow_write_queries:
        config.allow_write_queries = True

    authenticator = None
    if config.external_auth:
        authenticator = TokenBroker(
            config.base_url,
            config.user,
            timeout=config.external_auth_timeout,
            ssl_insecure=config.ssl_insecure,
        )
        logger.info('External authentication enabled, login starts with the first query')

    trino_client = TrinoClient(config, authenticator)

    logger.info(
        f'MCP configuration:\n'
        f'trino_url:{config.base_url}\n'
        f'user:{config.user}\n'
        f'catalog:{config.catalog}\n'
        f'schema:{config.schema_name}\n'
        f'allow_write_queries:{config.allow_write_queries}\n'
        f'external_auth:{config.external_auth}\n'
        f'transport:{transport}\n'
    )

    if transport == 'streamable-http':
        mcp.settings.host = host
        mcp.settings.port = port
        logger.warning(
            'streamable-http transport does not authenticate MCP clients, '
            'run it behind an authenticating proxy'
        )

    mcp.run(transport=transport)


if __name__ == '__main__':
    main()
