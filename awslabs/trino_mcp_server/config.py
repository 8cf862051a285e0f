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

import os
from awslabs.trino_mcp_server.allowlist import Allowlist, parse_allowlist, validate_allowlist
from awslabs.trino_mcp_server.consts import (
    DEFAULT_EXTERNAL_AUTH_TIMEOUT,
    DEFAULT_MCP_HOST,
    DEFAULT_MCP_PORT,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_TRINO_CATALOG,
    DEFAULT_TRINO_HOST,
    DEFAULT_TRINO_PORT,
    DEFAULT_TRINO_SCHEMA,
    DEFAULT_TRINO_SCHEME,
    DEFAULT_TRINO_USER,
    TRANSPORTS,
)
from loguru import logger
from pydantic import BaseModel, Field
from typing import List, Literal, Optional, cast


TRUTHY_VALUES = frozenset(['true', 'yes', '1'])
ALLOWED_CATALOGS_KEY = 'TRINO_ALLOWED_CATALOGS'
ALLOWED_SCHEMAS_KEY = 'TRINO_ALLOWED_SCHEMAS'
ALLOWED_TABLES_KEY = 'TRINO_ALLOWED_TABLES'


class TrinoConfig(BaseModel):
    """Connection and policy settings for a Trino cluster."""

    host: str = Field(DEFAULT_TRINO_HOST, description='Trino coordinator host')
    port: int = Field(DEFAULT_TRINO_PORT, ge=1, le=65535, description='Trino coordinator port')
    user: str = Field(DEFAULT_TRINO_USER, description='Value sent as X-Trino-User')
    password: str = Field('', description='Password for HTTP basic authentication')
    catalog: str = Field(DEFAULT_TRINO_CATALOG, description='Default catalog')
    schema_name: str = Field(DEFAULT_TRINO_SCHEMA, description='Default schema')
    scheme: Literal['http', 'https'] = Field(DEFAULT_TRINO_SCHEME, description='URL scheme')
    ssl_insecure: bool = Field(False, description='Skip TLS certificate verification')
    allow_write_queries: bool = Field(False, description='Disable the read-only query gate')
    query_timeout: int = Field(
        DEFAULT_QUERY_TIMEOUT, gt=0, description='Query timeout in seconds'
    )
    external_auth: bool = Field(False, description='Use browser based external authentication')
    external_auth_timeout: int = Field(
        DEFAULT_EXTERNAL_AUTH_TIMEOUT,
        gt=0,
        description='Seconds to wait for the user to complete external authentication',
    )
    allowed_catalogs: Optional[List[str]] = Field(None, description='Allowed catalogs')
    allowed_schemas: Optional[List[str]] = Field(
        None, description='Allowed schemas as catalog.schema'
    )
    allowed_tables: Optional[List[str]] = Field(
        None, description='Allowed tables as catalog.schema.table'
    )

    @property
    def base_url(self) -> str:
        """Coordinator URL without a trailing slash."""
        return f'{self.scheme}://{self.host}:{self.port}'

    @property
    def allowlist(self) -> Allowlist:
        """Allowlists built from the configured entries."""
        return Allowlist(self.allowed_catalogs, self.allowed_schemas, self.allowed_tables)


def get_env_bool(env_key: str, default: bool) -> bool:
    """Get a boolean value from an environment variable, with a default."""
    return os.getenv(env_key, str(default)).casefold() in TRUTHY_VALUES


def get_env_int(env_key: str, default: int) -> int:
    """Get a positive integer from an environment variable, falling back to the default."""
    value = os.getenv(env_key)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        logger.warning(f'Invalid {env_key} value {value!r}, using default of {default}')
        return default
    if parsed <= 0:
        logger.warning(f'Invalid {env_key} value {value!r}, using default of {default}')
        return default
    return parsed


def get_transport_from_env() -> TRANSPORTS:
    """Get a transport value from an environment variable, with a default."""
    transport = os.getenv('MCP_TRANSPORT', 'stdio')
    if transport not in ['stdio', 'streamable-http']:
        raise ValueError(f'Invalid transport: {transport}')
    return cast(TRANSPORTS, transport)


def get_mcp_host() -> str:
    """Get the streamable-http bind host."""
    return os.getenv('MCP_HOST', DEFAULT_MCP_HOST)


def get_mcp_port() -> int:
    """Get the streamable-http bind port."""
    port = os.getenv('MCP_PORT', str(DEFAULT_MCP_PORT))
    try:
        return int(port)
    except ValueError as e:
        raise ValueError(f'Invalid MCP_PORT: {port}') from e


def load_config() -> TrinoConfig:
    """Build the Trino configuration from environment variables.

    Raises:
        ValueError: If a value is malformed (port, scheme or allowlist entries)
    """
    port = os.getenv('TRINO_PORT', str(DEFAULT_TRINO_PORT))
    try:
        trino_port = int(port)
    except ValueError as e:
        raise ValueError(f'Invalid TRINO_PORT: {port}') from e

    scheme = os.getenv('TRINO_SCHEME', DEFAULT_TRINO_SCHEME).lower()
    if scheme not in ('http', 'https'):
        raise ValueError(f'Invalid TRINO_SCHEME: {scheme}')

    allowed_catalogs = parse_allowlist(os.getenv(ALLOWED_CATALOGS_KEY))
    allowed_schemas = parse_allowlist(os.getenv(ALLOWED_SCHEMAS_KEY))
    allowed_tables = parse_allowlist(os.getenv(ALLOWED_TABLES_KEY))
    validate_allowlist(ALLOWED_CATALOGS_KEY, allowed_catalogs, 0)
    validate_allowlist(ALLOWED_SCHEMAS_KEY, allowed_schemas, 1)
    validate_allowlist(ALLOWED_TABLES_KEY, allowed_tables, 2)

    config = TrinoConfig(
        host=os.getenv('TRINO_HOST', DEFAULT_TRINO_HOST),
        port=trino_port,
        user=os.getenv('TRINO_USER', DEFAULT_TRINO_USER),
        password=os.getenv('TRINO_PASSWORD', ''),
        catalog=os.getenv('TRINO_CATALOG', DEFAULT_TRINO_CATALOG),
        schema_name=os.getenv('TRINO_SCHEMA', DEFAULT_TRINO_SCHEMA),
        scheme=scheme,
        ssl_insecure=get_env_bool('TRINO_SSL_INSECURE', False),
        allow_write_queries=get_env_bool('TRINO_ALLOW_WRITE_QUERIES', False),
        query_timeout=get_env_int('TRINO_QUERY_TIMEOUT', DEFAULT_QUERY_TIMEOUT),
        external_auth=get_env_bool('TRINO_EXTERNAL_AUTH', False),
        external_auth_timeout=get_env_int(
            'TRINO_EXTERNAL_AUTH_TIMEOUT', DEFAULT_EXTERNAL_AUTH_TIMEOUT
        ),
        allowed_catalogs=allowed_catalogs,
        allowed_schemas=allowed_schemas,
        allowed_tables=allowed_tables,
    )

    if config.allow_write_queries:
        logger.warning('Write queries are enabled (TRINO_ALLOW_WRITE_QUERIES=true)')
    if config.ssl_insecure and config.scheme == 'https':
        logger.warning('TLS certificate verification is disabled (TRINO_SSL_INSECURE=true)')
    if config.allowlist.is_configured:
        logger.info(
            f'Allowlists configured: catalogs={allowed_catalogs}, '
            f'schemas={allowed_schemas}, tables={allowed_tables}'
        )
    return config
