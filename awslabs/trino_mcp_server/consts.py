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

"""Constants for the Trino MCP Server."""

from typing import Literal


# Trino REST protocol
STATEMENT_PATH = '/v1/statement'
CHALLENGE_PROBE_SQL = 'SELECT 1'
TRINO_SOURCE = 'trino-mcp-server'
HEADER_TRINO_USER = 'X-Trino-User'
HEADER_TRINO_SOURCE = 'X-Trino-Source'
HEADER_TRINO_CATALOG = 'X-Trino-Catalog'
HEADER_TRINO_SCHEMA = 'X-Trino-Schema'
HEADER_WWW_AUTHENTICATE = 'WWW-Authenticate'
RETRYABLE_STATUS_CODES = frozenset([502, 503, 504])
BUSY_RETRY_INTERVAL = 0.5

# HTTP client settings
HTTP_CLIENT_TIMEOUT = 30.0

# External authentication
DEFAULT_EXTERNAL_AUTH_TIMEOUT = 300
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_TOKEN_TTL = 3600

# Query execution
DEFAULT_QUERY_TIMEOUT = 30

# Configuration defaults
DEFAULT_TRINO_HOST = 'localhost'
DEFAULT_TRINO_PORT = 8080
DEFAULT_TRINO_USER = 'trino'
DEFAULT_TRINO_CATALOG = 'memory'
DEFAULT_TRINO_SCHEMA = 'default'
DEFAULT_TRINO_SCHEME = 'https'
DEFAULT_MCP_HOST = '127.0.0.1'
DEFAULT_MCP_PORT = 8080

# Sanitizer placeholder for string literals
LITERAL_PLACEHOLDER = "'LITERAL'"

# Error messages
ERROR_WRITE_QUERY_PROHIBITED = (
    'Your MCP tool only allows readonly query. '
    'If you want to write, set TRINO_ALLOW_WRITE_QUERIES=true per README.md'
)
ERROR_EMPTY_QUERY = 'Query cannot be empty'
ERROR_EXECUTE_QUERY = 'Failed to execute query'
ERROR_LIST_CATALOGS = 'Failed to list catalogs'
ERROR_LIST_SCHEMAS = 'Failed to list schemas'
ERROR_LIST_TABLES = 'Failed to list tables'
ERROR_GET_TABLE_SCHEMA = 'Failed to get table schema'
ERROR_EXPLAIN_QUERY = 'Failed to explain query'
ERROR_NOT_CONFIGURED = 'Trino client is not configured. Start the server through main().'

TRANSPORTS = Literal['stdio', 'streamable-http']
EXPLAIN_FORMATS = Literal['TEXT', 'GRAPHVIZ', 'JSON']
