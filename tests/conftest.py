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

"""Shared fixtures for the Trino MCP Server tests."""

import pytest
from awslabs.trino_mcp_server.config import TrinoConfig
from unittest.mock import AsyncMock, MagicMock


ENV_KEYS = [
    'TRINO_HOST',
    'TRINO_PORT',
    'TRINO_USER',
    'TRINO_PASSWORD',
    'TRINO_CATALOG',
    'TRINO_SCHEMA',
    'TRINO_SCHEME',
    'TRINO_SSL_INSECURE',
    'TRINO_ALLOW_WRITE_QUERIES',
    'TRINO_QUERY_TIMEOUT',
    'TRINO_EXTERNAL_AUTH',
    'TRINO_EXTERNAL_AUTH_TIMEOUT',
    'TRINO_ALLOWED_CATALOGS',
    'TRINO_ALLOWED_SCHEMAS',
    'TRINO_ALLOWED_TABLES',
    'MCP_TRANSPORT',
    'MCP_HOST',
    'MCP_PORT',
]


def make_response(status_code=200, json_data=None, text='', headers=None):
    """Build a mock httpx response."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    response.json.return_value = json_data
    return response


@pytest.fixture
def response_factory():
    """Factory for mock httpx responses."""
    return make_response


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the server reads from the environment."""
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def trino_config():
    """Configuration for a local plain HTTP Trino."""
    return TrinoConfig(
        host='localhost',
        port=8080,
        user='tester',
        catalog='hive',
        schema_name='default',
        scheme='http',
        query_timeout=30,
    )


@pytest.fixture
def mock_ctx():
    """MCP context with an awaitable error reporter."""
    ctx = MagicMock()
    ctx.error = AsyncMock()
    return ctx
