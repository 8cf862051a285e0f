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

"""Data models for the Trino MCP Server."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class QueryResult(BaseModel):
    """Result of a Trino statement."""

    columns: List[str] = Field(default_factory=list, description='Column names in result order')
    rows: List[Dict[str, Any]] = Field(
        default_factory=list, description='Rows as column name to value mappings'
    )
    row_count: int = Field(0, description='Number of rows returned')
    query_id: Optional[str] = Field(None, description='Trino query identifier')
    execution_time_ms: int = Field(0, description='Wall clock execution time in milliseconds')


class TableColumn(BaseModel):
    """Column of a Trino table as reported by DESCRIBE."""

    name: str = Field(..., description='Column name')
    type: str = Field(..., description='Trino data type')
    extra: str = Field('', description='Extra column information')
    comment: str = Field('', description='Column comment')


class TableSchema(BaseModel):
    """Fully resolved table with its columns."""

    catalog: str = Field(..., description='Catalog name')
    schema_name: str = Field(..., description='Schema name')
    table: str = Field(..., description='Table name')
    columns: List[TableColumn] = Field(default_factory=list, description='Table columns')
