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

"""Catalog, schema and table allowlists for the Trino MCP Server.

Entries are plain dotted names (``catalog``, ``catalog.schema``,
``catalog.schema.table``) compared case-insensitively. A level without an allowlist
allows everything.
"""

from typing import Iterable, List, Optional, Tuple


class AllowlistError(Exception):
    """Raised when a catalog, schema or table is outside the configured allowlists."""


def parse_allowlist(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma separated allowlist, trimming entries and dropping empty ones.

    Returns:
        The entries, or None when the value holds no entries
    """
    if not value:
        return None
    entries = [entry.strip() for entry in value.split(',')]
    entries = [entry for entry in entries if entry]
    return entries or None


def validate_allowlist(name: str, entries: Optional[List[str]], expected_dots: int) -> None:
    """Check that every entry has the number of dots its level requires.

    Raises:
        ValueError: On the first malformed entry
    """
    for entry in entries or []:
        dots = entry.count('.')
        if dots != expected_dots:
            raise ValueError(
                f"invalid format in {name}: '{entry}' (expected {expected_dots} dots, found {dots})"
            )


def resolve_table_name(
    catalog: str,
    schema: str,
    table: str,
    default_catalog: str,
    default_schema: str,
) -> Tuple[str, str, str]:
    """Resolve a possibly qualified table name to (catalog, schema, table).

    ``c.s.t`` overrides both catalog and schema. ``s.t`` overrides the schema and takes
    the default catalog when none is given. A bare name takes the defaults for whatever
    was not given.
    """
    parts = table.split('.')
    if len(parts) == 3:
        catalog, schema, table = parts
    elif len(parts) == 2:
        schema, table = parts
        if not catalog:
            catalog = default_catalog
    else:
        if not catalog:
            catalog = default_catalog
        if not schema:
            schema = default_schema
    return catalog, schema, table


def _normalize(entries: Optional[Iterable[str]]) -> Optional[frozenset]:
    if not entries:
        return None
    return frozenset(entry.lower() for entry in entries)


class Allowlist:
    """Case-insensitive allowlists for catalogs, schemas and tables."""

    def __init__(
        self,
        catalogs: Optional[List[str]] = None,
        schemas: Optional[List[str]] = None,
        tables: Optional[List[str]] = None,
    ):
        """Initialize the allowlists. None or an empty list allows every name."""
        self._catalogs = _normalize(catalogs)
        self._schemas = _normalize(schemas)
        self._tables = _normalize(tables)

    @property
    def is_configured(self) -> bool:
        """Return True when at least one level has an allowlist."""
        return any(
            entries is not None for entries in (self._catalogs, self._schemas, self._tables)
        )

    def is_catalog_allowed(self, catalog: str) -> bool:
        """Check a catalog name."""
        if self._catalogs is None:
            return True
        if not catalog:
            return False
        return catalog.lower() in self._catalogs

    def is_schema_allowed(self, catalog: str, schema: str) -> bool:
        """Check a schema, given as its catalog and schema names."""
        if self._schemas is None:
            return True
        if not catalog or not schema:
            return False
        return f'{catalog}.{schema}'.lower() in self._schemas

    def is_table_allowed(self, catalog: str, schema: str, table: str) -> bool:
        """Check a fully resolved table."""
        if self._tables is None:
            return True
        if not catalog or not schema or not table:
            return False
        return f'{catalog}.{schema}.{table}'.lower() in self._tables

    def filter_catalogs(self, catalogs: List[str]) -> List[str]:
        """Keep the allowed catalogs, preserving order."""
        return [catalog for catalog in catalogs if self.is_catalog_allowed(catalog)]

    def filter_schemas(self, schemas: List[str], catalog: str) -> List[str]:
        """Keep the allowed schemas of a catalog."""
        return [schema for schema in schemas if self.is_schema_allowed(catalog, schema)]

    def filter_tables(self, tables: List[str], catalog: str, schema: str) -> List[str]:
        """Keep the allowed tables of a schema."""
        return [table for table in tables if self.is_table_allowed(catalog, schema, table)]
