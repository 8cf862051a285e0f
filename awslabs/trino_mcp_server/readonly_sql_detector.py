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

"""Read-only SQL detection for Trino queries.

Keyword matching runs on a sanitized copy of the query in which comments are removed
and string literal contents are replaced, so keywords hidden in either cannot change
the outcome.
"""

import re
from awslabs.trino_mcp_server.consts import LITERAL_PLACEHOLDER
from enum import Enum


READ_ONLY_STATEMENT_REGEXP = re.compile(r'^(SELECT|SHOW|DESCRIBE|EXPLAIN|WITH)\b', re.IGNORECASE)
EXPLAIN_ANALYZE_REGEXP = re.compile(
    r'^EXPLAIN\s+ANALYZE\b(?:\s+VERBOSE\b)?(?P<statement>.*)$', re.IGNORECASE | re.DOTALL
)


class ScanState(Enum):
    """Lexical state of the sanitizer."""

    NORMAL = 'normal'
    IN_LINE_COMMENT = 'in_line_comment'
    IN_BLOCK_COMMENT = 'in_block_comment'
    IN_STRING_LITERAL = 'in_string_literal'
    IN_QUOTED_IDENTIFIER = 'in_quoted_identifier'


def sanitize_query(query: str) -> str:
    """Strip comments and replace string literals with a placeholder.

    Line comments keep their terminating newline. Double-quoted identifiers are kept
    verbatim and nothing inside them opens a comment or literal. A block comment or
    string literal left open at the end of the input ends the scan; whatever was
    emitted before it is returned as is.

    Args:
        query: The SQL text

    Returns:
        The query with no comment text and no literal contents
    """
    result = []
    state = ScanState.NORMAL
    i = 0
    n = len(query)

    while i < n:
        ch = query[i]
        nxt = query[i + 1] if i + 1 < n else ''

        if state is ScanState.NORMAL:
            if ch == '-' and nxt == '-':
                state = ScanState.IN_LINE_COMMENT
                i += 2
                continue
            if ch == '/' and nxt == '*':
                state = ScanState.IN_BLOCK_COMMENT
                i += 2
                continue
            if ch == "'":
                state = ScanState.IN_STRING_LITERAL
                i += 1
                continue
            if ch == '"':
                state = ScanState.IN_QUOTED_IDENTIFIER
            result.append(ch)
            i += 1

        elif state is ScanState.IN_QUOTED_IDENTIFIER:
            # Identifiers are copied verbatim; "" is an escaped quote
            result.append(ch)
            if ch == '"':
                if nxt == '"':
                    result.append(nxt)
                    i += 2
                    continue
                state = ScanState.NORMAL
            i += 1

        elif state is ScanState.IN_LINE_COMMENT:
            if ch == '\n':
                result.append(ch)
                state = ScanState.NORMAL
            i += 1

        elif state is ScanState.IN_BLOCK_COMMENT:
            if ch == '*' and nxt == '/':
                state = ScanState.NORMAL
                i += 2
                continue
            i += 1

        else:
            if ch == "'":
                # '' inside a literal is an escaped quote
                if nxt == "'":
                    i += 2
                    continue
                result.append(LITERAL_PLACEHOLDER)
                state = ScanState.NORMAL
            i += 1

    return ''.join(result)


def _is_read_only_statement(statement: str) -> bool:
    statement = statement.strip()
    if not READ_ONLY_STATEMENT_REGEXP.match(statement):
        return False

    # EXPLAIN ANALYZE runs the statement it explains
    match = EXPLAIN_ANALYZE_REGEXP.match(statement)
    if match:
        inner = match.group('statement').strip()
        if not inner:
            return False
        return _is_read_only_statement(inner)

    return True


def is_read_only_query(query: str) -> bool:
    """Check whether a query is a single read-only statement.

    Read-only statements start with SELECT, SHOW, DESCRIBE, EXPLAIN or WITH once
    comments and literals are removed. Multiple statements are never read-only.

    Args:
        query: The SQL text

    Returns:
        True if the query is safe to run without write permission
    """
    sanitized = sanitize_query(query)
    statements = [s for s in sanitized.split(';') if s.strip()]
    if len(statements) != 1:
        return False
    return _is_read_only_statement(statements[0])
