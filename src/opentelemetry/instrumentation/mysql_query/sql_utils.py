# Copyright The OpenTelemetry Authors
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

"""
Lexical helpers for SQL text: statement type extraction and literal
obfuscation. Both accept ``str`` or ``bytes`` and never raise on malformed
input.
"""

from __future__ import annotations

import logging
import re

_logger = logging.getLogger(__name__)

PLACEHOLDER = "?"

STATEMENT_TYPES = frozenset(
    (
        "select",
        "insert",
        "update",
        "delete",
        "replace",
        "explain",
        "begin",
        "commit",
        "rollback",
        "savepoint",
        "release",
        "set",
        "show",
        "create",
        "drop",
        "alter",
        "truncate",
        "call",
        "use",
        "with",
    )
)

DEFAULT_OBFUSCATION_LIMIT = 2000

_LEADING_COMMENT_RE = re.compile(r"^\s*/\*.*?\*/", re.DOTALL)

# Comments and quoted strings come first so that digits inside them are
# consumed by the longer match. Numbers that end an identifier (``t1``) or
# follow ``:`` (numeric paramstyle) are left alone. Backtick-quoted
# identifiers are matched so their contents are skipped, and kept as is.
_LITERALS_RE = re.compile(
    r"""
    (?P<identifier>`[^`]*`)
    | /\*.*?\*/
    | (?:\#|--)[^\r\n]*
    | '(?:[^'\\]|\\.|'')*'
    | "(?:[^"\\]|\\.|"")*"
    | \b0x[0-9a-f]+\b
    | \b0b[01]+\b
    | (?<![:\w.])-?\b(?:[0-9]+\.)?[0-9]+(?:e[+-]?[0-9]+)?\b
    | (?<![\w.])-?\.[0-9]+(?:e[+-]?[0-9]+)?\b
    """,
    re.VERBOSE | re.IGNORECASE | re.DOTALL,
)

_IDENTIFIERS_RE = re.compile(r"`[^`]*`")

# A quote left behind means a literal was never terminated.
_QUOTES_CLEANUP_RE = re.compile(r"'|\"")

_SURROGATES_RE = re.compile("[\ud800-\udfff]")

OBFUSCATION_LIMIT_EXCEEDED = "SQL not obfuscated, query exceeds {} characters"
OBFUSCATION_UNMATCHED_QUOTES = (
    "Failed to obfuscate SQL query - quote characters remained after "
    "obfuscation"
)
OBFUSCATION_FAILED = "OpenTelemetry error: failed to obfuscate sql"


def decode_statement(sql: str | bytes) -> str:
    """Returns ``sql`` as valid text, replacing undecodable bytes."""
    if isinstance(sql, (bytes, bytearray)):
        return bytes(sql).decode("utf-8", "replace")
    if not isinstance(sql, str):
        return str(sql)
    return _SURROGATES_RE.sub("\ufffd", sql)


def classify_statement(sql: str | bytes) -> str | None:
    """Extracts the statement type that begins a query.

    Returns the lower-cased leading verb when it is one of
    ``STATEMENT_TYPES`` and ``None`` for anything else, including empty or
    undecodable input.
    """
    if not sql:
        return None
    statement = _LEADING_COMMENT_RE.sub("", decode_statement(sql), count=1)
    tokens = statement.split(None, 1)
    if not tokens:
        return None
    verb = tokens[0].lower()
    if verb in STATEMENT_TYPES:
        return verb
    return None


def _replace_literal(match):
    if match.group("identifier") is not None:
        return match.group("identifier")
    return PLACEHOLDER


def _obfuscate(sql: str | bytes, obfuscation_limit: int) -> str:
    if isinstance(sql, (bytes, bytearray)):
        # Invalid bytes become lone surrogates and are excised together
        # with the literal that contains them.
        sql = bytes(sql).decode("utf-8", "surrogateescape")
    elif not isinstance(sql, str):
        sql = str(sql)

    if len(sql) > obfuscation_limit:
        return OBFUSCATION_LIMIT_EXCEEDED.format(obfuscation_limit)

    obfuscated = _LITERALS_RE.sub(_replace_literal, sql)
    if _QUOTES_CLEANUP_RE.search(_IDENTIFIERS_RE.sub("", obfuscated)):
        return OBFUSCATION_UNMATCHED_QUOTES
    return _SURROGATES_RE.sub("\ufffd", obfuscated)


def obfuscate_sql(
    sql: str | bytes, obfuscation_limit: int = DEFAULT_OBFUSCATION_LIMIT
) -> str:
    """Replaces every literal value in ``sql`` with ``?``.

    Quoted strings, numbers, hex and binary literals and comments collapse
    to one placeholder each. Keywords, identifiers (backtick-quoted ones
    included) and punctuation are kept.

    Args:
        sql: The query text. Bytes may contain invalid UTF-8 sequences.
        obfuscation_limit: Queries longer than this many characters are not
            scanned and a fixed message is returned instead.

    Returns:
        Valid text that is safe to attach as ``db.statement``.
    """
    try:
        return _obfuscate(sql, obfuscation_limit)
    except Exception as exc:  # pylint: disable=broad-except
        _logger.warning("Failed to obfuscate SQL query: %s", exc)
        return OBFUSCATION_FAILED
