"""Read-only validation for ad-hoc SQL.

``validate_read_only_sql`` runs before anything reaches the store.  The
caller is responsible for the statement length and parameter count bounds.
"""

from __future__ import annotations

import re

from src.oura.errors import NotReadOnly
from src.oura.repository import CREDENTIAL_TABLES

_READ_ONLY_START = re.compile(r"^(select|with)\b", re.IGNORECASE)

_DISALLOWED_KEYWORDS = re.compile(
    r"\b("
    # mutation
    r"insert|update|delete|merge|upsert|replace|truncate|copy|"
    # schema
    r"drop|alter|create|rename|grant|revoke|reindex|cluster|"
    # pragma / maintenance / session
    r"pragma|vacuum|analyze|attach|detach|set|reset|load|listen|notify|call|do|"
    # transaction control
    r"begin|commit|rollback|savepoint|release|start|abort|lock|"
    # row locking
    r"for\s+share"
    r")\b",
    re.IGNORECASE,
)

# Server functions that reach outside the queried tables or run SQL assembled
# from strings the keyword checks never see.
_DISALLOWED_FUNCTIONS = re.compile(
    r"\b("
    r"(?:query|table|cursor|schema|database)_to_xml\w*|"
    r"dblink\w*|pg_read_\w+|pg_ls_\w+|pg_stat_file|lo_\w+|"
    r"set_config|current_setting|pg_sleep\w*"
    r")\b",
    re.IGNORECASE,
)

# U&"..." identifiers and U&'...' literals spell names the table check cannot read.
_UNICODE_ESCAPE = re.compile(r"\bu&[\x27\"]", re.IGNORECASE)

_CREDENTIAL_TABLES = re.compile(
    r"\b(" + "|".join(re.escape(t) for t in CREDENTIAL_TABLES) + r")\b", re.IGNORECASE
)


def strip_leading_comments(sql: str) -> str:
    """Drop leading ``-- line`` and ``/* block */`` comments.

    An unterminated leading comment leaves nothing behind.
    """
    text = sql
    while True:
        text = text.lstrip()
        if text.startswith("--"):
            newline = text.find("\n")
            if newline == -1:
                return ""
            text = text[newline + 1:]
        elif text.startswith("/*"):
            close = text.find("*/")
            if close == -1:
                return ""
            text = text[close + 2:]
        else:
            return text


def validate_read_only_sql(sql: str) -> str:
    """Validate ``sql`` as a single read-only statement.

    Returns:
        The normalized statement (leading comments stripped, whitespace collapsed).

    Raises:
        NotReadOnly: With the reason the statement was rejected.
    """
    normalized = " ".join(strip_leading_comments(sql or "").split())
    if not normalized:
        raise NotReadOnly("empty statement")
    if not _READ_ONLY_START.match(normalized):
        raise NotReadOnly("statement must start with SELECT or WITH")
    if ";" in normalized:
        raise NotReadOnly("multiple statements are not allowed")
    if _UNICODE_ESCAPE.search(normalized):
        raise NotReadOnly("unicode-escaped identifiers are not allowed")
    if _CREDENTIAL_TABLES.search(normalized):
        raise NotReadOnly("credential tables are not queryable")
    function = _DISALLOWED_FUNCTIONS.search(normalized)
    if function:
        raise NotReadOnly(f"disallowed function {function.group(1).lower()!r}")
    keyword = _DISALLOWED_KEYWORDS.search(normalized)
    if keyword:
        raise NotReadOnly(f"disallowed keyword {keyword.group(1).upper()!r}")
    return normalized
