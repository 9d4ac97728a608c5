#!/usr/bin/env python3
"""
Identifier validation for generated T-SQL.

Table and column names come from one server's catalog and are interpolated
into statements run against the other server, so every name passes an
allow-list check before it is bracket-quoted.
"""

import re

from core.errors import IdentifierError
from core.schema import TableIdentity

# Letters, digits, underscore plus the T-SQL regular identifier symbols
IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_$#@]*$')
MAX_IDENTIFIER_LENGTH = 128


def validate_identifier(identifier: str) -> bool:
    """Check an identifier against the allow-list"""
    if not identifier or len(identifier) > MAX_IDENTIFIER_LENGTH:
        return False
    return bool(IDENTIFIER_PATTERN.fullmatch(identifier))


def quote_identifier(identifier: str) -> str:
    """Validate and bracket-quote a single name"""
    if not validate_identifier(identifier):
        raise IdentifierError(f"Invalid identifier: {identifier!r}", {'identifier': identifier})
    return f"[{identifier}]"


def quote_table(table: TableIdentity) -> str:
    return f"{quote_identifier(table.schema)}.{quote_identifier(table.name)}"
