#!/usr/bin/env python3
"""
Client-side table checksums.

Rows are rendered to the same canonical text used by the server-side
CHECKSUM_AGG query (temporal values in style 121, NULL as 'NULL', columns
joined by '|'), hashed with SHA-256, and the 64-bit row digests are summed
modulo 2**64 so the aggregate does not depend on row order.
"""

import hashlib
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Sequence

from core.schema import ColumnDescriptor
from core.type_registry import TypeRegistry

NULL_TOKEN = "NULL"
SEPARATOR = "|"
_MODULUS = 2 ** 64

@dataclass
class ChecksumResult:
    checksum: Optional[int]
    row_count: int


def canonical_value(column: ColumnDescriptor, value: Any) -> str:
    if value is None:
        return NULL_TOKEN
    if TypeRegistry.is_datetime(column.type_name) and isinstance(value, datetime):
        # CONVERT(varchar(23), value, 121) -> yyyy-mm-dd hh:mi:ss.mmm
        return value.strftime('%Y-%m-%d %H:%M:%S.') + f"{value.microsecond // 1000:03d}"
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '0x' + bytes(value).hex().upper()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, 'f')
    return str(value)


def row_digest(columns: Sequence[ColumnDescriptor], row: Dict[str, Any]) -> int:
    text = SEPARATOR.join(canonical_value(c, row.get(c.name)) for c in columns)
    return int.from_bytes(hashlib.sha256(text.encode('utf-8')).digest()[:8], 'big')


class ChecksumAccumulator:
    """Order-independent running checksum over rows"""

    def __init__(self, columns: Sequence[ColumnDescriptor]):
        self.columns = [c for c in columns if TypeRegistry.is_checksummable(c.type_name)]
        self.total = 0
        self.row_count = 0

    def add(self, row: Dict[str, Any]):
        self.total = (self.total + row_digest(self.columns, row)) % _MODULUS
        self.row_count += 1

    def add_all(self, rows: Iterable[Dict[str, Any]]):
        for row in rows:
            self.add(row)

    def result(self) -> ChecksumResult:
        return ChecksumResult(checksum=self.total if self.row_count else None, row_count=self.row_count)
