#!/usr/bin/env python3
"""
Row-by-row insertion for windows the bulk path rejected.

Each row goes through its own parameterized INSERT with its own error
handling, so one bad value costs one row instead of the whole window.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.ddl import literal_insert_sql
from core.errors import is_fatal
from core.schema import ColumnDescriptor, TableIdentity
from core.type_registry import TypeRegistry

logger = logging.getLogger(__name__)

DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOGGED_FAILURES = 5

@dataclass
class RowFailure:
    index: int  # position inside the window
    error: str

@dataclass
class FallbackResult:
    attempted: int = 0
    succeeded: int = 0
    failures: List[RowFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


def _parse_datetime(text: str) -> Optional[datetime]:
    candidate = text.strip()
    if candidate.endswith('Z'):
        candidate = candidate[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def format_datetime(value: Any) -> Optional[str]:
    """'YYYY-MM-DD HH:MM:SS', or None when the value is not a usable date"""
    if isinstance(value, str):
        value = _parse_datetime(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime(DATETIME_FORMAT)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).strftime(DATETIME_FORMAT)
    return None


def coerce_parameter(column: Optional[ColumnDescriptor], value: Any) -> Any:
    """Value ready for the parameter binder"""
    if value is None:
        return None
    if column is not None and TypeRegistry.is_datetime(column.type_name):
        return format_datetime(value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def render_literal(column: Optional[ColumnDescriptor], value: Any) -> str:
    """T-SQL literal for statements written out without parameter binding"""
    if value is None:
        return 'NULL'
    if column is not None and TypeRegistry.is_datetime(column.type_name):
        formatted = format_datetime(value)
        return f"'{formatted}'" if formatted is not None else 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (bytes, bytearray, memoryview)):
        return '0x' + bytes(value).hex().upper()
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (datetime, date)):
        return f"'{value.isoformat()}'"
    text = str(value).replace("'", "''")
    return f"N'{text}'"


class RejectedRowsFile:
    """Appends rows that could not be inserted as replayable INSERT statements"""

    def __init__(self, path: str):
        self.path = Path(path)
        self.rows_written = 0

    def write(self, table: TableIdentity, columns: Sequence[ColumnDescriptor],
              row: Dict[str, Any], error: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        literals = [render_literal(c, row.get(c.name)) for c in columns]
        statement = literal_insert_sql(table, [c.name for c in columns], literals)
        first_line = error.splitlines()[0] if error else ''
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(f"-- {table}: {first_line}\n{statement}\n")
        self.rows_written += 1


class RowLevelFallback:
    """Inserts a rejected window one row at a time"""

    def __init__(self, target, rejects: Optional[RejectedRowsFile] = None):
        self.target = target
        self.rejects = rejects

    def insert_rows(self, table: TableIdentity, columns: Sequence[ColumnDescriptor],
                    rows: Sequence[Dict[str, Any]]) -> FallbackResult:
        result = FallbackResult(attempted=len(rows))
        for index, row in enumerate(rows):
            values = [coerce_parameter(c, row.get(c.name)) for c in columns]
            try:
                self.target.insert_row(table, columns, values)
                result.succeeded += 1
            except Exception as e:
                if is_fatal(e):
                    raise
                message = str(e)
                result.failures.append(RowFailure(index=index, error=message))
                if result.failed <= MAX_LOGGED_FAILURES:
                    logger.warning(f"Row {index} of {table} rejected: {message[:100]}")
                if self.rejects is not None:
                    self._write_reject(table, columns, row, message)

        if result.failed:
            logger.warning(f"{table}: individual insert kept {result.succeeded}/{result.attempted} rows, "
                           f"{result.failed} failed")
        else:
            logger.info(f"{table}: individual insert kept all {result.succeeded} rows")
        return result

    def _write_reject(self, table, columns, row, message):
        try:
            self.rejects.write(table, columns, row, message)
        except OSError as e:
            logger.error(f"Could not record rejected row for {table} in {self.rejects.path}: {e}")
