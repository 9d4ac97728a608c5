#!/usr/bin/env python3
"""
JSON export and import of a database.

Directory layout written by ArchiveExporter:

    schema.json                          tables, columns, primary/foreign keys
    <schema>_<table>_data.json           rows of a small table
    <schema>_<table>_data_<n>.json       row chunks of a large table
    <schema>_<table>_data_summary.json   chunk manifest of a large table
    data_export_summary.json             row counts per table

ArchiveSource reads such a directory back as a MirrorDatabase, so an import
is an ordinary BatchTransferEngine run with the archive as its source.
"""

import json
import logging
import threading
import time
import uuid
from datetime import date, datetime, time as dt_time, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.database import MirrorDatabase
from core.errors import ArchiveError, OperationCancelled, is_fatal
from core.retry import RetryPolicy, execute_with_retry, is_transient
from core.schema import ColumnDescriptor, ForeignKeyRef, RoutineDefinition, TableIdentity, TableSchema
from core.type_registry import TypeFamily, TypeRegistry

logger = logging.getLogger(__name__)

SCHEMA_FILE = 'schema.json'
EXPORT_SUMMARY_FILE = 'data_export_summary.json'


def data_file_name(table: TableIdentity, chunk: Optional[int] = None) -> str:
    if chunk is None:
        return f"{table.schema}_{table.name}_data.json"
    return f"{table.schema}_{table.name}_data_{chunk}.json"


def chunk_summary_file_name(table: TableIdentity) -> str:
    return f"{table.schema}_{table.name}_data_summary.json"


class ArchiveEncoder(json.JSONEncoder):
    """JSON encoder for the value types pymssql returns"""

    def default(self, o):
        if isinstance(o, (datetime, date, dt_time)):
            return o.isoformat()
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, uuid.UUID):
            return str(o)
        if isinstance(o, (bytes, bytearray, memoryview)):
            return '0x' + bytes(o).hex().upper()
        return super().default(o)


def decode_value(column: ColumnDescriptor, value: Any) -> Any:
    """Turn a JSON value back into something the driver binds to the column type"""
    if value is None or not isinstance(value, str):
        return value
    family = TypeRegistry.family(column.type_name)
    try:
        if family in (TypeFamily.DATETIME, TypeFamily.DATETIME_TZ):
            return datetime.fromisoformat(value)
        if family == TypeFamily.DATE:
            return date.fromisoformat(value)
        if family == TypeFamily.TIME:
            return dt_time.fromisoformat(value)
        if TypeRegistry.is_binary(column.type_name) and value.lower().startswith('0x'):
            return bytes.fromhex(value[2:])
    except ValueError:
        logger.warning(f"Could not decode {value!r} for column {column.name} ({column.data_type}); keeping text")
    return value


def _write_json(path: Path, payload: Any):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, cls=ArchiveEncoder)


def _read_json(path: Path) -> Any:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        raise ArchiveError(f"Archive file not found: {path}")
    except json.JSONDecodeError as e:
        raise ArchiveError(f"Archive file {path} is not valid JSON: {e}")


class ArchiveExporter:
    """Writes schema and data of a MirrorDatabase to a directory"""

    def __init__(self, source: MirrorDatabase, path: str, batch_size: int = 10000,
                 max_rows_per_file: int = 50000, include_schema: bool = True, include_data: bool = True,
                 retry_policy: Optional[RetryPolicy] = None,
                 stop_event: Optional[threading.Event] = None, database: Optional[str] = None):
        self.source = source
        self.database = database
        self.path = Path(path)
        self.batch_size = batch_size
        self.max_rows_per_file = max_rows_per_file
        self.include_schema = include_schema
        self.include_data = include_data
        self.retry_policy = retry_policy or RetryPolicy(retryable=is_transient)
        self.stop_event = stop_event

    def _retry(self, operation, description: str):
        return execute_with_retry(operation, self.retry_policy, description=description)

    def _check_stop(self):
        if self.stop_event is not None and self.stop_event.is_set():
            raise OperationCancelled()

    def export_schema(self, schemas: Sequence[TableSchema], database: Optional[str] = None) -> Path:
        payload = {
            'database': database,
            'exported_at': datetime.now(timezone.utc).isoformat(),
            'tables': [s.to_dict() for s in schemas],
        }
        schema_path = self.path / SCHEMA_FILE
        _write_json(schema_path, payload)
        logger.info(f"Schema of {len(schemas)} tables exported to {schema_path}")
        return schema_path

    def export_table_data(self, schema: TableSchema) -> Dict[str, Any]:
        """Write one table's rows, chunked when over max_rows_per_file"""
        table = schema.table
        names = schema.column_names
        total = self._retry(lambda: self.source.count_rows(table), f"Count rows of {table}")
        logger.info(f"Table {table} has {total} rows")

        chunked = total > self.max_rows_per_file
        files: List[Dict[str, Any]] = []
        buffer: List[Dict[str, Any]] = []
        exported = 0
        offset = 0

        def flush():
            chunk = len(files) + 1
            file_name = data_file_name(table, chunk if chunked else None)
            payload = {'table': table.qualified_name, 'row_count': len(buffer), 'data': buffer}
            if chunked:
                payload['chunk'] = chunk
            _write_json(self.path / file_name, payload)
            files.append({'chunk': chunk, 'file': file_name, 'row_count': len(buffer)})

        while offset < total:
            self._check_stop()
            window_offset = offset
            rows = self._retry(lambda: self.source.fetch_window(table, names, window_offset, self.batch_size),
                               f"Fetch rows of {table}")
            if not rows:
                break
            for row in rows:
                buffer.append(row)
                if chunked and len(buffer) >= self.max_rows_per_file:
                    flush()
                    buffer = []
            exported += len(rows)
            offset += self.batch_size
            logger.info(f"Exported {exported} of {total} rows from {table}")

        if buffer or not files:
            flush()

        if chunked:
            _write_json(self.path / chunk_summary_file_name(table), {
                'table': table.qualified_name,
                'total_rows': exported,
                'total_chunks': len(files),
                'files': files,
            })
        return {'table': table.qualified_name, 'row_count': exported, 'files': [f['file'] for f in files]}

    def run(self, tables: Optional[Sequence[TableIdentity]] = None) -> Dict[str, Any]:
        started = time.time()
        self.path.mkdir(parents=True, exist_ok=True)
        if tables is None:
            tables = self._retry(self.source.list_tables, "List tables")
        logger.info(f"Exporting {len(tables)} tables to {self.path}")

        schemas = []
        for table in tables:
            self._check_stop()
            schemas.append(self._retry(lambda: self.source.read_table_schema(table), f"Read schema of {table}"))

        result = {'path': str(self.path), 'files': [], 'tables': [], 'errors': {}}
        if self.include_schema:
            self.export_schema(schemas, self.database)
            result['files'].append(SCHEMA_FILE)

        if self.include_data:
            for schema in schemas:
                self._check_stop()
                try:
                    entry = self.export_table_data(schema)
                except ArchiveError:
                    raise
                except Exception as e:
                    if is_fatal(e):
                        raise
                    logger.error(f"Error exporting data of {schema.table}: {e}")
                    result['errors'][schema.table.qualified_name] = str(e)
                    continue
                result['tables'].append(entry)
                result['files'].extend(entry['files'])

            _write_json(self.path / EXPORT_SUMMARY_FILE, {
                'exported_at': datetime.now(timezone.utc).isoformat(),
                'tables': [{'table': t['table'], 'row_count': t['row_count']} for t in result['tables']],
                'total_rows': sum(t['row_count'] for t in result['tables']),
            })
            result['files'].append(EXPORT_SUMMARY_FILE)

        result['elapsed_seconds'] = round(time.time() - started, 3)
        logger.info(f"Export finished in {result['elapsed_seconds']}s: {len(result['tables'])} tables, "
                    f"{len(result['errors'])} errors")
        return result


class ArchiveSource(MirrorDatabase):
    """Read-only MirrorDatabase over an export directory"""

    def __init__(self, path: str, label: str = "archive"):
        super().__init__(label)
        self.path = Path(path)
        document = _read_json(self.path / SCHEMA_FILE)
        self.database = document.get('database')
        self.schemas: Dict[TableIdentity, TableSchema] = {}
        for entry in document.get('tables', []):
            schema = TableSchema.from_dict(entry)
            self.schemas[schema.table] = schema
        self._loaded_table: Optional[TableIdentity] = None
        self._loaded_rows: List[Dict[str, Any]] = []

    def _schema(self, table: TableIdentity) -> TableSchema:
        try:
            return self.schemas[table]
        except KeyError:
            raise ArchiveError(f"Table {table} is not in {self.path / SCHEMA_FILE}")

    def list_tables(self) -> List[TableIdentity]:
        return list(self.schemas)

    def get_columns(self, table: TableIdentity) -> List[ColumnDescriptor]:
        return list(self._schema(table).columns)

    def get_primary_keys(self, table: TableIdentity) -> List[str]:
        return list(self._schema(table).primary_key)

    def get_foreign_keys(self, table: TableIdentity) -> List[ForeignKeyRef]:
        return list(self._schema(table).foreign_keys)

    def list_functions(self) -> List[RoutineDefinition]:
        return []

    def list_views(self) -> List[RoutineDefinition]:
        return []

    def table_exists(self, table: TableIdentity) -> bool:
        return table in self.schemas

    def _data_files(self, table: TableIdentity) -> List[Path]:
        summary_path = self.path / chunk_summary_file_name(table)
        if summary_path.exists():
            summary = _read_json(summary_path)
            logger.info(f"Loading {summary.get('total_chunks')} chunks for table {table}")
            files = []
            for info in sorted(summary.get('files', []), key=lambda f: f['chunk']):
                chunk_path = self.path / info['file']
                if not chunk_path.exists():
                    logger.warning(f"Chunk file not found: {chunk_path}")
                    continue
                files.append(chunk_path)
            return files
        single = self.path / data_file_name(table)
        return [single] if single.exists() else []

    def _rows(self, table: TableIdentity) -> List[Dict[str, Any]]:
        """Rows of one table, decoded; only the most recent table is kept in memory"""
        if self._loaded_table != table:
            columns = {c.name: c for c in self._schema(table).columns}
            rows = []
            for data_path in self._data_files(table):
                for row in _read_json(data_path).get('data', []):
                    rows.append({k: decode_value(columns[k], v) if k in columns else v for k, v in row.items()})
            if not rows:
                logger.info(f"No data file for table {table}")
            self._loaded_table = table
            self._loaded_rows = rows
        return self._loaded_rows

    def count_rows(self, table: TableIdentity) -> int:
        return len(self._rows(table))

    def fetch_window(self, table: TableIdentity, columns: Sequence[str],
                     offset: int, size: int) -> List[Dict[str, Any]]:
        window = self._rows(table)[offset:offset + size]
        return [{c: row.get(c) for c in columns} for row in window]
