"""
In-memory MirrorDatabase used by the unit tests.

Tables hold their schema and a list of row dicts. Failure hooks let a test
reject bulk loads or single rows, and every mutating call is recorded in
``calls`` so tests can assert on ordering.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence

from core.checksum import ChecksumAccumulator, ChecksumResult
from core.database import MirrorDatabase
from core.ddl import backup_table_name
from core.errors import StatementError
from core.schema import ColumnDescriptor, ForeignKeyRef, RoutineDefinition, TableIdentity, TableSchema


def column(name, data_type='int', length=None, nullable=True, precision=None, scale=None, ordinal=0):
    return ColumnDescriptor(name=name, data_type=data_type, char_length=length, nullable=nullable,
                            numeric_precision=precision, numeric_scale=scale, ordinal=ordinal)


class InMemoryDatabase(MirrorDatabase):

    def __init__(self, label='fake'):
        super().__init__(label)
        self.schemas: Dict[TableIdentity, TableSchema] = {}
        self.rows: Dict[TableIdentity, List[Dict[str, Any]]] = {}
        self.functions: List[RoutineDefinition] = []
        self.views: List[RoutineDefinition] = []
        self.routines: Dict[str, RoutineDefinition] = {}
        self.calls: List[tuple] = []
        self.bulk_calls = 0
        self.row_calls = 0
        self.fail_bulk: Optional[Callable[[TableIdentity, Sequence[Dict[str, Any]]], bool]] = None
        self.reject_row: Optional[Callable[[Sequence[Any]], bool]] = None
        self.fail_routine: Optional[Callable[[RoutineDefinition], bool]] = None
        self.closed = False

    # ----- setup helpers -----

    def add_table(self, table: TableIdentity, columns: List[ColumnDescriptor],
                  rows: Optional[List[Dict[str, Any]]] = None, primary_key=None, foreign_keys=None):
        for index, c in enumerate(columns, 1):
            c.ordinal = c.ordinal or index
        self.schemas[table] = TableSchema(table, list(columns), list(primary_key or []), list(foreign_keys or []))
        self.rows[table] = list(rows or [])
        return table

    # ----- catalog -----

    def list_tables(self) -> List[TableIdentity]:
        return sorted(self.schemas)

    def get_columns(self, table):
        return [ColumnDescriptor(**c.to_dict()) for c in self.schemas[table].columns]

    def get_primary_keys(self, table):
        return list(self.schemas[table].primary_key)

    def get_foreign_keys(self, table):
        return list(self.schemas[table].foreign_keys)

    def list_functions(self):
        return list(self.functions)

    def list_views(self):
        return list(self.views)

    def table_exists(self, table):
        return table in self.schemas

    # ----- rows -----

    def count_rows(self, table):
        return len(self.rows[table])

    def fetch_window(self, table, columns, offset, size):
        return [{c: row.get(c) for c in columns} for row in self.rows[table][offset:offset + size]]

    def bulk_insert(self, table, columns, rows):
        self.bulk_calls += 1
        self.calls.append(('bulk_insert', table, len(rows)))
        if self.fail_bulk is not None and self.fail_bulk(table, rows):
            raise StatementError("Conversion failed in bulk load", transient=False, number=245)
        names = [c.name for c in columns]
        self.rows[table].extend({n: row.get(n) for n in names} for row in rows)
        return len(rows)

    def insert_row(self, table, columns, values):
        self.row_calls += 1
        if self.reject_row is not None and self.reject_row(values):
            raise StatementError("Conversion failed for row", transient=False, number=245)
        self.rows[table].append(dict(zip([c.name for c in columns], values)))

    def clear_table(self, table):
        self.calls.append(('clear_table', table))
        deleted = len(self.rows[table])
        self.rows[table] = []
        return deleted

    def table_checksum(self, table, columns):
        accumulator = ChecksumAccumulator(columns)
        accumulator.add_all(self.rows[table])
        return accumulator.result()

    # ----- schema changes -----

    def create_table(self, schema):
        self.calls.append(('create_table', schema.table))
        columns = [ColumnDescriptor(**c.to_dict()) for c in schema.columns]
        self.schemas[schema.table] = TableSchema(schema.table, columns, list(schema.primary_key), [])
        self.rows[schema.table] = []

    def drop_table(self, table):
        self.calls.append(('drop_table', table))
        self.schemas.pop(table, None)
        self.rows.pop(table, None)

    def backup_table(self, table):
        self.calls.append(('backup_table', table))
        backup = backup_table_name(table)
        source = self.schemas[table]
        self.schemas[backup] = TableSchema(backup, list(source.columns))
        self.rows[backup] = [dict(r) for r in self.rows[table]]
        return backup

    def add_foreign_keys(self, table, foreign_keys: Sequence[ForeignKeyRef]):
        self.calls.append(('add_foreign_keys', table))
        self.schemas[table].foreign_keys.extend(foreign_keys)

    def apply_routine(self, routine):
        self.calls.append(('apply_routine', routine.qualified_name))
        if self.fail_routine is not None and self.fail_routine(routine):
            raise StatementError(f"Invalid object name in {routine.name}", transient=False, number=208)
        self.routines[routine.qualified_name] = routine

    def server_version(self):
        return "In-memory test server"

    def close(self):
        self.closed = True
