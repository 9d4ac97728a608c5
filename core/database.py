#!/usr/bin/env python3
"""
Database interface consumed by the transfer, verify and repair engine.

The engine never builds SQL itself. It talks to a MirrorDatabase, which
the SQL Server plugin implements with the builders from core.ddl and the
catalog queries from core.catalog. Tests use an in-memory implementation.
"""

from typing import Any, Dict, List, Optional, Sequence

from core.checksum import ChecksumResult
from core.schema import ColumnDescriptor, ForeignKeyRef, RoutineDefinition, TableIdentity, TableSchema


class MirrorDatabase:
    """Base class for one side (source or target) of a copy"""

    def __init__(self, label: str = "database"):
        self.label = label

    # ----- Catalog -----

    def list_tables(self) -> List[TableIdentity]:
        raise NotImplementedError("Subclasses must implement list_tables")

    def get_columns(self, table: TableIdentity) -> List[ColumnDescriptor]:
        raise NotImplementedError("Subclasses must implement get_columns")

    def get_primary_keys(self, table: TableIdentity) -> List[str]:
        raise NotImplementedError("Subclasses must implement get_primary_keys")

    def get_foreign_keys(self, table: TableIdentity) -> List[ForeignKeyRef]:
        raise NotImplementedError("Subclasses must implement get_foreign_keys")

    def list_functions(self) -> List[RoutineDefinition]:
        raise NotImplementedError("Subclasses must implement list_functions")

    def list_views(self) -> List[RoutineDefinition]:
        raise NotImplementedError("Subclasses must implement list_views")

    def table_exists(self, table: TableIdentity) -> bool:
        return table in self.list_tables()

    def read_table_schema(self, table: TableIdentity) -> TableSchema:
        """Fresh schema snapshot; never cached because the target changes mid-run"""
        return TableSchema(
            table=table,
            columns=self.get_columns(table),
            primary_key=self.get_primary_keys(table),
            foreign_keys=self.get_foreign_keys(table),
        )

    # ----- Rows -----

    def count_rows(self, table: TableIdentity) -> int:
        raise NotImplementedError("Subclasses must implement count_rows")

    def fetch_window(self, table: TableIdentity, columns: Sequence[str],
                     offset: int, size: int) -> List[Dict[str, Any]]:
        raise NotImplementedError("Subclasses must implement fetch_window")

    def bulk_insert(self, table: TableIdentity, columns: Sequence[ColumnDescriptor],
                    rows: Sequence[Dict[str, Any]]) -> int:
        """Load every row in one transaction; raises if any row is rejected"""
        raise NotImplementedError("Subclasses must implement bulk_insert")

    def insert_row(self, table: TableIdentity, columns: Sequence[ColumnDescriptor],
                   values: Sequence[Any]):
        raise NotImplementedError("Subclasses must implement insert_row")

    def clear_table(self, table: TableIdentity) -> int:
        raise NotImplementedError("Subclasses must implement clear_table")

    def table_checksum(self, table: TableIdentity, columns: Sequence[ColumnDescriptor]) -> ChecksumResult:
        raise NotImplementedError("Subclasses must implement table_checksum")

    # ----- Schema changes -----

    def create_table(self, schema: TableSchema):
        raise NotImplementedError("Subclasses must implement create_table")

    def drop_table(self, table: TableIdentity):
        raise NotImplementedError("Subclasses must implement drop_table")

    def backup_table(self, table: TableIdentity) -> TableIdentity:
        """Copy current rows to a side table and return its identity"""
        raise NotImplementedError("Subclasses must implement backup_table")

    def add_foreign_keys(self, table: TableIdentity, foreign_keys: Sequence[ForeignKeyRef]):
        raise NotImplementedError("Subclasses must implement add_foreign_keys")

    def apply_routine(self, routine: RoutineDefinition):
        """Drop any routine of the same name and run the definition verbatim"""
        raise NotImplementedError("Subclasses must implement apply_routine")

    # ----- Lifecycle -----

    def server_version(self) -> Optional[str]:
        return None

    def close(self):
        """Close connections - to be implemented by subclasses"""
        pass

    def get_statistics(self) -> Dict[str, Any]:
        return {}
