#!/usr/bin/env python3
"""
SQL Server catalog queries and row parsers.

Queries use INFORMATION_SCHEMA views where they are complete, and the sys
catalog for foreign keys and for routine bodies (INFORMATION_SCHEMA.ROUTINES
truncates ROUTINE_DEFINITION at 4000 characters).
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.schema import ColumnDescriptor, ForeignKeyRef, RoutineDefinition, TableIdentity, TableSchema

TABLES_QUERY = """
    SELECT TABLE_SCHEMA, TABLE_NAME
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_TYPE = 'BASE TABLE'
    ORDER BY TABLE_SCHEMA, TABLE_NAME
"""

COLUMNS_QUERY = """
    SELECT
        COLUMN_NAME,
        DATA_TYPE,
        CHARACTER_MAXIMUM_LENGTH,
        NUMERIC_PRECISION,
        NUMERIC_SCALE,
        IS_NULLABLE,
        COLUMN_DEFAULT,
        ORDINAL_POSITION,
        COLUMNPROPERTY(OBJECT_ID(QUOTENAME(TABLE_SCHEMA) + '.' + QUOTENAME(TABLE_NAME)),
                       COLUMN_NAME, 'IsIdentity') AS IS_IDENTITY
    FROM INFORMATION_SCHEMA.COLUMNS
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
    ORDER BY ORDINAL_POSITION
"""

PRIMARY_KEY_QUERY = """
    SELECT kcu.COLUMN_NAME
    FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
    JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE kcu
        ON tc.CONSTRAINT_NAME = kcu.CONSTRAINT_NAME
        AND tc.TABLE_SCHEMA = kcu.TABLE_SCHEMA
        AND tc.TABLE_NAME = kcu.TABLE_NAME
    WHERE tc.TABLE_SCHEMA = %s AND tc.TABLE_NAME = %s
        AND tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
    ORDER BY kcu.ORDINAL_POSITION
"""

FOREIGN_KEY_QUERY = """
    SELECT
        fk.name AS constraint_name,
        cp.name AS column_name,
        rs.name AS referenced_schema,
        rt.name AS referenced_table,
        cr.name AS referenced_column
    FROM sys.foreign_keys fk
    JOIN sys.foreign_key_columns fkc ON fk.object_id = fkc.constraint_object_id
    JOIN sys.tables tp ON fkc.parent_object_id = tp.object_id
    JOIN sys.schemas ps ON tp.schema_id = ps.schema_id
    JOIN sys.columns cp ON fkc.parent_object_id = cp.object_id AND fkc.parent_column_id = cp.column_id
    JOIN sys.tables rt ON fkc.referenced_object_id = rt.object_id
    JOIN sys.schemas rs ON rt.schema_id = rs.schema_id
    JOIN sys.columns cr ON fkc.referenced_object_id = cr.object_id AND fkc.referenced_column_id = cr.column_id
    WHERE ps.name = %s AND tp.name = %s
    ORDER BY fk.name, fkc.constraint_column_id
"""

ROUTINES_QUERY = """
    SELECT s.name AS routine_schema, o.name AS routine_name, m.definition
    FROM sys.sql_modules m
    JOIN sys.objects o ON m.object_id = o.object_id
    JOIN sys.schemas s ON o.schema_id = s.schema_id
    WHERE o.type IN ({types}) AND o.is_ms_shipped = 0
    ORDER BY s.name, o.name
"""

# scalar, inline table-valued and multi-statement table-valued functions
FUNCTION_OBJECT_TYPES = ('FN', 'IF', 'TF')
VIEW_OBJECT_TYPES = ('V',)

VERSION_QUERY = "SELECT @@VERSION AS version"


def routines_query(object_types: Sequence[str]) -> str:
    # fixed literals only, never caller input
    types = ", ".join(f"'{t}'" for t in object_types)
    return ROUTINES_QUERY.format(types=types)


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def parse_table_row(row: Dict[str, Any]) -> TableIdentity:
    return TableIdentity(row['TABLE_SCHEMA'], row['TABLE_NAME'])


def parse_column_row(row: Dict[str, Any]) -> ColumnDescriptor:
    return ColumnDescriptor(
        name=row['COLUMN_NAME'],
        data_type=row['DATA_TYPE'],
        char_length=_optional_int(row.get('CHARACTER_MAXIMUM_LENGTH')),
        numeric_precision=_optional_int(row.get('NUMERIC_PRECISION')),
        numeric_scale=_optional_int(row.get('NUMERIC_SCALE')),
        nullable=str(row.get('IS_NULLABLE', 'YES')).upper() == 'YES',
        default=row.get('COLUMN_DEFAULT'),
        ordinal=int(row.get('ORDINAL_POSITION') or 0),
        is_identity=bool(row.get('IS_IDENTITY')),
    )


def parse_foreign_key_row(row: Dict[str, Any]) -> ForeignKeyRef:
    return ForeignKeyRef(
        constraint_name=row['constraint_name'],
        column=row['column_name'],
        referenced_table=TableIdentity(row['referenced_schema'], row['referenced_table']),
        referenced_column=row['referenced_column'],
    )


def parse_routine_row(row: Dict[str, Any], kind: str) -> RoutineDefinition:
    return RoutineDefinition(
        schema=row['routine_schema'],
        name=row['routine_name'],
        kind=kind,
        definition=row['definition'] or "",
    )


def filter_schemas(tables: Iterable[TableIdentity], schemas: Optional[Sequence[str]]) -> List[TableIdentity]:
    if not schemas:
        return list(tables)
    wanted = {s.lower() for s in schemas}
    return [t for t in tables if t.schema.lower() in wanted]


def dependency_order(schemas: Sequence[TableSchema]) -> List[TableIdentity]:
    """Referenced tables before the tables that point at them.

    Self references are ignored; tables caught in a cycle keep their input order.
    """
    by_table = {s.table: s for s in schemas}
    ordered: List[TableIdentity] = []
    state: Dict[TableIdentity, str] = {}

    def visit(table: TableIdentity):
        if table in state:
            return
        state[table] = 'visiting'
        for fk in by_table[table].foreign_keys:
            parent = fk.referenced_table
            if parent != table and parent in by_table:
                visit(parent)
        state[table] = 'done'
        ordered.append(table)

    for schema in schemas:
        visit(schema.table)
    return ordered


def compare_table_sets(source: Iterable[TableIdentity],
                       target: Iterable[TableIdentity]) -> Tuple[List[TableIdentity], List[TableIdentity], List[TableIdentity]]:
    """(common, missing in target, extra in target), each sorted"""
    source_set, target_set = set(source), set(target)
    return (sorted(source_set & target_set),
            sorted(source_set - target_set),
            sorted(target_set - source_set))
