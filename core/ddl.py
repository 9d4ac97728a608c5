#!/usr/bin/env python3
"""
T-SQL statement builders.

Every function here is pure: it takes model objects and returns statement
text. Identifiers are validated and bracket-quoted through core.identifiers;
values are never interpolated except by render-literal callers.
"""

from typing import List, Sequence

from core.identifiers import quote_identifier, quote_table
from core.schema import ColumnDescriptor, ForeignKeyRef, TableIdentity, TableSchema
from core.type_registry import TypeRegistry

BACKUP_SUFFIX = "_backup"
CHECKSUM_SEPARATOR = "'|'"


def column_type(column: ColumnDescriptor) -> str:
    """Type name plus its length or precision suffix"""
    type_name = column.type_name
    if TypeRegistry.takes_length(type_name):
        if column.char_length is not None and column.char_length > 0:
            return f"{type_name}({column.char_length})"
        if column.is_max and TypeRegistry.supports_max(type_name):
            return f"{type_name}(MAX)"
        if type_name in ('varchar', 'nvarchar'):
            return f"{type_name}({TypeRegistry.DEFAULT_VARCHAR_LENGTH})"
        return type_name
    if TypeRegistry.takes_precision_scale(type_name):
        if column.numeric_precision is not None and column.numeric_scale is not None:
            return f"{type_name}({column.numeric_precision},{column.numeric_scale})"
    return type_name


def column_definition(column: ColumnDescriptor, include_default: bool = False) -> str:
    definition = f"{quote_identifier(column.name)} {column_type(column)}"
    if not column.nullable:
        definition += " NOT NULL"
    if include_default and column.default:
        definition += f" DEFAULT {column.default}"
    return definition


def primary_key_name(table: TableIdentity) -> str:
    return f"PK_{table.name}"


def create_table_sql(schema: TableSchema, include_primary_key: bool = True,
                     include_defaults: bool = False) -> str:
    """CREATE TABLE from a source-side schema"""
    if not schema.columns:
        raise ValueError(f"Table {schema.table} has no columns")
    parts = [column_definition(c, include_defaults) for c in schema.columns]
    if include_primary_key and schema.primary_key:
        pk_columns = ", ".join(quote_identifier(c) for c in schema.primary_key)
        parts.append(f"CONSTRAINT {quote_identifier(primary_key_name(schema.table))} PRIMARY KEY ({pk_columns})")
    body = ",\n    ".join(parts)
    return f"CREATE TABLE {quote_table(schema.table)} (\n    {body}\n)"


def foreign_key_sql(table: TableIdentity, foreign_keys: Sequence[ForeignKeyRef]) -> List[str]:
    """ALTER TABLE statements, one per constraint (multi-column keys grouped)"""
    grouped = {}
    for fk in foreign_keys:
        grouped.setdefault(fk.constraint_name, []).append(fk)

    statements = []
    for name, refs in grouped.items():
        local = ", ".join(quote_identifier(r.column) for r in refs)
        remote = ", ".join(quote_identifier(r.referenced_column) for r in refs)
        statements.append(
            f"ALTER TABLE {quote_table(table)} ADD CONSTRAINT {quote_identifier(name)} "
            f"FOREIGN KEY ({local}) REFERENCES {quote_table(refs[0].referenced_table)} ({remote})"
        )
    return statements


def drop_table_sql(table: TableIdentity) -> str:
    return f"DROP TABLE IF EXISTS {quote_table(table)}"


def delete_rows_sql(table: TableIdentity) -> str:
    return f"DELETE FROM {quote_table(table)}"


def backup_table_name(table: TableIdentity) -> TableIdentity:
    return TableIdentity(table.schema, f"{table.name}{BACKUP_SUFFIX}")


def backup_table_sql(table: TableIdentity) -> List[str]:
    """Replace any earlier side table with a copy of the current rows"""
    backup = backup_table_name(table)
    return [
        drop_table_sql(backup),
        f"SELECT * INTO {quote_table(backup)} FROM {quote_table(table)}",
    ]


def count_rows_sql(table: TableIdentity) -> str:
    return f"SELECT COUNT_BIG(*) AS row_count FROM {quote_table(table)}"


def select_window_sql(table: TableIdentity, columns: Sequence[str], offset: int, size: int) -> str:
    """One page of rows; the tie-break order is stable only on a static table"""
    if offset < 0 or size <= 0:
        raise ValueError(f"Invalid window offset={offset} size={size}")
    column_list = ", ".join(quote_identifier(c) for c in columns) if columns else "*"
    return (
        f"SELECT {column_list} FROM {quote_table(table)} "
        f"ORDER BY (SELECT NULL) OFFSET {int(offset)} ROWS FETCH NEXT {int(size)} ROWS ONLY"
    )


def insert_sql(table: TableIdentity, columns: Sequence[str]) -> str:
    """Parameterized single-row INSERT (pymssql %s paramstyle)"""
    if not columns:
        raise ValueError(f"No insertable columns for {table}")
    column_list = ", ".join(quote_identifier(c) for c in columns)
    placeholders = ", ".join(["%s"] * len(columns))
    return f"INSERT INTO {quote_table(table)} ({column_list}) VALUES ({placeholders})"


def literal_insert_sql(table: TableIdentity, columns: Sequence[str], literals: Sequence[str]) -> str:
    column_list = ", ".join(quote_identifier(c) for c in columns)
    return f"INSERT INTO {quote_table(table)} ({column_list}) VALUES ({', '.join(literals)});"


def identity_insert_sql(table: TableIdentity, enabled: bool) -> str:
    return f"SET IDENTITY_INSERT {quote_table(table)} {'ON' if enabled else 'OFF'}"


def drop_routine_sql(kind: str, schema: str, name: str) -> str:
    kind = kind.upper()
    if kind not in ('FUNCTION', 'VIEW'):
        raise ValueError(f"Unsupported routine kind: {kind}")
    return f"DROP {kind} IF EXISTS {quote_identifier(schema)}.{quote_identifier(name)}"


def checksum_expression(column: ColumnDescriptor) -> str:
    """Canonical text form of one column, NULL spelled as 'NULL'"""
    name = quote_identifier(column.name)
    if TypeRegistry.is_datetime(column.type_name):
        return f"ISNULL(CONVERT(varchar(23), {name}, 121), 'NULL')"
    if TypeRegistry.is_binary(column.type_name):
        return f"ISNULL(CONVERT(NVARCHAR(MAX), CAST({name} AS VARBINARY(MAX)), 1), 'NULL')"
    return f"ISNULL(CAST({name} AS NVARCHAR(MAX)), 'NULL')"


def checksum_columns(columns: Sequence[ColumnDescriptor]) -> List[ColumnDescriptor]:
    return [c for c in columns if TypeRegistry.is_checksummable(c.type_name)]


def checksum_sql(table: TableIdentity, columns: Sequence[ColumnDescriptor]) -> str:
    """Order-independent aggregate of per-row CHECKSUM values"""
    expressions = [checksum_expression(c) for c in checksum_columns(columns)]
    if not expressions:
        raise ValueError(f"No checksummable columns in {table}")
    joined = f" + {CHECKSUM_SEPARATOR} + ".join(expressions)
    return (
        f"SELECT COUNT_BIG(*) AS row_count, CHECKSUM_AGG(CHECKSUM({joined})) AS checksum "
        f"FROM {quote_table(table)}"
    )
