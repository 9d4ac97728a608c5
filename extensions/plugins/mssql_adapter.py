#!/usr/bin/env python3
"""
sqlmirror SQL Server Adapter

This module provides the SQL Server side of sqlmirror:
- MSSQLAdapter: a pymssql connection with query/transaction helpers,
  driver error translation, reconnect after a dropped session and
  execution statistics
- MSSQLDatabase: the MirrorDatabase implementation used by the transfer,
  verify and repair engine, built on the statement builders in core.ddl
  and the catalog queries in core.catalog

Usage:
    adapter = MSSQLAdapter(ConnectionConfig(
        host='sql01', database='Sales', user='copy_user', password='...'
    ))
    source = MSSQLDatabase(adapter, label='source')
    tables = source.list_tables()
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pymssql

from core import catalog, ddl
from core.checksum import ChecksumResult
from core.database import MirrorDatabase
from core.errors import ConnectivityError, StatementError
from core.identifiers import quote_table
from core.schema import ColumnDescriptor, ForeignKeyRef, RoutineDefinition, TableIdentity, TableSchema

# Configure logging
logger = logging.getLogger(__name__)

# Deadlock victim, lock timeout, client timeout, Azure throttling/failover,
# and network resets. Worth another attempt after a pause.
TRANSIENT_ERROR_NUMBERS = {1205, 1222, -2, 20003, 40197, 40501, 40613, 49918, 49919, 49920,
                           233, 10053, 10054, 10060, 20006, 20047}
# The session is gone and must be reopened before the next statement
CONNECTION_LOST_NUMBERS = {233, 10053, 10054, 20006, 20047}

@dataclass
class ConnectionConfig:
    """SQL Server connection configuration"""
    host: str = "localhost"
    port: int = 1433
    database: str = "master"
    user: str = "sa"
    password: str = ""

    login_timeout: int = 30  # seconds
    query_timeout: int = 0  # seconds, 0 = no limit

    application_name: str = "sqlmirror"

    @classmethod
    def from_settings(cls, settings) -> 'ConnectionConfig':
        """Build from config.secure_config.DatabaseSettings"""
        return cls(
            host=settings.server,
            port=settings.port,
            database=settings.database,
            user=settings.user,
            password=settings.password,
            login_timeout=int(settings.login_timeout),
            query_timeout=int(settings.query_timeout),
            application_name=settings.app_name,
        )

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to pymssql connection parameters"""
        return {
            'server': self.host,
            'port': str(self.port),
            'database': self.database,
            'user': self.user,
            'password': self.password,
            'login_timeout': self.login_timeout,
            'timeout': self.query_timeout,
            'appname': self.application_name,
            'autocommit': False,
        }

    def describe(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"


def error_number(error: Exception) -> Optional[int]:
    """Server or DB-Lib error number carried by a pymssql exception"""
    if error.args and isinstance(error.args[0], int):
        return error.args[0]
    return None


def error_text(error: Exception) -> str:
    if len(error.args) > 1:
        message = error.args[1]
        if isinstance(message, bytes):
            message = message.decode('utf-8', errors='replace')
        return str(message).strip()
    return str(error)


class MSSQLAdapter:
    """
    pymssql connection wrapper

    Features:
    - Dict rows for queries
    - Commit/rollback around every statement group
    - Translation of driver errors to StatementError / ConnectivityError
    - Reopens the session after a dropped connection
    - Execution statistics
    """

    def __init__(self, config: Optional[ConnectionConfig] = None, **kwargs):
        if config:
            self.config = config
        else:
            self.config = ConnectionConfig(**kwargs)

        self.connection = None

        # Statistics
        self.stats = {
            'connections_created': 0,
            'queries_executed': 0,
            'failed_queries': 0,
            'rows_written': 0,
            'total_execution_time': 0.0,
            'start_time': time.time()
        }

        self._connect()
        logger.info(f"SQL Server adapter connected to {self.config.describe()}")

    def _connect(self):
        try:
            self.connection = pymssql.connect(**self.config.to_connection_params())
            self.stats['connections_created'] += 1
        except pymssql.Error as e:
            self.connection = None
            # never echo the password; pymssql messages do not contain it
            raise ConnectivityError(
                f"Cannot connect to {self.config.describe()} as {self.config.user}: {error_text(e)}",
                {'server': self.config.host, 'database': self.config.database, 'number': error_number(e)},
            ) from e

    def _ensure_connection(self):
        if self.connection is None:
            logger.warning(f"Reconnecting to {self.config.describe()}")
            self._connect()

    def _translate(self, error: Exception, sql: str) -> StatementError:
        number = error_number(error)
        if number in CONNECTION_LOST_NUMBERS:
            self._discard_connection()
        statement = " ".join(sql.split())[:200]
        return StatementError(
            f"{error_text(error)} (statement: {statement})",
            transient=number in TRANSIENT_ERROR_NUMBERS,
            number=number,
        )

    def _discard_connection(self):
        if self.connection is not None:
            try:
                self.connection.close()
            except pymssql.Error as e:
                logger.debug(f"Ignoring error while closing dead connection: {e}")
        self.connection = None

    @contextmanager
    def _cursor(self, as_dict: bool = False):
        self._ensure_connection()
        cursor = self.connection.cursor(as_dict=as_dict)
        try:
            yield cursor
        finally:
            cursor.close()

    def _rollback(self):
        if self.connection is None:
            return
        try:
            self.connection.rollback()
        except pymssql.Error as e:
            logger.warning(f"Rollback failed on {self.config.describe()}: {error_text(e)}")
            self._discard_connection()

    def execute_query(self, sql: str, params: Optional[Tuple] = None) -> List[Dict[str, Any]]:
        """Run a SELECT and return its rows as dicts"""
        start_time = time.time()
        try:
            with self._cursor(as_dict=True) as cursor:
                if params is None:
                    cursor.execute(sql)
                else:
                    cursor.execute(sql, params)
                rows = cursor.fetchall() if cursor.description else []
            self.connection.commit()
            self.stats['queries_executed'] += 1
            return rows
        except pymssql.Error as e:
            self.stats['failed_queries'] += 1
            self._rollback()
            raise self._translate(e, sql) from e
        finally:
            self.stats['total_execution_time'] += time.time() - start_time

    def execute_non_query(self, sql: str, params: Optional[Tuple] = None) -> int:
        """Run one statement, commit, and return the affected row count"""
        return self.execute_transaction([{'sql': sql, 'params': params}])

    def execute_transaction(self, operations: List[Dict[str, Any]]) -> int:
        """
        Execute multiple operations in one transaction

        Args:
            operations: List of operation dictionaries with 'sql' and optional 'params'

        Returns:
            Total rows affected; the transaction is rolled back on any failure
        """
        start_time = time.time()
        total = 0
        sql = ''
        try:
            with self._cursor() as cursor:
                for operation in operations:
                    sql = operation['sql']
                    params = operation.get('params')
                    if params is None:
                        cursor.execute(sql)
                    else:
                        cursor.execute(sql, params)
                    total += cursor.rowcount if cursor.rowcount > 0 else 0
            self.connection.commit()
            self.stats['queries_executed'] += len(operations)
            return total
        except pymssql.Error as e:
            self.stats['failed_queries'] += 1
            self._rollback()
            raise self._translate(e, sql) from e
        finally:
            self.stats['total_execution_time'] += time.time() - start_time

    def execute_many(self, sql: str, param_rows: Sequence[Tuple], before: Iterable[str] = (),
                     after: Iterable[str] = ()) -> int:
        """Run one parameterized statement for every row inside a single transaction"""
        start_time = time.time()
        statement = sql
        try:
            with self._cursor() as cursor:
                for statement in before:
                    cursor.execute(statement)
                statement = sql
                cursor.executemany(sql, list(param_rows))
                for statement in after:
                    cursor.execute(statement)
            self.connection.commit()
            self.stats['queries_executed'] += 1
            self.stats['rows_written'] += len(param_rows)
            return len(param_rows)
        except pymssql.Error as e:
            self.stats['failed_queries'] += 1
            self._rollback()
            raise self._translate(e, statement) from e
        finally:
            self.stats['total_execution_time'] += time.time() - start_time

    def close(self):
        if self.connection is not None:
            try:
                self.connection.close()
                logger.info(f"Closed connection to {self.config.describe()}")
            except pymssql.Error as e:
                logger.warning(f"Error closing connection to {self.config.describe()}: {error_text(e)}")
            finally:
                self.connection = None

    def get_statistics(self) -> Dict[str, Any]:
        """Get adapter statistics"""
        total_queries = self.stats['queries_executed']
        return {
            'uptime_seconds': time.time() - self.stats['start_time'],
            'connected': self.connection is not None,
            'connections_created': self.stats['connections_created'],
            'queries_executed': total_queries,
            'failed_queries': self.stats['failed_queries'],
            'rows_written': self.stats['rows_written'],
            'avg_execution_time': self.stats['total_execution_time'] / max(total_queries, 1),
            'total_execution_time': self.stats['total_execution_time'],
        }


class MSSQLDatabase(MirrorDatabase):
    """MirrorDatabase backed by one SQL Server connection"""

    def __init__(self, adapter: MSSQLAdapter, label: str = "database", schemas: Optional[Sequence[str]] = None):
        super().__init__(label)
        self.adapter = adapter
        self.schemas = list(schemas or [])
        self._identity_tables: Dict[TableIdentity, bool] = {}

    # ----- Catalog -----

    def list_tables(self) -> List[TableIdentity]:
        rows = self.adapter.execute_query(catalog.TABLES_QUERY)
        return catalog.filter_schemas([catalog.parse_table_row(r) for r in rows], self.schemas)

    def get_columns(self, table: TableIdentity) -> List[ColumnDescriptor]:
        rows = self.adapter.execute_query(catalog.COLUMNS_QUERY, (table.schema, table.name))
        return [catalog.parse_column_row(r) for r in rows]

    def get_primary_keys(self, table: TableIdentity) -> List[str]:
        rows = self.adapter.execute_query(catalog.PRIMARY_KEY_QUERY, (table.schema, table.name))
        return [r['COLUMN_NAME'] for r in rows]

    def get_foreign_keys(self, table: TableIdentity) -> List[ForeignKeyRef]:
        rows = self.adapter.execute_query(catalog.FOREIGN_KEY_QUERY, (table.schema, table.name))
        return [catalog.parse_foreign_key_row(r) for r in rows]

    def list_functions(self) -> List[RoutineDefinition]:
        rows = self.adapter.execute_query(catalog.routines_query(catalog.FUNCTION_OBJECT_TYPES))
        return [catalog.parse_routine_row(r, 'FUNCTION') for r in rows
                if not self.schemas or r['routine_schema'] in self.schemas]

    def list_views(self) -> List[RoutineDefinition]:
        rows = self.adapter.execute_query(catalog.routines_query(catalog.VIEW_OBJECT_TYPES))
        return [catalog.parse_routine_row(r, 'VIEW') for r in rows
                if not self.schemas or r['routine_schema'] in self.schemas]

    def table_exists(self, table: TableIdentity) -> bool:
        rows = self.adapter.execute_query(
            "SELECT OBJECT_ID(%s, 'U') AS object_id", (quote_table(table),))
        return bool(rows) and rows[0]['object_id'] is not None

    # ----- Rows -----

    def count_rows(self, table: TableIdentity) -> int:
        rows = self.adapter.execute_query(ddl.count_rows_sql(table))
        return int(rows[0]['row_count'])

    def fetch_window(self, table: TableIdentity, columns: Sequence[str],
                     offset: int, size: int) -> List[Dict[str, Any]]:
        return self.adapter.execute_query(ddl.select_window_sql(table, columns, offset, size))

    def _has_identity(self, table: TableIdentity) -> bool:
        """Looked up once per table; cleared when the table is dropped or created"""
        if table not in self._identity_tables:
            rows = self.adapter.execute_query(
                "SELECT OBJECTPROPERTY(OBJECT_ID(%s), 'TableHasIdentity') AS has_identity", (quote_table(table),))
            self._identity_tables[table] = bool(rows and rows[0]['has_identity'])
        return self._identity_tables[table]

    def _identity_wrappers(self, table: TableIdentity) -> Tuple[List[str], List[str]]:
        if self._has_identity(table):
            return [ddl.identity_insert_sql(table, True)], [ddl.identity_insert_sql(table, False)]
        return [], []

    def bulk_insert(self, table: TableIdentity, columns: Sequence[ColumnDescriptor],
                    rows: Sequence[Dict[str, Any]]) -> int:
        names = [c.name for c in columns]
        params = [tuple(row.get(n) for n in names) for row in rows]
        before, after = self._identity_wrappers(table)
        return self.adapter.execute_many(ddl.insert_sql(table, names), params, before, after)

    def insert_row(self, table: TableIdentity, columns: Sequence[ColumnDescriptor], values: Sequence[Any]):
        before, after = self._identity_wrappers(table)
        operations = [{'sql': s} for s in before]
        operations.append({'sql': ddl.insert_sql(table, [c.name for c in columns]), 'params': tuple(values)})
        operations += [{'sql': s} for s in after]
        self.adapter.execute_transaction(operations)

    def clear_table(self, table: TableIdentity) -> int:
        return self.adapter.execute_non_query(ddl.delete_rows_sql(table))

    def table_checksum(self, table: TableIdentity, columns: Sequence[ColumnDescriptor]) -> ChecksumResult:
        rows = self.adapter.execute_query(ddl.checksum_sql(table, columns))
        row = rows[0]
        return ChecksumResult(checksum=row['checksum'], row_count=int(row['row_count']))

    # ----- Schema changes -----

    def create_table(self, schema: TableSchema):
        self._identity_tables.pop(schema.table, None)
        self.adapter.execute_non_query(ddl.create_table_sql(schema))

    def drop_table(self, table: TableIdentity):
        self._identity_tables.pop(table, None)
        self.adapter.execute_non_query(ddl.drop_table_sql(table))

    def backup_table(self, table: TableIdentity) -> TableIdentity:
        self.adapter.execute_transaction([{'sql': s} for s in ddl.backup_table_sql(table)])
        return ddl.backup_table_name(table)

    def add_foreign_keys(self, table: TableIdentity, foreign_keys: Sequence[ForeignKeyRef]):
        for statement in ddl.foreign_key_sql(table, foreign_keys):
            self.adapter.execute_non_query(statement)

    def apply_routine(self, routine: RoutineDefinition):
        # CREATE FUNCTION/VIEW must be the only statement in its batch
        self.adapter.execute_non_query(ddl.drop_routine_sql(routine.kind, routine.schema, routine.name))
        self.adapter.execute_non_query(routine.definition)

    # ----- Lifecycle -----

    def server_version(self) -> Optional[str]:
        rows = self.adapter.execute_query(catalog.VERSION_QUERY)
        return rows[0]['version'].splitlines()[0] if rows else None

    def close(self):
        self.adapter.close()

    def get_statistics(self) -> Dict[str, Any]:
        return self.adapter.get_statistics()


def connect_database(settings, label: str, schemas: Optional[Sequence[str]] = None) -> MSSQLDatabase:
    """Open an adapter from DatabaseSettings and wrap it"""
    return MSSQLDatabase(MSSQLAdapter(ConnectionConfig.from_settings(settings)), label=label, schemas=schemas)
