#!/usr/bin/env python3
"""
Batch Transfer Engine
=====================

Moves table rows from a source MirrorDatabase to a target one in fixed-size
windows. Each window is bulk loaded in a single transaction; a window the
bulk path rejects is handed to RowLevelFallback so only the bad rows are
lost. Windows are applied in the order they were read.

Paging uses ORDER BY (SELECT NULL), which is only stable while the source
is not being written to. Copying a table that is modified during the run
is not supported and can skip or duplicate rows.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.database import MirrorDatabase
from core.errors import MirrorError, OperationCancelled, TransferError, is_fatal
from core.fallback import RowLevelFallback
from core.progress import TransferProgress, estimate_minutes, format_progress
from core.retry import RetryPolicy, execute_with_retry, is_transient
from core.schema import ColumnDescriptor, RoutineDefinition, TableIdentity, TableSchema
from core.type_registry import TypeRegistry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10000

@dataclass
class TableTransferResult:
    """Outcome of one table's copy; error is set when the table was abandoned"""
    table: TableIdentity
    total_rows: int = 0
    transferred: int = 0
    failed: int = 0
    bulk_batches: int = 0
    fallback_batches: int = 0
    elapsed: float = 0.0
    created: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def complete(self) -> bool:
        return self.ok and self.failed == 0 and self.transferred >= self.total_rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table.qualified_name,
            'total_rows': self.total_rows,
            'transferred': self.transferred,
            'failed': self.failed,
            'bulk_batches': self.bulk_batches,
            'fallback_batches': self.fallback_batches,
            'elapsed_seconds': round(self.elapsed, 3),
            'created': self.created,
            'error': self.error,
        }

@dataclass
class TransferSummary:
    results: List[TableTransferResult] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def failed_tables(self) -> List[TableTransferResult]:
        return [r for r in self.results if not r.ok]

    @property
    def rows_transferred(self) -> int:
        return sum(r.transferred for r in self.results)

    @property
    def rows_failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def success(self) -> bool:
        return not self.failed_tables and self.rows_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tables': len(self.results),
            'failed_tables': [r.table.qualified_name for r in self.failed_tables],
            'rows_transferred': self.rows_transferred,
            'rows_failed': self.rows_failed,
            'elapsed_seconds': round(self.elapsed, 3),
            'results': [r.to_dict() for r in self.results],
        }

@dataclass
class RoutineTransferResult:
    kind: str
    copied: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


def insertable_columns(columns: Sequence[ColumnDescriptor]) -> List[ColumnDescriptor]:
    """Columns whose values can be written explicitly (rowversion is server maintained)"""
    return [c for c in columns if not TypeRegistry.is_versioning(c.type_name)]


class BatchTransferEngine:
    """Windowed source-to-target table copy"""

    def __init__(self, source: MirrorDatabase, target: MirrorDatabase,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 retry_policy: Optional[RetryPolicy] = None,
                 fallback: Optional[RowLevelFallback] = None,
                 progress_interval: int = 0,
                 stop_event: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.source = source
        self.target = target
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy(retryable=is_transient)
        self.fallback = fallback or RowLevelFallback(target)
        self.progress_interval = progress_interval
        self.stop_event = stop_event
        self.sleep = sleep
        self.clock = clock

    def _check_stop(self):
        if self.stop_event is not None and self.stop_event.is_set():
            raise OperationCancelled()

    def _retry(self, operation, description: str):
        return execute_with_retry(operation, self.retry_policy, sleep=self.sleep, description=description)

    def ensure_table(self, schema: TableSchema) -> bool:
        """Create the target table from the source schema when it is missing"""
        if self.target.table_exists(schema.table):
            return False
        self._retry(lambda: self.target.create_table(schema), f"Create table {schema.table}")
        logger.info(f"Created table {schema.table} on {self.target.label}")
        return True

    def transfer_table(self, table: TableIdentity, schema: Optional[TableSchema] = None,
                       create_missing: bool = True) -> TableTransferResult:
        """Copy every row of one table.

        Returns a result accounting for each row as transferred or failed,
        or raises TransferError when the table cannot be copied at all.
        Connectivity errors and cancellation propagate unchanged.
        """
        self._check_stop()
        started = self.clock()
        try:
            return self._transfer_table(table, schema, create_missing, started)
        except MirrorError as e:
            if is_fatal(e) or isinstance(e, TransferError):
                raise
            raise TransferError(f"Transfer of {table} failed: {e}", table=str(table),
                                operation='transfer') from e
        except Exception as e:
            raise TransferError(f"Transfer of {table} failed: {e}", table=str(table),
                                operation='transfer') from e

    def _transfer_table(self, table, schema, create_missing, started) -> TableTransferResult:
        if schema is None:
            schema = self._retry(lambda: self.source.read_table_schema(table), f"Read schema of {table}")
        if not schema.columns:
            raise TransferError(f"No columns found for {table}", table=str(table), operation='schema')

        result = TableTransferResult(table)
        if create_missing:
            result.created = self.ensure_table(schema)

        columns = insertable_columns(schema.columns)
        names = [c.name for c in columns]

        total = self._retry(lambda: self.source.count_rows(table), f"Count rows of {table}")
        result.total_rows = total
        if total == 0:
            logger.info(f"Table {table} is empty (0 rows), skipping")
            result.elapsed = self.clock() - started
            return result

        logger.info(f"Table {table}: {total:,} rows to transfer")
        progress = TransferProgress(str(table), total, clock=self.clock, started_at=started)
        last_reported = 0
        offset = 0

        while offset < total:
            self._check_stop()
            window_offset = offset
            rows = self._retry(
                lambda: self.source.fetch_window(table, names, window_offset, self.batch_size),
                f"Fetch rows {window_offset}-{window_offset + self.batch_size} of {table}",
            )
            if not rows:
                logger.warning(f"Source returned no rows for {table} at offset {offset:,}; "
                               f"table shrank during transfer")
                break

            loaded, failed = self._load_window(table, columns, rows, result)
            progress.record(loaded, failed)
            result.transferred += loaded
            result.failed += failed

            if progress.processed - last_reported >= self.progress_interval or progress.processed >= total:
                logger.info(f"   {table}: {progress.format_line()}")
                last_reported = progress.processed

            offset += self.batch_size

        result.elapsed = self.clock() - started
        if progress.processed < total:
            logger.warning(f"Table {table}: only {progress.processed:,} of {total:,} rows were read from source")
        logger.info(f"Table {table}: {format_progress(result.transferred, total, progress.percentage)} "
                    f"transferred in {result.elapsed:.1f}s"
                    + (f", {result.failed:,} rows failed" if result.failed else ""))
        return result

    def _load_window(self, table: TableIdentity, columns: List[ColumnDescriptor],
                     rows: List[Dict[str, Any]], result: TableTransferResult):
        """Bulk load one window, falling back to single rows; returns (loaded, failed)"""
        try:
            self._retry(lambda: self.target.bulk_insert(table, columns, rows),
                        f"Bulk insert of {len(rows)} rows into {table}")
            result.bulk_batches += 1
            return len(rows), 0
        except Exception as e:
            if is_fatal(e):
                raise
            logger.warning(f"Bulk insert into {table} failed, inserting {len(rows)} rows individually: {e}")

        fallback = self.fallback.insert_rows(table, columns, rows)
        result.fallback_batches += 1
        return fallback.succeeded, fallback.failed

    def transfer_all(self, tables: Optional[Sequence[TableIdentity]] = None,
                     create_missing: bool = True) -> TransferSummary:
        """Copy each table in turn; one table's failure does not stop the rest"""
        started = self.clock()
        if tables is None:
            tables = self._retry(self.source.list_tables, "List source tables")
        summary = TransferSummary()
        total = len(tables)
        logger.info(f"Starting data transfer of {total} tables")

        for index, table in enumerate(tables, 1):
            self._check_stop()
            logger.info(f"[{index}/{total}] Transferring table: {table}")
            try:
                result = self.transfer_table(table, create_missing=create_missing)
            except Exception as e:
                if is_fatal(e):
                    raise
                logger.error(f"Error transferring table {table}: {e}")
                result = TableTransferResult(table, error=str(e))
            summary.results.append(result)

            elapsed = self.clock() - started
            eta = estimate_minutes(index, total, elapsed)
            logger.info(f"Overall progress: {format_progress(index, total, index / total * 100)}"
                        + (f" | ETA: {eta}min" if eta is not None else ""))

        summary.elapsed = self.clock() - started
        logger.info(f"Data transfer completed in {summary.elapsed / 60:.1f} minutes: "
                    f"{summary.rows_transferred:,} rows, {len(summary.failed_tables)} failed tables")
        return summary

    def transfer_routines(self, kind: str) -> RoutineTransferResult:
        """Copy functions or views verbatim.

        Definitions that fail are retried in further passes while each pass
        still makes progress, so objects that depend on each other end up
        created regardless of catalog order.
        """
        kind = kind.upper()
        if kind == 'FUNCTION':
            routines = self._retry(self.source.list_functions, "List source functions")
        elif kind == 'VIEW':
            routines = self._retry(self.source.list_views, "List source views")
        else:
            raise ValueError(f"Unsupported routine kind: {kind}")

        result = RoutineTransferResult(kind)
        pending: List[RoutineDefinition] = list(routines)
        logger.info(f"Transferring {len(pending)} {kind.lower()}s")

        while pending:
            still_failing = []
            for routine in pending:
                self._check_stop()
                try:
                    self._retry(lambda: self.target.apply_routine(routine),
                                f"Create {kind.lower()} {routine.qualified_name}")
                except Exception as e:
                    if is_fatal(e):
                        raise
                    result.failed[routine.qualified_name] = str(e)
                    still_failing.append(routine)
                    continue
                result.failed.pop(routine.qualified_name, None)
                result.copied.append(routine.qualified_name)
                logger.info(f"Transferred {kind.lower()}: {routine.qualified_name}")

            if len(still_failing) == len(pending):
                break
            pending = still_failing

        for name, error in result.failed.items():
            logger.error(f"Error transferring {kind.lower()} {name}: {error}")
        logger.info(f"{kind.title()}s transfer completed ({len(result.copied)} copied, {len(result.failed)} failed)")
        return result
