#!/usr/bin/env python3
"""
Structural and data verification between source and target.

compare_columns() reports column-level differences between two tables.
DataVerifier.verify_table() combines that with row counts and an
order-independent checksum, and never raises for a single table: failures
become an ERROR issue so a run over many tables always completes.

Checksums over float/real columns can differ when two servers round
differently. Such mismatches are reported, never tolerated, and the issue
message names the floating-point columns involved.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from core.catalog import compare_table_sets
from core.checksum import ChecksumAccumulator, ChecksumResult
from core.database import MirrorDatabase
from core.errors import OperationCancelled
from core.schema import ColumnDescriptor, TableIdentity
from core.type_registry import TypeRegistry

logger = logging.getLogger(__name__)

CHECKSUM_MODES = ('server', 'client')
DEFAULT_CHECKSUM_WINDOW = 10000

class IssueType(Enum):
    STRUCTURE = "STRUCTURE"
    ROW_COUNT = "ROW_COUNT"
    DATA_CHECKSUM = "DATA_CHECKSUM"
    ERROR = "ERROR"

class VerificationStatus(Enum):
    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    ERROR = "ERROR"

@dataclass
class Issue:
    type: IssueType
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.type.value, 'message': self.message}

@dataclass
class VerificationResult:
    """Per-table verdict; status is derived from the issues"""
    table: TableIdentity
    row_count: int = 0
    issues: List[Issue] = field(default_factory=list)

    @property
    def status(self) -> VerificationStatus:
        if not self.issues:
            return VerificationStatus.MATCH
        if any(i.type == IssueType.ERROR for i in self.issues):
            return VerificationStatus.ERROR
        return VerificationStatus.MISMATCH

    def has_issue(self, issue_type: IssueType) -> bool:
        return any(i.type == issue_type for i in self.issues)

    def add(self, issue_type: IssueType, message: str):
        self.issues.append(Issue(issue_type, message))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table.qualified_name,
            'status': self.status.value,
            'row_count': self.row_count,
            'issues': [i.to_dict() for i in self.issues],
        }

@dataclass
class VerificationReport:
    results: List[VerificationResult] = field(default_factory=list)
    missing_in_target: List[TableIdentity] = field(default_factory=list)
    extra_in_target: List[TableIdentity] = field(default_factory=list)

    def _count(self, status: VerificationStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def matched(self) -> int:
        return self._count(VerificationStatus.MATCH)

    @property
    def mismatched(self) -> int:
        return self._count(VerificationStatus.MISMATCH)

    @property
    def errored(self) -> int:
        return self._count(VerificationStatus.ERROR)

    @property
    def problematic(self) -> List[VerificationResult]:
        return [r for r in self.results if r.status != VerificationStatus.MATCH]

    @property
    def success(self) -> bool:
        # tables only present on the target are reported but do not fail the run
        return not self.problematic and not self.missing_in_target

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'summary': {
                'total': len(self.results),
                'matched': self.matched,
                'mismatched': self.mismatched,
                'errors': self.errored,
                'missing_in_target': len(self.missing_in_target),
                'extra_in_target': len(self.extra_in_target),
            },
            'missing_in_target': [t.qualified_name for t in self.missing_in_target],
            'extra_in_target': [t.qualified_name for t in self.extra_in_target],
            'results': [r.to_dict() for r in self.results],
        }


def _length_text(column: ColumnDescriptor) -> str:
    if column.char_length is None:
        return "none"
    return "MAX" if column.is_max else str(column.char_length)


def compare_columns(source_columns: Sequence[ColumnDescriptor],
                    target_columns: Sequence[ColumnDescriptor]) -> List[str]:
    """Human-readable differences, source catalog order within each group"""
    source_map = {c.name: c for c in source_columns}
    target_map = {c.name: c for c in target_columns}

    differences = []
    if len(source_columns) != len(target_columns):
        differences.append(f"Column count mismatch: source {len(source_columns)}, target {len(target_columns)}")

    for name in source_map:
        if name not in target_map:
            differences.append(f"Missing column in target: {name}")

    for name, src in source_map.items():
        tgt = target_map.get(name)
        if tgt is None:
            continue
        if src.type_name != tgt.type_name:
            differences.append(f"Data type mismatch for {name}: source {src.data_type}, target {tgt.data_type}")
        if src.nullable != tgt.nullable:
            differences.append(f"Nullable mismatch for {name}: source {'YES' if src.nullable else 'NO'}, "
                               f"target {'YES' if tgt.nullable else 'NO'}")
        if src.char_length != tgt.char_length:
            differences.append(f"Length mismatch for {name}: source {_length_text(src)}, target {_length_text(tgt)}")
        if src.numeric_precision != tgt.numeric_precision:
            differences.append(f"Precision mismatch for {name}: source {src.numeric_precision}, "
                               f"target {tgt.numeric_precision}")
        if src.numeric_scale != tgt.numeric_scale:
            differences.append(f"Scale mismatch for {name}: source {src.numeric_scale}, target {tgt.numeric_scale}")

    for name in target_map:
        if name not in source_map:
            differences.append(f"Extra column in target: {name}")

    return differences


def client_checksum(db: MirrorDatabase, table: TableIdentity, columns: Sequence[ColumnDescriptor],
                    window: int = DEFAULT_CHECKSUM_WINDOW) -> ChecksumResult:
    """Stream the table in windows and checksum it locally"""
    accumulator = ChecksumAccumulator(columns)
    names = [c.name for c in accumulator.columns]
    offset = 0
    while True:
        rows = db.fetch_window(table, names, offset, window)
        accumulator.add_all(rows)
        if len(rows) < window:
            break
        offset += window
    return accumulator.result()


class DataVerifier:
    """Compares one table, or every table, between source and target"""

    def __init__(self, source: MirrorDatabase, target: MirrorDatabase, checksum_mode: str = 'server',
                 checksum_window: int = DEFAULT_CHECKSUM_WINDOW,
                 stop_event: Optional[threading.Event] = None):
        if checksum_mode not in CHECKSUM_MODES:
            raise ValueError(f"checksum_mode must be one of {CHECKSUM_MODES}, got {checksum_mode!r}")
        self.source = source
        self.target = target
        self.checksum_mode = checksum_mode
        self.checksum_window = checksum_window
        self.stop_event = stop_event

    def _checksum(self, db: MirrorDatabase, table: TableIdentity,
                  columns: Sequence[ColumnDescriptor]) -> ChecksumResult:
        if self.checksum_mode == 'client':
            return client_checksum(db, table, columns, self.checksum_window)
        return db.table_checksum(table, columns)

    def verify_table(self, table: TableIdentity) -> VerificationResult:
        result = VerificationResult(table)
        try:
            self._verify(table, result)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Error verifying {table}: {e}")
            result.issues = [Issue(IssueType.ERROR, f"Verification failed: {e}")]
        return result

    def _verify(self, table: TableIdentity, result: VerificationResult):
        source_columns = self.source.get_columns(table)
        target_columns = self.target.get_columns(table)

        differences = compare_columns(source_columns, target_columns)
        for difference in differences:
            result.add(IssueType.STRUCTURE, difference)

        source_count = self.source.count_rows(table)
        target_count = self.target.count_rows(table)
        result.row_count = source_count
        if source_count != target_count:
            result.add(IssueType.ROW_COUNT, f"Row count mismatch: source {source_count}, target {target_count}")

        # a checksum over differently shaped tables means nothing
        if differences or source_count == 0:
            return

        source_sum = self._checksum(self.source, table, source_columns)
        target_sum = self._checksum(self.target, table, source_columns)
        if source_sum.checksum != target_sum.checksum:
            message = f"Data checksum mismatch: source {source_sum.checksum}, target {target_sum.checksum}"
            floating = [c.name for c in source_columns if TypeRegistry.is_floating(c.type_name)]
            if floating:
                message += f" (floating-point columns: {', '.join(floating)})"
                logger.warning(f"{table}: checksum mismatch involves floating-point columns {floating}")
            result.add(IssueType.DATA_CHECKSUM, message)

    def verify_tables(self, tables: Sequence[TableIdentity]) -> List[VerificationResult]:
        results = []
        for index, table in enumerate(tables, 1):
            if self.stop_event is not None and self.stop_event.is_set():
                raise OperationCancelled()
            result = self.verify_table(table)
            logger.info(f"[{index}/{len(tables)}] {table}: {result.status.value}"
                        + (f" ({len(result.issues)} issues)" if result.issues else ""))
            for issue in result.issues:
                logger.info(f"      {issue.type.value}: {issue.message}")
            results.append(result)
        return results

    def verify_databases(self) -> VerificationReport:
        """Verify every table present on both sides and list one-sided tables"""
        logger.info("Starting database verification")
        common, missing, extra = compare_table_sets(self.source.list_tables(), self.target.list_tables())

        report = VerificationReport(missing_in_target=missing, extra_in_target=extra)
        for table in missing:
            logger.warning(f"Table missing in target: {table}")
        for table in extra:
            logger.warning(f"Extra table in target: {table}")

        report.results = self.verify_tables(common)
        logger.info(f"Verification summary: {len(report.results)} tables, {report.matched} matched, "
                    f"{report.mismatched} mismatched, {report.errored} errors, "
                    f"{len(missing)} missing in target, {len(extra)} extra in target")
        return report
