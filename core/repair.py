#!/usr/bin/env python3
"""
Repair Orchestrator

Verifies every table present on both sides, then fixes only the tables that
do not match:

- STRUCTURE issues: the target rows are copied to <table>_backup, the table
  is dropped and recreated from the source schema, and its data retransferred.
- ROW_COUNT / DATA_CHECKSUM issues only: the target rows are deleted and the
  table retransferred (bulk windows with row-level fallback).
- ERROR-only results are left alone; the cause is usually connectivity or
  permissions, which a retransfer cannot fix.

The repaired set is verified again and the report counts what now matches.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.catalog import compare_table_sets
from core.database import MirrorDatabase
from core.errors import is_fatal
from core.retry import execute_with_retry
from core.schema import TableIdentity
from core.transfer import BatchTransferEngine, TableTransferResult
from core.verifier import DataVerifier, IssueType, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

@dataclass
class TableRepairOutcome:
    table: TableIdentity
    recreated: bool = False
    backup_table: Optional[TableIdentity] = None
    cleared: bool = False
    transfer: Optional[TableTransferResult] = None
    skipped: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table': self.table.qualified_name,
            'recreated': self.recreated,
            'backup_table': self.backup_table.qualified_name if self.backup_table else None,
            'cleared': self.cleared,
            'transfer': self.transfer.to_dict() if self.transfer else None,
            'skipped': self.skipped,
            'error': self.error,
        }

@dataclass
class RepairReport:
    total: int = 0
    fixed: int = 0
    outcomes: List[TableRepairOutcome] = field(default_factory=list)
    final_results: List[VerificationResult] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.total - self.fixed

    @property
    def success(self) -> bool:
        return self.fixed == self.total

    @property
    def still_mismatched(self) -> List[TableIdentity]:
        return [r.table for r in self.final_results if r.status != VerificationStatus.MATCH]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'total': self.total,
            'fixed': self.fixed,
            'remaining': self.remaining,
            'still_mismatched': [t.qualified_name for t in self.still_mismatched],
            'outcomes': [o.to_dict() for o in self.outcomes],
            'final_verification': [r.to_dict() for r in self.final_results],
        }


class RepairOrchestrator:
    """Detects and fixes divergent target tables"""

    def __init__(self, source: MirrorDatabase, target: MirrorDatabase,
                 verifier: DataVerifier, engine: BatchTransferEngine,
                 backup_before_recreate: bool = True,
                 stop_event: Optional[threading.Event] = None):
        self.source = source
        self.target = target
        self.verifier = verifier
        self.engine = engine
        self.backup_before_recreate = backup_before_recreate
        self.stop_event = stop_event

    def _retry(self, operation, description: str):
        return execute_with_retry(operation, self.engine.retry_policy, sleep=self.engine.sleep,
                                  description=description)

    def find_problematic_tables(self) -> List[VerificationResult]:
        common, missing, _ = compare_table_sets(self.source.list_tables(), self.target.list_tables())
        if missing:
            logger.warning(f"{len(missing)} source tables are missing in target and are not repaired here: "
                           f"{', '.join(str(t) for t in missing)}")
        results = self.verifier.verify_tables(common)
        return [r for r in results if r.status != VerificationStatus.MATCH]

    def recreate_table(self, table: TableIdentity, outcome: TableRepairOutcome):
        """Back up, drop and recreate the target table from the source definition"""
        schema = self.source.read_table_schema(table)
        if self.backup_before_recreate:
            outcome.backup_table = self._retry(lambda: self.target.backup_table(table), f"Back up {table}")
            logger.info(f"   Backed up {table} to {outcome.backup_table}")
        self._retry(lambda: self.target.drop_table(table), f"Drop table {table}")
        self._retry(lambda: self.target.create_table(schema), f"Create table {table}")
        outcome.recreated = True
        logger.info(f"   Recreated {table} from source definition")
        return schema

    def repair_table(self, result: VerificationResult) -> TableRepairOutcome:
        table = result.table
        outcome = TableRepairOutcome(table)
        has_structure = result.has_issue(IssueType.STRUCTURE)
        has_data = result.has_issue(IssueType.ROW_COUNT) or result.has_issue(IssueType.DATA_CHECKSUM)

        if not has_structure and not has_data:
            logger.warning(f"   {table} has no repairable issues ({result.status.value}), skipping")
            outcome.skipped = True
            return outcome

        schema = None
        if has_structure:
            logger.info(f"   Fixing structure issues of {table}")
            schema = self.recreate_table(table, outcome)
        else:
            deleted = self._retry(lambda: self.target.clear_table(table), f"Clear table {table}")
            outcome.cleared = True
            logger.info(f"   Cleared {deleted} rows from {table}")

        outcome.transfer = self.engine.transfer_table(table, schema=schema, create_missing=False)
        return outcome

    def run(self) -> RepairReport:
        logger.info("Starting database repair")
        problematic = self.find_problematic_tables()
        report = RepairReport(total=len(problematic))
        logger.info(f"Found {len(problematic)} tables with issues")
        if not problematic:
            return report

        for index, result in enumerate(problematic, 1):
            logger.info(f"[{index}/{len(problematic)}] Fixing table: {result.table}")
            try:
                outcome = self.repair_table(result)
            except Exception as e:
                if is_fatal(e):
                    raise
                logger.error(f"Error fixing table {result.table}: {e}")
                outcome = TableRepairOutcome(result.table, error=str(e))
            report.outcomes.append(outcome)

        logger.info("Running final verification of repaired tables")
        report.final_results = self.verifier.verify_tables([r.table for r in problematic])
        report.fixed = sum(1 for r in report.final_results if r.status == VerificationStatus.MATCH)

        logger.info(f"Repair summary: {report.total} tables with issues, {report.fixed} fixed, "
                    f"{report.remaining} still have issues")
        for table in report.still_mismatched:
            logger.warning(f"Still mismatched: {table}")
        return report
