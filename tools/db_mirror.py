#!/usr/bin/env python3
"""
sqlmirror Database Mirror
=========================

Copies a SQL Server database (tables, keys, data, functions, views) to
another SQL Server instance, verifies the copy, and repairs tables that
diverge.

Commands:
    export              Write source schema and data to JSON files
    import              Load a JSON export into the target
    migrate             Copy source to target (existing target rows are replaced)
    disaster-recovery   migrate with DROP_EXISTING, backup and validation on
    verify              Compare source and target table by table
    fix                 Repair tables whose structure, row count or checksum differ

Connection settings come from SOURCE_DB_* / TARGET_DB_* environment variables
or a .env file; see config/secure_config.py.

Usage:
    python3 tools/db_mirror.py migrate --batch-size 5000
    python3 tools/db_mirror.py verify --checksum-mode client
    python3 tools/db_mirror.py export --path ./exports/sales
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

# Add parent directory to path to import sqlmirror core
sys.path.insert(0, str(Path(__file__).parent.parent.resolve()))

from config.secure_config import MirrorConfig, load_config
from core.archive import ArchiveExporter, ArchiveSource
from core.catalog import dependency_order
from core.database import MirrorDatabase
from core.errors import MirrorError, OperationCancelled, is_fatal
from core.fallback import RejectedRowsFile, RowLevelFallback
from core.repair import RepairOrchestrator, RepairReport
from core.retry import RetryPolicy, execute_with_retry, is_transient
from core.schema import TableIdentity
from core.transfer import BatchTransferEngine, TransferSummary
from core.verifier import DataVerifier, VerificationReport
from extensions.plugins.mssql_adapter import connect_database

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

EXIT_OK = 0
EXIT_FAILURE = 1


class DatabaseMirror:
    """Runs one sqlmirror command against the configured endpoints"""

    def __init__(self, config: MirrorConfig, stop_event: Optional[threading.Event] = None,
                 connector: Callable[..., MirrorDatabase] = connect_database):
        self.config = config
        self.settings = config.transfer
        self.stop_event = stop_event or threading.Event()
        self._connector = connector
        self.source: Optional[MirrorDatabase] = None
        self.target: Optional[MirrorDatabase] = None
        self.retry_policy = RetryPolicy(max_attempts=self.settings.max_retries,
                                        base_delay=self.settings.retry_delay,
                                        retryable=is_transient)
        self.rejects = RejectedRowsFile(self.settings.rejects_path) if self.settings.rejects_path else None

    # ----- Connections -----

    def connect_source(self) -> MirrorDatabase:
        if self.source is None:
            self.source = self._connector(self.config.source, 'source', self.settings.schemas)
            logger.info(f"Connected to source {self.config.source.endpoint()} "
                        f"({self.source.server_version() or 'unknown version'})")
        return self.source

    def connect_target(self) -> MirrorDatabase:
        if self.target is None:
            self.target = self._connector(self.config.target, 'target', self.settings.schemas)
            logger.info(f"Connected to target {self.config.target.endpoint()} "
                        f"({self.target.server_version() or 'unknown version'})")
        return self.target

    def close(self):
        for db in (self.source, self.target):
            if db is None:
                continue
            try:
                db.close()
            except Exception as e:
                logger.warning(f"Error closing {db.label} connection: {e}")
        self.source = None
        self.target = None

    # ----- Components -----

    def _check_stop(self):
        if self.stop_event.is_set():
            raise OperationCancelled()

    def build_engine(self, source: MirrorDatabase, target: MirrorDatabase,
                     batch_size: Optional[int] = None) -> BatchTransferEngine:
        return BatchTransferEngine(
            source, target,
            batch_size=batch_size or self.settings.batch_size,
            retry_policy=self.retry_policy,
            fallback=RowLevelFallback(target, self.rejects),
            progress_interval=self.settings.progress_interval,
            stop_event=self.stop_event,
        )

    def build_verifier(self) -> DataVerifier:
        return DataVerifier(self.source, self.target, checksum_mode=self.settings.checksum_mode,
                            checksum_window=self.settings.batch_size, stop_event=self.stop_event)

    def _select_tables(self, db: MirrorDatabase, names: Optional[List[str]]) -> List[TableIdentity]:
        available = execute_with_retry(db.list_tables, self.retry_policy, description=f"List {db.label} tables")
        if not names:
            return available
        wanted = [TableIdentity.parse(n) for n in names]
        unknown = [t for t in wanted if t not in available]
        if unknown:
            raise MirrorError(f"Tables not found on {db.label}: {', '.join(str(t) for t in unknown)}")
        return wanted

    # ----- Commands -----

    def export(self, path: Optional[str] = None, tables: Optional[List[str]] = None,
               include_schema: bool = True, include_data: bool = True) -> Dict[str, Any]:
        source = self.connect_source()
        exporter = ArchiveExporter(source, path or self.settings.export_path,
                                   batch_size=self.settings.batch_size,
                                   max_rows_per_file=self.settings.max_rows_per_file,
                                   include_schema=include_schema, include_data=include_data,
                                   retry_policy=self.retry_policy, stop_event=self.stop_event,
                                   database=self.config.source.database)
        return exporter.run(self._select_tables(source, tables))

    def import_archive(self, path: Optional[str] = None, drop_existing: Optional[bool] = None,
                       tables: Optional[List[str]] = None) -> TransferSummary:
        archive = ArchiveSource(path or self.settings.export_path)
        target = self.connect_target()
        selected = self._select_tables(archive, tables)
        schemas = [archive.read_table_schema(t) for t in selected]
        order = dependency_order(schemas)
        drop = self.settings.drop_existing if drop_existing is None else drop_existing

        self.prepare_target(target, order, drop)
        summary = self.build_engine(archive, target).transfer_all(order)
        if self.settings.create_foreign_keys:
            self.add_foreign_keys(target, schemas, summary)
        return summary

    def validate_source(self, tables: List[TableIdentity]) -> Dict[str, Any]:
        """Row counts of the source; an empty table list is an error"""
        logger.info("Validating source database...")
        if not tables:
            raise MirrorError("Source database has no tables to copy")
        counts = {}
        for table in tables:
            self._check_stop()
            counts[table.qualified_name] = execute_with_retry(
                lambda: self.source.count_rows(table), self.retry_policy, description=f"Count rows of {table}")
        largest = sorted(counts.items(), key=lambda item: item[1], reverse=True)
        logger.info(f"Found {len(tables)} tables, {sum(counts.values()):,} rows")
        for name, count in largest[:10]:
            logger.info(f"   - {name}: {count:,} rows")
        if len(largest) > 10:
            logger.info(f"   ... and {len(largest) - 10} more tables")
        return {'tables': len(tables), 'total_rows': sum(counts.values()), 'row_counts': counts}

    def backup_target(self) -> Optional[str]:
        """JSON export of the current target before it is overwritten"""
        target = self.connect_target()
        tables = target.list_tables()
        if not tables:
            logger.info("Target has no tables, skipping backup")
            return None
        backup_path = Path(self.settings.export_path) / f"backup_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        logger.info(f"Backing up target to {backup_path}")
        ArchiveExporter(target, str(backup_path), batch_size=self.settings.batch_size,
                        max_rows_per_file=self.settings.max_rows_per_file,
                        retry_policy=self.retry_policy, stop_event=self.stop_event).run(tables)
        return str(backup_path)

    def prepare_target(self, target: MirrorDatabase, order: List[TableIdentity], drop_existing: bool):
        """Drop or empty the target tables that are about to be loaded, children first"""
        for table in reversed(order):
            self._check_stop()
            if not target.table_exists(table):
                continue
            if drop_existing:
                execute_with_retry(lambda: target.drop_table(table), self.retry_policy,
                                   description=f"Drop table {table}")
                logger.info(f"Dropped existing table {table}")
            elif target.count_rows(table) > 0:
                deleted = execute_with_retry(lambda: target.clear_table(table), self.retry_policy,
                                             description=f"Clear table {table}")
                logger.warning(f"Replacing {deleted} existing rows in {table}")

    def add_foreign_keys(self, target: MirrorDatabase, schemas, summary: TransferSummary):
        created = {r.table for r in summary.results if r.created}
        for schema in schemas:
            if schema.table not in created or not schema.foreign_keys:
                continue
            try:
                execute_with_retry(lambda: target.add_foreign_keys(schema.table, schema.foreign_keys),
                                   self.retry_policy, description=f"Add foreign keys to {schema.table}")
                logger.info(f"Added {len(schema.foreign_keys)} foreign key columns to {schema.table}")
            except Exception as e:
                if is_fatal(e):
                    raise
                logger.error(f"Error adding foreign keys to {schema.table}: {e}")

    def migrate(self, tables: Optional[List[str]] = None, drop_existing: Optional[bool] = None,
                create_backup: Optional[bool] = None, validate: Optional[bool] = None) -> Dict[str, Any]:
        """Full copy: tables, data, keys, functions, views, then optional validation"""
        started = time.time()
        drop = self.settings.drop_existing if drop_existing is None else drop_existing
        backup = self.settings.create_backup if create_backup is None else create_backup
        run_validation = self.settings.validate_data if validate is None else validate

        source = self.connect_source()
        target = self.connect_target()
        report: Dict[str, Any] = {
            'started_at': datetime.now().isoformat(),
            'config': self.config.get_safe_dict(),
        }

        selected = self._select_tables(source, tables)
        report['source'] = self.validate_source(selected)
        if backup:
            report['backup_path'] = self.backup_target()

        schemas = [execute_with_retry(lambda: source.read_table_schema(t), self.retry_policy,
                                      description=f"Read schema of {t}") for t in selected]
        order = dependency_order(schemas)
        self.prepare_target(target, order, drop)

        engine = self.build_engine(source, target)
        summary = engine.transfer_all(order)
        report['transfer'] = summary.to_dict()
        if self.settings.create_foreign_keys:
            self.add_foreign_keys(target, schemas, summary)

        if self.settings.copy_routines:
            functions = engine.transfer_routines('FUNCTION')
            views = engine.transfer_routines('VIEW')
            report['routines'] = {
                'functions': {'copied': functions.copied, 'failed': functions.failed},
                'views': {'copied': views.copied, 'failed': views.failed},
            }

        success = not summary.failed_tables
        if run_validation:
            verification = self.build_verifier().verify_databases()
            report['validation'] = verification.to_dict()
            success = success and verification.success

        report['success'] = success
        report['elapsed_seconds'] = round(time.time() - started, 3)
        report['completed_at'] = datetime.now().isoformat()
        report['report_path'] = self.write_report('migration_report', report)
        logger.info(f"Migration {'completed' if success else 'finished with errors'} in "
                    f"{report['elapsed_seconds'] / 60:.1f} minutes")
        return report

    def verify(self) -> VerificationReport:
        self.connect_source()
        self.connect_target()
        return self.build_verifier().verify_databases()

    def fix(self) -> RepairReport:
        source = self.connect_source()
        target = self.connect_target()
        orchestrator = RepairOrchestrator(
            source, target,
            verifier=self.build_verifier(),
            engine=self.build_engine(source, target, batch_size=self.settings.repair_batch_size),
            stop_event=self.stop_event,
        )
        report = orchestrator.run()
        self.write_report('repair_report', report.to_dict())
        return report

    def write_report(self, name: str, payload: Dict[str, Any]) -> str:
        path = Path(self.settings.export_path) / f"{name}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, default=str)
        logger.info(f"Report written to {path}")
        return str(path)


class SignalState:
    """Turns SIGINT/SIGTERM into a stop request; a second signal aborts immediately"""

    def __init__(self, stop_event: threading.Event):
        self.stop_event = stop_event
        self.signum: Optional[int] = None

    def handle(self, signum, frame):
        if self.stop_event.is_set():
            raise KeyboardInterrupt()
        self.signum = signum
        self.stop_event.set()
        logger.warning(f"Received {signal.Signals(signum).name}, stopping after the current operation")

    def install(self):
        signal.signal(signal.SIGINT, self.handle)
        signal.signal(signal.SIGTERM, self.handle)

    @property
    def exit_code(self) -> int:
        return 128 + (self.signum or signal.SIGINT)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="sqlmirror: SQL Server database copy, verify and repair")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env when present)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--batch-size", type=int, help="Rows per window (overrides BATCH_SIZE)")
    parser.add_argument("--checksum-mode", choices=['server', 'client'], help="Where table checksums are computed")
    parser.add_argument("--rejects", help="Append rows that cannot be inserted to this .sql file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export_parser = subparsers.add_parser("export", help="Export source schema and data to JSON")
    export_parser.add_argument("--path", help="Output directory (default: EXPORT_PATH)")
    export_parser.add_argument("--tables", nargs="+", help="Only these tables (schema.table)")
    export_parser.add_argument("--schema-only", action="store_true", help="Skip row data")
    export_parser.add_argument("--data-only", action="store_true", help="Skip schema.json")

    import_parser = subparsers.add_parser("import", help="Import a JSON export into the target")
    import_parser.add_argument("--path", help="Export directory (default: EXPORT_PATH)")
    import_parser.add_argument("--tables", nargs="+", help="Only these tables (schema.table)")
    import_parser.add_argument("--drop-existing", action="store_true", help="Drop target tables before loading")

    for name, help_text in (("migrate", "Copy source to target"),
                            ("disaster-recovery", "Full replacement of target with backup and validation")):
        migrate_parser = subparsers.add_parser(name, help=help_text)
        migrate_parser.add_argument("--tables", nargs="+", help="Only these tables (schema.table)")
        migrate_parser.add_argument("--drop-existing", action="store_true", help="Drop target tables first")
        migrate_parser.add_argument("--backup", action="store_true", help="Export the target before changing it")
        migrate_parser.add_argument("--no-validate", action="store_true", help="Skip post-copy verification")

    subparsers.add_parser("verify", help="Compare source and target")
    subparsers.add_parser("fix", help="Repair tables that differ")
    return parser


def run_command(args, mirror: DatabaseMirror) -> int:
    command = args.command
    if command == "export":
        result = mirror.export(args.path, args.tables, include_schema=not args.data_only,
                               include_data=not args.schema_only)
        return EXIT_OK if not result['errors'] else EXIT_FAILURE

    if command == "import":
        summary = mirror.import_archive(args.path, drop_existing=args.drop_existing or None, tables=args.tables)
        return EXIT_OK if summary.success else EXIT_FAILURE

    if command in ("migrate", "disaster-recovery"):
        recovery = command == "disaster-recovery"
        report = mirror.migrate(
            tables=args.tables,
            drop_existing=True if (recovery or args.drop_existing) else None,
            create_backup=True if (recovery or args.backup) else None,
            validate=False if args.no_validate else (True if recovery else None),
        )
        return EXIT_OK if report['success'] else EXIT_FAILURE

    if command == "verify":
        report = mirror.verify()
        mirror.write_report('verification_report', report.to_dict())
        return EXIT_OK if report.success else EXIT_FAILURE

    if command == "fix":
        return EXIT_OK if mirror.fix().success else EXIT_FAILURE

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None, connector: Callable[..., MirrorDatabase] = connect_database) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.env_file)
    except MirrorError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error(f"Configuration error: {e}")
        return EXIT_FAILURE

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if args.batch_size:
        config.transfer.batch_size = args.batch_size
        config.transfer.repair_batch_size = args.batch_size
    if args.checksum_mode:
        config.transfer.checksum_mode = args.checksum_mode
    if args.rejects:
        config.transfer.rejects_path = args.rejects

    try:
        config.validate(require_source=args.command != "import", require_target=args.command != "export")
    except MirrorError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FAILURE

    stop_event = threading.Event()
    signals = SignalState(stop_event)
    signals.install()

    mirror = DatabaseMirror(config, stop_event=stop_event, connector=connector)
    try:
        return run_command(args, mirror)
    except OperationCancelled:
        logger.warning("Stopped before completion; batches already committed are kept")
        return signals.exit_code
    except MirrorError as e:
        logger.error(f"Fatal error: {e}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Aborted")
        return signals.exit_code
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_FAILURE
    finally:
        mirror.close()


if __name__ == "__main__":
    sys.exit(main())
