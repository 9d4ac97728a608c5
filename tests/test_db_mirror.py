#!/usr/bin/env python3
"""
End-to-end tests of the sqlmirror command line with in-memory databases.
"""

import json
import signal
import threading
from unittest.mock import patch

import pytest

from config.secure_config import MirrorConfig
from core.errors import OperationCancelled
from core.schema import ForeignKeyRef, RoutineDefinition, TableIdentity
from fakes import InMemoryDatabase, column
from tools.db_mirror import DatabaseMirror, SignalState, build_parser, main

CUSTOMERS = TableIdentity('dbo', 'Customers')
ORDERS = TableIdentity('dbo', 'Orders')

ENV_KEYS = ('SOURCE_DB_SERVER', 'SOURCE_DB_NAME', 'SOURCE_DB_USER', 'SOURCE_DB_PASSWORD',
            'TARGET_DB_SERVER', 'TARGET_DB_NAME', 'TARGET_DB_USER', 'TARGET_DB_PASSWORD',
            'EXPORT_PATH', 'BATCH_SIZE', 'DROP_EXISTING', 'CREATE_BACKUP', 'VALIDATE_DATA', 'MIRROR_SCHEMAS')


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(SignalState, 'install', lambda self: None)


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / 'mirror.env'
    path.write_text(
        "SOURCE_DB_SERVER=sql01\nSOURCE_DB_NAME=Sales\nSOURCE_DB_USER=reader\nSOURCE_DB_PASSWORD=pw1\n"
        "TARGET_DB_SERVER=sql02\nTARGET_DB_NAME=Sales\nTARGET_DB_USER=writer\nTARGET_DB_PASSWORD=pw2\n"
        f"EXPORT_PATH={tmp_path / 'exports'}\nBATCH_SIZE=4\n",
        encoding='utf-8')
    return str(path)


@pytest.fixture
def databases():
    source = InMemoryDatabase('source')
    source.add_table(CUSTOMERS, [column('id', 'int', nullable=False), column('name', 'nvarchar', length=50)],
                     [{'id': i, 'name': f'c{i}'} for i in range(1, 11)], primary_key=['id'])
    source.add_table(ORDERS, [column('id', 'int', nullable=False), column('customer_id', 'int')],
                     [{'id': i, 'customer_id': i % 10 + 1} for i in range(1, 6)], primary_key=['id'],
                     foreign_keys=[ForeignKeyRef('FK_Orders_Customers', 'customer_id', CUSTOMERS, 'id')])
    source.views = [RoutineDefinition('dbo', 'v_Customers', 'VIEW', 'CREATE VIEW dbo.v_Customers AS SELECT 1 AS x')]
    return {'source': source, 'target': InMemoryDatabase('target')}


def connector_for(databases):
    def connect(settings, label, schemas=None):
        return databases[label]
    return connect


def test_parser():
    args = build_parser().parse_args(['--batch-size', '500', 'migrate', '--tables', 'dbo.Customers',
                                      '--drop-existing'])
    assert args.command == 'migrate'
    assert args.batch_size == 500
    assert args.tables == ['dbo.Customers']
    assert args.drop_existing
    with pytest.raises(SystemExit):
        build_parser().parse_args(['teleport'])


def test_migrate_copies_everything(env_file, databases, tmp_path):
    code = main(['--env-file', env_file, 'migrate'], connector=connector_for(databases))

    target = databases['target']
    assert code == 0
    assert target.rows[CUSTOMERS] == databases['source'].rows[CUSTOMERS]
    assert len(target.rows[ORDERS]) == 5
    assert 'dbo.v_Customers' in target.routines
    assert ('add_foreign_keys', ORDERS) in target.calls
    creates = [c[1] for c in target.calls if c[0] == 'create_table']
    assert creates == [CUSTOMERS, ORDERS]
    assert target.closed and databases['source'].closed

    report = json.loads((tmp_path / 'exports' / 'migration_report.json').read_text(encoding='utf-8'))
    assert report['success']
    assert report['validation']['summary']['matched'] == 2
    assert 'pw1' not in json.dumps(report)


def test_migrate_replaces_existing_rows(env_file, databases):
    target = databases['target']
    target.add_table(CUSTOMERS, [column('id', 'int', nullable=False), column('name', 'nvarchar', length=50)],
                     [{'id': 99, 'name': 'stale'}])

    assert main(['--env-file', env_file, 'migrate', '--no-validate'], connector=connector_for(databases)) == 0
    assert [r['id'] for r in target.rows[CUSTOMERS]] == list(range(1, 11))
    assert ('clear_table', CUSTOMERS) in target.calls


def test_drop_existing_drops_children_first(env_file, databases):
    target = databases['target']
    for table in (CUSTOMERS, ORDERS):
        target.add_table(table, [column('id', 'int')])

    main(['--env-file', env_file, 'migrate', '--drop-existing'], connector=connector_for(databases))

    drops = [c[1] for c in target.calls if c[0] == 'drop_table']
    assert drops == [ORDERS, CUSTOMERS]


def test_verify_exit_codes(env_file, databases):
    connector = connector_for(databases)
    assert main(['--env-file', env_file, 'verify'], connector=connector) == 1

    main(['--env-file', env_file, 'migrate', '--no-validate'], connector=connector)
    assert main(['--env-file', env_file, 'verify'], connector=connector) == 0


def test_fix_repairs_divergent_table(env_file, databases, tmp_path):
    connector = connector_for(databases)
    main(['--env-file', env_file, 'migrate', '--no-validate'], connector=connector)
    databases['target'].rows[CUSTOMERS].pop()

    assert main(['--env-file', env_file, 'fix'], connector=connector) == 0
    assert len(databases['target'].rows[CUSTOMERS]) == 10
    report = json.loads((tmp_path / 'exports' / 'repair_report.json').read_text(encoding='utf-8'))
    assert report['total'] == 1
    assert report['fixed'] == 1


def test_export_then_import(env_file, databases, tmp_path):
    connector = connector_for(databases)
    archive = str(tmp_path / 'archive')

    assert main(['--env-file', env_file, 'export', '--path', archive], connector=connector) == 0
    assert main(['--env-file', env_file, 'import', '--path', archive], connector=connector) == 0

    target = databases['target']
    assert len(target.rows[CUSTOMERS]) == 10
    assert len(target.rows[ORDERS]) == 5
    assert ('add_foreign_keys', ORDERS) in target.calls


def test_unknown_table_is_an_error(env_file, databases):
    code = main(['--env-file', env_file, 'migrate', '--tables', 'dbo.Nope'], connector=connector_for(databases))
    assert code == 1
    assert databases['target'].calls == []


def test_missing_configuration(tmp_path, databases):
    empty = tmp_path / 'empty.env'
    empty.write_text('', encoding='utf-8')
    assert main(['--env-file', str(empty), 'verify'], connector=connector_for(databases)) == 1


def test_missing_env_file(tmp_path, databases):
    assert main(['--env-file', str(tmp_path / 'absent.env'), 'verify'], connector=connector_for(databases)) == 1


def test_cancelled_run_exits_with_signal_code(env_file, databases):
    with patch.object(DatabaseMirror, 'migrate', side_effect=OperationCancelled()):
        code = main(['--env-file', env_file, 'migrate'], connector=connector_for(databases))
    assert code == 128 + signal.SIGINT


def test_stop_request_halts_migration(databases):
    config = MirrorConfig.from_env({
        'SOURCE_DB_SERVER': 'sql01', 'SOURCE_DB_NAME': 'Sales', 'SOURCE_DB_USER': 'r', 'SOURCE_DB_PASSWORD': 'p',
        'TARGET_DB_SERVER': 'sql02', 'TARGET_DB_NAME': 'Sales', 'TARGET_DB_USER': 'w', 'TARGET_DB_PASSWORD': 'p',
    })
    stop = threading.Event()
    stop.set()
    mirror = DatabaseMirror(config, stop_event=stop, connector=connector_for(databases))

    with pytest.raises(OperationCancelled):
        mirror.migrate()
    assert databases['target'].calls == []


def test_signal_state():
    stop = threading.Event()
    state = SignalState(stop)

    state.handle(signal.SIGTERM, None)

    assert stop.is_set()
    assert state.exit_code == 128 + signal.SIGTERM
    with pytest.raises(KeyboardInterrupt):
        state.handle(signal.SIGINT, None)
