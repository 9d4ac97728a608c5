#!/usr/bin/env python3
"""
Structural and data verification tests.
"""

import threading
from unittest.mock import MagicMock

import pytest

from core.errors import OperationCancelled, StatementError
from core.schema import ColumnDescriptor, TableIdentity
from core.verifier import DataVerifier, IssueType, VerificationStatus, compare_columns
from fakes import InMemoryDatabase, column

CUSTOMERS = TableIdentity('dbo', 'Customers')


def customer_columns(name_length=50):
    return [column('id', 'int', nullable=False), column('name', 'varchar', length=name_length),
            column('score', 'decimal', precision=10, scale=2)]


def customer_rows(n):
    return [{'id': i, 'name': f'customer {i}', 'score': i * 10} for i in range(1, n + 1)]


def make_pair(source_rows, target_rows, target_columns=None):
    source = InMemoryDatabase('source')
    source.add_table(CUSTOMERS, customer_columns(), source_rows)
    target = InMemoryDatabase('target')
    target.add_table(CUSTOMERS, target_columns or customer_columns(), target_rows)
    return source, target


class TestCompareColumns:

    def test_identical(self):
        assert compare_columns(customer_columns(), customer_columns()) == []

    def test_length_change_is_single_difference(self):
        assert compare_columns(customer_columns(50), customer_columns(100)) == [
            "Length mismatch for name: source 50, target 100"]

    def test_type_names_compare_case_insensitively(self):
        source = [ColumnDescriptor('id', 'INT')]
        target = [ColumnDescriptor('id', 'int')]
        assert compare_columns(source, target) == []

    def test_ordering_of_differences(self):
        source = [column('id', 'int', nullable=False), column('email', 'varchar', length=100),
                  column('created', 'datetime')]
        target = [column('id', 'bigint', nullable=True), column('created', 'datetime'),
                  column('legacy', 'char', length=1), column('extra', 'int')]
        assert compare_columns(source, target) == [
            "Column count mismatch: source 3, target 4",
            "Missing column in target: email",
            "Data type mismatch for id: source int, target bigint",
            "Nullable mismatch for id: source NO, target YES",
            "Extra column in target: legacy",
            "Extra column in target: extra",
        ]

    def test_max_length_and_precision(self):
        source = [column('notes', 'nvarchar', length=-1), column('amount', 'decimal', precision=18, scale=4)]
        target = [column('notes', 'nvarchar', length=4000), column('amount', 'decimal', precision=18, scale=2)]
        assert compare_columns(source, target) == [
            "Length mismatch for notes: source MAX, target 4000",
            "Scale mismatch for amount: source 4, target 2",
        ]


@pytest.mark.parametrize("mode", ['server', 'client'])
def test_reversed_row_order_matches(mode):
    rows = customer_rows(30)
    source, target = make_pair(rows, list(reversed(rows)))

    result = DataVerifier(source, target, checksum_mode=mode, checksum_window=7).verify_table(CUSTOMERS)

    assert result.status == VerificationStatus.MATCH
    assert result.issues == []
    assert result.row_count == 30


def test_missing_row_is_a_row_count_issue():
    rows = customer_rows(100)
    source, target = make_pair(rows, rows[:99])

    result = DataVerifier(source, target).verify_table(CUSTOMERS)

    assert result.status == VerificationStatus.MISMATCH
    assert result.has_issue(IssueType.ROW_COUNT)
    assert result.issues[0].message == "Row count mismatch: source 100, target 99"


def test_changed_value_is_a_checksum_issue():
    rows = customer_rows(20)
    changed = [dict(r) for r in rows]
    changed[5]['name'] = 'renamed'
    source, target = make_pair(rows, changed)

    result = DataVerifier(source, target).verify_table(CUSTOMERS)

    assert [i.type for i in result.issues] == [IssueType.DATA_CHECKSUM]
    assert 'floating-point' not in result.issues[0].message


def test_checksum_issue_names_floating_point_columns():
    source = InMemoryDatabase('source')
    target = InMemoryDatabase('target')
    cols = [column('id', 'int'), column('ratio', 'float')]
    source.add_table(CUSTOMERS, cols, [{'id': 1, 'ratio': 0.1 + 0.2}])
    target.add_table(CUSTOMERS, [column('id', 'int'), column('ratio', 'float')], [{'id': 1, 'ratio': 0.3}])

    result = DataVerifier(source, target).verify_table(CUSTOMERS)

    assert result.status == VerificationStatus.MISMATCH
    assert result.issues[0].type == IssueType.DATA_CHECKSUM
    assert '(floating-point columns: ratio)' in result.issues[0].message


def test_structure_difference_skips_checksum():
    rows = customer_rows(10)
    source, target = make_pair(rows, rows, target_columns=customer_columns(100))
    source.table_checksum = MagicMock()
    target.table_checksum = MagicMock()

    result = DataVerifier(source, target).verify_table(CUSTOMERS)

    assert [i.type for i in result.issues] == [IssueType.STRUCTURE]
    source.table_checksum.assert_not_called()
    target.table_checksum.assert_not_called()


def test_empty_tables_match_without_checksum():
    source, target = make_pair([], [])
    target.table_checksum = MagicMock()
    assert DataVerifier(source, target).verify_table(CUSTOMERS).status == VerificationStatus.MATCH
    target.table_checksum.assert_not_called()


def test_failure_becomes_single_error_issue():
    source, target = make_pair(customer_rows(5), customer_rows(5))
    target.count_rows = MagicMock(side_effect=StatementError("permission denied on object Customers"))

    result = DataVerifier(source, target).verify_table(CUSTOMERS)

    assert result.status == VerificationStatus.ERROR
    assert len(result.issues) == 1
    assert result.issues[0].type == IssueType.ERROR
    assert 'permission denied' in result.issues[0].message


def test_cancellation_is_not_swallowed():
    source, target = make_pair(customer_rows(5), customer_rows(5))
    target.count_rows = MagicMock(side_effect=OperationCancelled())
    with pytest.raises(OperationCancelled):
        DataVerifier(source, target).verify_table(CUSTOMERS)


def test_stop_request_before_next_table():
    source, target = make_pair(customer_rows(5), customer_rows(5))
    stop = threading.Event()
    stop.set()
    with pytest.raises(OperationCancelled):
        DataVerifier(source, target, stop_event=stop).verify_tables([CUSTOMERS])


def test_verify_databases_reports_one_sided_tables():
    source, target = make_pair(customer_rows(3), customer_rows(3))
    orders = TableIdentity('dbo', 'Orders')
    audit = TableIdentity('audit', 'Log')
    source.add_table(orders, [column('id', 'int')], [{'id': 1}])
    target.add_table(audit, [column('id', 'int')])

    report = DataVerifier(source, target).verify_databases()

    assert [r.table for r in report.results] == [CUSTOMERS]
    assert report.matched == 1
    assert report.missing_in_target == [orders]
    assert report.extra_in_target == [audit]
    assert not report.success
    summary = report.to_dict()['summary']
    assert summary['missing_in_target'] == 1
    assert summary['extra_in_target'] == 1


def test_extra_target_tables_do_not_fail_verification():
    source, target = make_pair(customer_rows(3), customer_rows(3))
    target.add_table(TableIdentity('dbo', 'Scratch'), [column('id', 'int')])
    assert DataVerifier(source, target).verify_databases().success


def test_invalid_checksum_mode():
    source, target = make_pair([], [])
    with pytest.raises(ValueError):
        DataVerifier(source, target, checksum_mode='fast')
