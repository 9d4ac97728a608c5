from datetime import date, datetime, time
from decimal import Decimal

from core.checksum import ChecksumAccumulator, canonical_value, row_digest
from fakes import column

COLUMNS = [column('id', 'int'), column('name', 'nvarchar', length=50), column('created', 'datetime')]


def _rows(n):
    return [{'id': i, 'name': f'customer {i}', 'created': datetime(2024, 1, 1, 12, 0, i % 60)} for i in range(n)]


def test_canonical_values():
    assert canonical_value(column('x', 'int'), None) == 'NULL'
    assert canonical_value(column('x', 'datetime'), datetime(2024, 1, 2, 3, 4, 5, 678901)) == '2024-01-02 03:04:05.678'
    assert canonical_value(column('x', 'bit'), True) == '1'
    assert canonical_value(column('x', 'bit'), False) == '0'
    assert canonical_value(column('x', 'varbinary'), b'\x01\xab') == '0x01AB'
    assert canonical_value(column('x', 'decimal'), Decimal('1.50')) == '1.50'
    assert canonical_value(column('x', 'date'), date(2024, 2, 29)) == '2024-02-29'
    assert canonical_value(column('x', 'time'), time(8, 30)) == '08:30:00'
    assert canonical_value(column('x', 'nvarchar'), 'abc') == 'abc'


def test_checksum_ignores_row_order():
    rows = _rows(50)
    forward = ChecksumAccumulator(COLUMNS)
    forward.add_all(rows)
    backward = ChecksumAccumulator(COLUMNS)
    backward.add_all(reversed(rows))
    assert forward.result() == backward.result()
    assert forward.result().row_count == 50


def test_checksum_detects_changed_value():
    rows = _rows(10)
    original = ChecksumAccumulator(COLUMNS)
    original.add_all(rows)
    rows[3] = dict(rows[3], name='someone else')
    changed = ChecksumAccumulator(COLUMNS)
    changed.add_all(rows)
    assert original.result().checksum != changed.result().checksum


def test_null_differs_from_empty_string():
    cols = [column('name', 'nvarchar')]
    assert row_digest(cols, {'name': None}) != row_digest(cols, {'name': ''})


def test_empty_table_has_no_checksum():
    result = ChecksumAccumulator(COLUMNS).result()
    assert result.checksum is None
    assert result.row_count == 0


def test_rowversion_columns_are_not_hashed():
    cols = [column('id', 'int'), column('version', 'rowversion')]
    a = ChecksumAccumulator(cols)
    a.add({'id': 1, 'version': b'\x00\x00\x00\x01'})
    b = ChecksumAccumulator(cols)
    b.add({'id': 1, 'version': b'\x00\x00\x00\x09'})
    assert a.result() == b.result()
    assert [c.name for c in a.columns] == ['id']
