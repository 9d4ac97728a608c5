#!/usr/bin/env python3
"""
sqlmirror Test Configuration - PyTest Configuration and Fixtures

Puts the project root and the tests directory on sys.path and provides
in-memory source/target databases.
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.schema import TableIdentity
from fakes import InMemoryDatabase, column


@pytest.fixture
def source():
    return InMemoryDatabase('source')


@pytest.fixture
def target():
    return InMemoryDatabase('target')


@pytest.fixture
def customers_table():
    return TableIdentity('dbo', 'Customers')


@pytest.fixture
def customer_columns():
    return [
        column('id', 'int', nullable=False),
        column('name', 'varchar', length=50),
        column('created', 'datetime'),
    ]


def no_sleep(seconds):
    """Replacement for time.sleep in retrying components"""
    return None
