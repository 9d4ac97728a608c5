#!/usr/bin/env python3
"""
sqlmirror Core Package
Transfer, verification and repair engine for SQL Server database copies.
"""

from core.errors import MirrorError, ErrorCode
from core.schema import TableIdentity, ColumnDescriptor, TableSchema, ForeignKeyRef, RoutineDefinition
from core.retry import RetryPolicy, execute_with_retry
from core.transfer import BatchTransferEngine, TableTransferResult
from core.verifier import DataVerifier, VerificationResult, IssueType, VerificationStatus, compare_columns
from core.repair import RepairOrchestrator, RepairReport

__version__ = "0.1.0"

__all__ = [
    'MirrorError', 'ErrorCode',
    'TableIdentity', 'ColumnDescriptor', 'TableSchema', 'ForeignKeyRef', 'RoutineDefinition',
    'RetryPolicy', 'execute_with_retry',
    'BatchTransferEngine', 'TableTransferResult',
    'DataVerifier', 'VerificationResult', 'IssueType', 'VerificationStatus', 'compare_columns',
    'RepairOrchestrator', 'RepairReport',
]
