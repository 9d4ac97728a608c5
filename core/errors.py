#!/usr/bin/env python3
"""
sqlmirror Error Hierarchy
Canonical exception classes for the copy, verify and repair engine.
"""

from enum import Enum
from typing import Optional

class ErrorCode(Enum):
    UNKNOWN = "UNKNOWN_ERROR"
    CONFIGURATION = "CONFIGURATION_ERROR"
    CONNECTIVITY = "CONNECTIVITY_ERROR"
    STATEMENT = "STATEMENT_ERROR"
    IDENTIFIER = "IDENTIFIER_ERROR"
    TRANSFER = "TRANSFER_ERROR"
    ARCHIVE = "ARCHIVE_ERROR"
    CANCELLED = "CANCELLED"

class MirrorError(Exception):
    """Base class for all sqlmirror exceptions"""
    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN, details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

class ConfigurationError(MirrorError):
    """Raised when required settings are missing or inconsistent"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.CONFIGURATION, details)

class ConnectivityError(MirrorError):
    """Raised when a server cannot be reached or refuses the login"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.CONNECTIVITY, details)

class StatementError(MirrorError):
    """Raised when a SQL statement fails on an open connection.

    ``transient`` marks failures worth retrying (deadlocks, lock timeouts,
    dropped sessions); ``number`` is the server error number when known.
    """
    def __init__(self, message: str, transient: bool = False, number: Optional[int] = None,
                 details: dict = None):
        details = dict(details or {})
        details.update({'transient': transient, 'number': number})
        super().__init__(message, ErrorCode.STATEMENT, details)
        self.transient = transient
        self.number = number

class IdentifierError(MirrorError):
    """Raised when a catalog name fails identifier validation"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.IDENTIFIER, details)

class TransferError(MirrorError):
    """Raised when one table's transfer cannot continue"""
    def __init__(self, message: str, table: str = None, operation: str = None, details: dict = None):
        details = dict(details or {})
        details.update({'table': table, 'operation': operation})
        super().__init__(message, ErrorCode.TRANSFER, details)
        self.table = table
        self.operation = operation

class ArchiveError(MirrorError):
    """Raised when an export or import directory is unreadable or malformed"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.ARCHIVE, details)

class OperationCancelled(MirrorError):
    """Raised when an interrupt signal asked the run to stop"""
    def __init__(self, message: str = "Operation cancelled by signal", details: dict = None):
        super().__init__(message, ErrorCode.CANCELLED, details)


def is_fatal(error: BaseException) -> bool:
    """Errors that must reach the top level instead of being isolated per table."""
    return isinstance(error, (ConnectivityError, ConfigurationError, OperationCancelled))
