"""Shared utilities: exceptions and logging setup"""

from .exceptions import (
    AbortedError,
    CodecError,
    ConfigurationError,
    ConstraintError,
    DatabaseError,
    DataError,
    DbsnapError,
    ExportFormatError,
    FormatError,
    InvalidTableError,
    MalformedExportError,
    MissingTableError,
    NameMismatchError,
    PrimaryKeyMismatchError,
    SchemaMismatchError,
    TruncatedExportError,
    UnsupportedVersionError,
    VersionMismatchError,
)
from .logging import setup_logging

__all__ = [
    "AbortedError",
    "CodecError",
    "ConfigurationError",
    "ConstraintError",
    "DatabaseError",
    "DataError",
    "DbsnapError",
    "ExportFormatError",
    "FormatError",
    "InvalidTableError",
    "MalformedExportError",
    "MissingTableError",
    "NameMismatchError",
    "PrimaryKeyMismatchError",
    "SchemaMismatchError",
    "TruncatedExportError",
    "UnsupportedVersionError",
    "VersionMismatchError",
    "setup_logging",
]
