"""
Exception hierarchy for dbsnap.

Every error raised by an import is fatal to that call. Nothing is retried
internally; callers retry by re-running the whole import.
"""

from typing import Any, Dict, Optional


class DbsnapError(Exception):
    """Base exception for all dbsnap errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        return self.message


# Export stream errors


class ExportFormatError(DbsnapError):
    """Base for problems with the export artifact itself"""


class FormatError(ExportFormatError):
    """The input is not an export in a supported format"""


class UnsupportedVersionError(ExportFormatError):
    """The export format version is newer than this library understands"""


class MalformedExportError(ExportFormatError):
    """The export is missing required fields or is not valid JSON"""


class TruncatedExportError(MalformedExportError):
    """The input ended before every table's rows were delivered"""


# Schema reconciliation errors


class SchemaMismatchError(DbsnapError):
    """Base for differences between the export and the target database"""


class NameMismatchError(SchemaMismatchError):
    pass


class VersionMismatchError(SchemaMismatchError):
    pass


class MissingTableError(SchemaMismatchError):
    pass


class PrimaryKeyMismatchError(SchemaMismatchError):
    pass


class ConfigurationError(DbsnapError):
    """Invalid import options"""


class AbortedError(DbsnapError):
    """The progress callback requested the import to stop"""

    def __init__(self, message: str = "Operation aborted", **kwargs: Any):
        super().__init__(message, **kwargs)


# Storage engine errors


class DatabaseError(DbsnapError):
    """Base for storage engine failures"""


class InvalidTableError(DatabaseError):
    """A table is not declared in the database, or not part of the transaction"""


class ConstraintError(DatabaseError):
    """A write violated a key constraint (duplicate key on add)"""


class DataError(DatabaseError):
    """A value or key cannot be stored"""


class CodecError(DbsnapError):
    """A transport-encoded value could not be encoded or revived"""


__all__ = [
    "DbsnapError",
    "ExportFormatError",
    "FormatError",
    "UnsupportedVersionError",
    "MalformedExportError",
    "TruncatedExportError",
    "SchemaMismatchError",
    "NameMismatchError",
    "VersionMismatchError",
    "MissingTableError",
    "PrimaryKeyMismatchError",
    "AbortedError",
    "ConfigurationError",
    "DatabaseError",
    "InvalidTableError",
    "ConstraintError",
    "DataError",
    "CodecError",
]
