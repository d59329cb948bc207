"""
dbsnap - streaming import of database snapshots

Restores dexie-like JSON exports into an embedded SQLAlchemy-backed object
store one chunk at a time, inside a single transaction by default.
"""

__version__ = "0.3.0"

from .config import ImportOptions
from .database import (
    Database,
    ExportStream,
    ImportProgress,
    Table,
    extract_db_schema,
    import_db,
    import_into,
    peek,
)
from .utils import (
    AbortedError,
    ConfigurationError,
    DbsnapError,
    FormatError,
    MalformedExportError,
    MissingTableError,
    NameMismatchError,
    PrimaryKeyMismatchError,
    TruncatedExportError,
    UnsupportedVersionError,
    VersionMismatchError,
    setup_logging,
)

__all__ = [
    "__version__",
    "ImportOptions",
    "Database",
    "ExportStream",
    "ImportProgress",
    "Table",
    "extract_db_schema",
    "import_db",
    "import_into",
    "peek",
    "AbortedError",
    "ConfigurationError",
    "DbsnapError",
    "FormatError",
    "MalformedExportError",
    "MissingTableError",
    "NameMismatchError",
    "PrimaryKeyMismatchError",
    "TruncatedExportError",
    "UnsupportedVersionError",
    "VersionMismatchError",
    "setup_logging",
]
