"""
Database layer: storage engine, export stream, row codec and the importer
"""

from .engine import Database, IndexSpec, Table, TableSchema
from .export_import import ImportManager, extract_db_schema, import_db, import_into
from .progress import ImportProgress, ProgressTracker
from .schema import SchemaReconciler
from .stream import (
    FORMAT_NAMES,
    MAX_FORMAT_VERSION,
    DatabaseExport,
    ExportEnvelope,
    ExportStream,
    TableExport,
    TableSchemaInfo,
    load_until_header,
    peek,
)

__all__ = [
    "Database",
    "IndexSpec",
    "Table",
    "TableSchema",
    "ImportManager",
    "extract_db_schema",
    "import_db",
    "import_into",
    "ImportProgress",
    "ProgressTracker",
    "SchemaReconciler",
    "FORMAT_NAMES",
    "MAX_FORMAT_VERSION",
    "DatabaseExport",
    "ExportEnvelope",
    "ExportStream",
    "TableExport",
    "TableSchemaInfo",
    "load_until_header",
    "peek",
]
