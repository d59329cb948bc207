"""Compares an export's metadata with the database it is imported into."""

from typing import Dict, Optional

from loguru import logger

from ..config import ImportOptions
from ..utils.exceptions import (
    MissingTableError,
    NameMismatchError,
    PrimaryKeyMismatchError,
    VersionMismatchError,
)
from .engine import Database, Table
from .stream import DatabaseExport


class SchemaReconciler:
    """Enforces the strictness options against the target database.

    Database-wide checks run once through :meth:`check_database`; table
    checks run the first time a table is touched and are memoized.
    """

    def __init__(self, db: Database, db_export: DatabaseExport, options: ImportOptions):
        self.db = db
        self.db_export = db_export
        self.options = options
        self._resolved: Dict[str, Optional[Table]] = {}

    def check_database(self) -> None:
        if self.db.name != self.db_export.database_name:
            if not self.options.accept_name_diff:
                raise NameMismatchError(
                    f"Name differs. Current database name is {self.db.name} "
                    f"but export is {self.db_export.database_name}",
                    context={"current": self.db.name, "export": self.db_export.database_name},
                )
            logger.warning(
                f"Importing export of {self.db_export.database_name} into {self.db.name}"
            )

        if self.db.verno != self.db_export.database_version:
            if not self.options.accept_version_diff:
                raise VersionMismatchError(
                    f"Database version differs. Current database is in version {self.db.verno} "
                    f"but export is {self.db_export.database_version}",
                    context={"current": self.db.verno, "export": self.db_export.database_version},
                )
            logger.warning(
                f"Importing version {self.db_export.database_version} export "
                f"into version {self.db.verno} database"
            )

    def resolve(self, table_name: str) -> Optional[Table]:
        """Target table for ``table_name``, or None when its rows are to be skipped."""
        if table_name in self._resolved:
            return self._resolved[table_name]

        table = self.db.get_table(table_name)
        if table is None:
            if not self.options.accept_missing_tables:
                raise MissingTableError(
                    f"Exported table {table_name} is missing in installed database",
                    context={"table": table_name},
                )
            logger.warning(f"Skipping exported table {table_name}: not in database {self.db.name}")
        else:
            self._check_primary_key(table)

        self._resolved[table_name] = table
        return table

    def _check_primary_key(self, table: Table) -> None:
        info = self.db_export.schema_for(table.name)
        if info is None:
            # Not in the manifest: nothing to compare against
            return
        target = table.schema.primary_key.src
        if info.primary_key != target:
            if not self.options.accept_changed_primary_key:
                raise PrimaryKeyMismatchError(
                    f"Primary key differs for table {table.name}. "
                    f"Export has {info.primary_key!r}, database has {target!r}",
                    context={"table": table.name, "export": info.primary_key, "current": target},
                )
            logger.warning(
                f"Primary key of {table.name} changed from {info.primary_key!r} to {target!r}"
            )
