"""
Import of database exports.

Restores an export produced by a dexie-like exporter into a
:class:`~dbsnap.database.engine.Database` without loading the whole file:
the export is parsed a chunk at a time and each table's buffered rows are
written and released before more input is read.
"""

from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from ..config import ImportOptions, coerce_options
from ..utils.exceptions import MalformedExportError, TruncatedExportError
from . import tson
from .engine import Database, Table
from .progress import ImportProgress, ProgressTracker
from .schema import SchemaReconciler
from .stream import DatabaseExport, ExportSource, ExportStream, TableExport, load_until_header


def extract_db_schema(db_export: DatabaseExport) -> Dict[str, str]:
    """Table schema strings of an export, as accepted by ``Database.declare``"""
    return {table.name: table.schema for table in db_export.tables or []}


class ImportManager:
    """Runs one import of an export stream into a database.

    The stream must already have its header loaded (see
    ``load_until_header``). Rows are consumed from ``stream`` in place:
    each table's buffer is emptied as soon as it has been written.
    """

    def __init__(self, db: Database, stream: ExportStream, options: ImportOptions):
        self.db = db
        self.stream = stream
        self.options = options
        self.db_export: DatabaseExport = stream.result.data
        self.tracker = ProgressTracker(options.progress_callback)
        self.reconciler = SchemaReconciler(db, self.db_export, options)
        self.skipped_rows = 0
        self.peak_buffered_rows = 0
        self._cleared: set = set()

    @property
    def progress(self) -> ImportProgress:
        return self.tracker.progress

    def run(self) -> ImportProgress:
        """Import every table; returns the final progress."""
        db_export = self.db_export
        self.reconciler.check_database()

        self.tracker.start(
            total_tables=len(db_export.tables),
            total_rows=db_export.total_rows,
        )
        logger.info(
            f"Importing {db_export.database_name} v{db_export.database_version} into "
            f"{self.db.name}: {len(db_export.tables)} tables, {db_export.total_rows} rows"
        )
        self.tracker.notify()

        try:
            if self.options.no_transaction:
                self._import_all()
                self.tracker.finish()
            else:
                with self.db.transaction():
                    self._import_all()
                    # Inside the transaction so an abort here still rolls back
                    self.tracker.finish()
        except Exception as e:
            logger.error(f"Import into {self.db.name} failed: {e}")
            raise

        logger.info(
            f"Imported {self.progress.completed_rows} rows into "
            f"{self.progress.completed_tables} tables of {self.db.name}"
            + (f" ({self.skipped_rows} rows skipped)" if self.skipped_rows else "")
        )
        return self.progress

    def _import_all(self) -> None:
        pending = self.db_export.data
        while True:
            self._import_pass()
            pending.drop_finished()
            if self.stream.done() or self.stream.eof():
                break
            # Pull some more, keeping the transaction open
            self.stream.pull(self.options.chunk_size)

        incomplete = pending.incomplete()
        if incomplete:
            names = ", ".join(str(entry.table_name) for entry in incomplete)
            raise TruncatedExportError(
                f"Export ended before all rows of {names} were read",
                context={"tables": [entry.table_name for entry in incomplete]},
            )

    def _import_pass(self) -> None:
        for table_export in self.db_export.data:
            if not table_export.ready:
                break  # tableName or inbound not parsed yet
            rows = table_export.rows
            if len(rows) == 0:
                if not rows.complete:
                    break  # Need to pull more
                self._finish_table(table_export)
                continue

            self.tracker.notify()
            self._import_batch(table_export)

    def _import_batch(self, table_export: TableExport) -> None:
        table_name = table_export.table_name
        rows = table_export.rows
        batch_size = len(rows)
        self.peak_buffered_rows = max(self.peak_buffered_rows, batch_size)

        table = self.reconciler.resolve(table_name)
        if table is None:
            self.skipped_rows += batch_size
        else:
            self._write(table, table_export)

        self.tracker.add_rows(batch_size)
        if rows.complete:
            self._finish_table(table_export)
        rows.clear()  # Free memory, keep the same buffer for the parser

    def _write(self, table: Table, table_export: TableExport) -> None:
        table_name = table.name
        values, keys = self._revive(table_export)

        if self.options.clear_tables_before_import and table_name not in self._cleared:
            table.clear()
            self._cleared.add(table_name)

        if self.options.overwrite_values:
            table.bulk_put(values, keys)
        else:
            table.bulk_add(values, keys)
        logger.debug(
            f"Wrote {len(values)} of {len(table_export.rows)} buffered rows to {table_name}"
        )

    def _revive(self, table_export: TableExport) -> Tuple[List[Any], Optional[List[Any]]]:
        table_name = table_export.table_name
        row_filter = self.options.filter
        revived = [tson.revive(row) for row in table_export.rows]

        if table_export.inbound:
            if row_filter is not None:
                revived = [value for value in revived if row_filter(table_name, value)]
            return revived, None

        pairs = []
        for row in revived:
            if not isinstance(row, (list, tuple)) or len(row) != 2:
                raise MalformedExportError(
                    f"Expected [key, value] rows for outbound table {table_name}, got {row!r}"
                )
            pairs.append((row[0], row[1]))
        if row_filter is not None:
            pairs = [(key, value) for key, value in pairs if row_filter(table_name, value, key)]
        return [value for _, value in pairs], [key for key, _ in pairs]

    def _finish_table(self, table_export: TableExport) -> None:
        if table_export.finished:
            return
        table_export.finished = True
        self.tracker.complete_table()
        logger.debug(
            f"Finished table {table_export.table_name} "
            f"({table_export.rows.received} rows, peak buffer {table_export.rows.high_water})"
        )


def import_into(db: Database, source: ExportSource, options: Any = None) -> None:
    """Import an export into an existing database.

    Args:
        db: Target database. Its name, version and table primary keys must
            match the export unless the matching ``accept_*`` option is set.
        source: Export bytes, a path, a binary file, an iterable of byte
            chunks or an ``ExportStream``.
        options: ``ImportOptions`` or a mapping of option values.

    Raises:
        DbsnapError: one of the subclasses in ``dbsnap.utils.exceptions``.
            Unless ``no_transaction`` is set, nothing is written on failure.
    """
    options = coerce_options(options)
    stream = load_until_header(source, options.chunk_size)
    try:
        ImportManager(db, stream, options).run()
    finally:
        stream.close()


def import_db(
    source: ExportSource,
    options: Any = None,
    *,
    url: Optional[str] = None,
    engine: Any = None,
) -> Database:
    """Create a database from an export and import its rows.

    The new database takes the export's name, version and table schemas.
    ``url`` (or ``engine``) selects where it is stored; default in memory.
    """
    options = coerce_options(options)
    stream = load_until_header(source, options.chunk_size)
    try:
        db_export = stream.result.data
        db = Database(db_export.database_name, url, engine=engine)
        db.declare(db_export.database_version, extract_db_schema(db_export))
        db.open()
        try:
            import_into(db, stream, options)
        except Exception:
            db.close()
            raise
    finally:
        stream.close()
    return db
