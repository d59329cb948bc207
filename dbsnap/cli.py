"""
dbsnap CLI - command-line interface for the dbsnap package

Provides commands for importing exports, inspecting export headers and
version checking.
"""

import argparse
import sys
from typing import Optional

from dotenv import load_dotenv

from .config import ImportOptions
from .database import Database, ImportProgress, import_db, import_into, load_until_header
from .database.stream import DEFAULT_CHUNK_SIZE, peek
from .utils.exceptions import DbsnapError
from .utils.logging import setup_logging


def get_version() -> str:
    """Get the dbsnap package version."""
    try:
        from importlib.metadata import version

        return version("dbsnap")
    except Exception:
        # Fallback to __init__.py version if metadata not available
        from dbsnap import __version__

        return __version__


def _source(path: str):
    return sys.stdin.buffer if path == "-" else path


def _print_progress(progress: ImportProgress) -> bool:
    if progress.done:
        print(
            f"  {progress.completed_tables}/{progress.total_tables} tables, "
            f"{progress.completed_rows} rows - done",
            file=sys.stderr,
        )
    elif progress.percent is not None:
        print(
            f"  {progress.percent:5.1f}% ({progress.completed_rows}/{progress.total_rows} rows)",
            file=sys.stderr,
        )
    return False


def build_options(args: argparse.Namespace) -> ImportOptions:
    """ImportOptions from DBSNAP_* variables, overridden by command-line flags."""
    overrides = {}
    for flag in (
        "no_transaction",
        "accept_missing_tables",
        "accept_version_diff",
        "accept_name_diff",
        "accept_changed_primary_key",
        "overwrite_values",
        "clear_tables_before_import",
    ):
        if getattr(args, flag, False):
            overrides[flag] = True
    if getattr(args, "chunk_kb", None):
        overrides["num_kilobytes_per_chunk"] = args.chunk_kb
    if getattr(args, "progress", False):
        overrides["progress_callback"] = _print_progress
    return ImportOptions.from_env(**overrides)


def cmd_version(args: argparse.Namespace) -> int:
    """Handle --version command."""
    print(f"dbsnap version {get_version()}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """
    Handle import command - imports an export file into a database.

    Returns:
        0 on success, 1 on failure
    """
    try:
        options = build_options(args)
        if args.as_new:
            db = import_db(_source(args.export), options, url=args.url)
        else:
            stream = load_until_header(_source(args.export), options.chunk_size)
            try:
                name = args.name or stream.result.data.database_name
                db = Database(name, args.url).open()
                try:
                    import_into(db, stream, options)
                except (DbsnapError, OSError):
                    db.close()
                    raise
            finally:
                stream.close()
    except (DbsnapError, OSError) as e:
        print(f"✗ Import failed: {e}")
        return 1

    tables = ", ".join(f"{table.name} ({table.count()})" for table in db.tables)
    print(f"✓ Imported into {db.name} v{db.verno}: {tables or 'no tables'}")
    db.close()
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """
    Handle inspect command - prints the header of an export file.

    Returns:
        0 if the export header is valid, 1 otherwise
    """
    try:
        envelope = peek(_source(args.export), DEFAULT_CHUNK_SIZE)
    except (DbsnapError, OSError) as e:
        print(f"✗ Invalid export: {e}")
        return 1

    db_export = envelope.data
    print(f"Format:   {envelope.format_name} v{envelope.format_version}")
    print(f"Database: {db_export.database_name} v{db_export.database_version}")
    print(f"Tables:   {len(db_export.tables)} ({db_export.total_rows} rows)")
    for table in db_export.tables:
        print(f"  {table.name:<24} {table.row_count:>10}  {table.schema}")
    return 0


def _add_import_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("export", help="Export file, or - to read standard input")
    parser.add_argument(
        "--url",
        default=None,
        help="SQLAlchemy URL of the target database (default: in-memory SQLite)",
    )
    parser.add_argument("--name", default=None, help="Target database name (default: export's)")
    parser.add_argument(
        "--as-new",
        action="store_true",
        help="Create the database from the export's schema instead of using an existing one",
    )
    parser.add_argument("--chunk-kb", type=int, default=None, help="Kilobytes read per chunk")
    parser.add_argument("--progress", action="store_true", help="Print progress to stderr")
    parser.add_argument("--no-transaction", action="store_true", help="Commit each batch separately")
    parser.add_argument("--overwrite-values", action="store_true", help="Replace existing records")
    parser.add_argument(
        "--clear-tables-before-import", action="store_true", help="Empty each table before import"
    )
    parser.add_argument("--accept-missing-tables", action="store_true")
    parser.add_argument("--accept-version-diff", action="store_true")
    parser.add_argument("--accept-name-diff", action="store_true")
    parser.add_argument("--accept-changed-primary-key", action="store_true")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="dbsnap",
        description="dbsnap - streaming import of database snapshots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dbsnap --version                                  Show version information
  dbsnap inspect backup.json                        Show the export's tables
  dbsnap import backup.json --url sqlite:///app.db  Import into an existing database
  dbsnap import backup.json --url sqlite:///new.db --as-new
        """,
    )

    # Version flag (can be used standalone)
    parser.add_argument("--version", action="store_true", help="Show version information")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Log more (-v info, -vv debug)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    import_parser = subparsers.add_parser("import", help="Import an export file into a database")
    _add_import_flags(import_parser)

    inspect_parser = subparsers.add_parser("inspect", help="Show the header of an export file")
    inspect_parser.add_argument("export", help="Export file, or - to read standard input")

    args = parser.parse_args(argv)

    setup_logging(("WARNING", "INFO", "DEBUG")[min(args.verbose, 2)])

    if args.version:
        return cmd_version(args)

    if args.command == "import":
        return cmd_import(args)
    elif args.command == "inspect":
        return cmd_inspect(args)
    else:
        # No command provided, show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
