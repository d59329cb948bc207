"""
Incremental reader for export files.

An :class:`ExportStream` feeds bytes from a source into ijson's push parser
one chunk at a time and assembles the export structure as events arrive.
Header fields (format, database name and version, table manifest) are set
once; each table's rows land in a :class:`RowBuffer` that the importer
drains between pulls, so only about one chunk of rows is held in memory.
"""

from __future__ import annotations

import io
import os
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Iterable, Iterator, List, Optional, Union

import ijson
from loguru import logger

from ..utils.exceptions import (
    FormatError,
    MalformedExportError,
    TruncatedExportError,
    UnsupportedVersionError,
)

FORMAT_NAMES = frozenset({"dexie-like", "dexie"})
MAX_FORMAT_VERSION = 1
DEFAULT_CHUNK_SIZE = 512 * 1024

# ijson prefixes of the parts of the export we care about
_TABLE_ITEM = "data.tables.item"
_DATA_ITEM = "data.data.item"
_ROWS = "data.data.item.rows"
_ROW_ITEM = "data.data.item.rows.item"

_SCALAR_EVENTS = ("string", "number", "boolean", "null")


@dataclass(frozen=True)
class TableSchemaInfo:
    """One entry of the export's table manifest"""

    name: str
    schema: str
    row_count: int = 0

    @property
    def primary_key(self) -> str:
        return self.schema.split(",")[0].strip()

    @classmethod
    def from_dict(cls, data: Any) -> "TableSchemaInfo":
        if not isinstance(data, dict) or "name" not in data or "schema" not in data:
            raise MalformedExportError(f"Invalid table entry in export: {data!r}")
        return cls(
            name=data["name"],
            schema=data["schema"],
            row_count=int(data.get("rowCount") or 0),
        )


class RowBuffer:
    """Rows of one table delivered by the parser and not yet written.

    The parser appends; the importer reads and then clears the buffer in
    place. ``complete`` turns true once the table's row array has closed.
    """

    def __init__(self) -> None:
        self._rows: List[Any] = []
        self.complete = False
        self.received = 0
        self.high_water = 0

    def append(self, row: Any) -> None:
        self._rows.append(row)
        self.received += 1
        if len(self._rows) > self.high_water:
            self.high_water = len(self._rows)

    def mark_complete(self) -> None:
        self.complete = True

    def clear(self) -> None:
        del self._rows[:]

    @property
    def drained(self) -> bool:
        """Complete and holding no rows"""
        return self.complete and not self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._rows)

    def __repr__(self) -> str:
        return f"RowBuffer(len={len(self._rows)}, complete={self.complete})"


@dataclass
class TableExport:
    table_name: Optional[str] = None
    # None until the "inbound" key is parsed or the entry closes
    inbound: Optional[bool] = None
    rows: RowBuffer = field(default_factory=RowBuffer)
    # Set by the importer once the table counts as completed
    finished: bool = False

    @property
    def ready(self) -> bool:
        """Whether rows can be written: name and key mode are known."""
        return self.table_name is not None and self.inbound is not None


class PendingTables:
    """Queue of table exports still being received or imported.

    Entries are appended by the parser and released from the front only,
    by advancing a head index rather than shifting the list.
    """

    _COMPACT_THRESHOLD = 64

    def __init__(self) -> None:
        self._entries: List[Optional[TableExport]] = []
        self._head = 0

    def append(self, entry: TableExport) -> None:
        self._entries.append(entry)

    def drop_finished(self) -> int:
        """Release leading entries whose rows are complete and drained."""
        dropped = 0
        while self._head < len(self._entries):
            entry = self._entries[self._head]
            if entry is None or not entry.rows.drained:
                break
            self._entries[self._head] = None
            self._head += 1
            dropped += 1

        if self._head >= self._COMPACT_THRESHOLD and self._head * 2 >= len(self._entries):
            del self._entries[: self._head]
            self._head = 0
        return dropped

    def incomplete(self) -> List[TableExport]:
        return [entry for entry in self if not entry.rows.complete]

    def __iter__(self) -> Iterator[TableExport]:
        for index in range(self._head, len(self._entries)):
            entry = self._entries[index]
            if entry is not None:
                yield entry

    def __len__(self) -> int:
        return len(self._entries) - self._head


@dataclass
class DatabaseExport:
    database_name: Optional[str] = None
    database_version: Optional[Union[int, float]] = None
    tables: Optional[List[TableSchemaInfo]] = None
    data: Optional[PendingTables] = None

    @property
    def total_rows(self) -> int:
        return sum(table.row_count for table in self.tables or [])

    def schema_for(self, table_name: str) -> Optional[TableSchemaInfo]:
        for table in self.tables or []:
            if table.name == table_name:
                return table
        return None


@dataclass
class ExportEnvelope:
    format_name: Optional[str] = None
    format_version: Optional[Union[int, float]] = None
    data: Optional[DatabaseExport] = None


class _ItemCollector:
    """Rebuilds one array item at a time from parser events."""

    def __init__(self, on_item: Callable[[Any], None]):
        self._on_item = on_item
        self._builder: Optional[ijson.ObjectBuilder] = None
        self._depth = 0

    def feed(self, event: str, value: Any) -> None:
        if self._builder is None:
            if event in ("start_map", "start_array"):
                self._builder = ijson.ObjectBuilder()
                self._builder.event(event, value)
                self._depth = 1
            else:
                self._on_item(value)
            return

        self._builder.event(event, value)
        if event in ("start_map", "start_array"):
            self._depth += 1
        elif event in ("end_map", "end_array"):
            self._depth -= 1
        if self._depth == 0:
            item = self._builder.value
            self._builder = None
            self._on_item(item)


class _EnvelopeBuilder:
    """Applies ijson ``(prefix, event, value)`` tuples to an ExportEnvelope."""

    def __init__(self) -> None:
        self.envelope = ExportEnvelope()
        self.finished = False
        self._current: Optional[TableExport] = None
        self._saw_rows = False
        self._tables = _ItemCollector(self._add_table)
        self._rows = _ItemCollector(self._add_row)

    @property
    def _export(self) -> DatabaseExport:
        if self.envelope.data is None:
            raise MalformedExportError("Export field 'data' must be an object")
        return self.envelope.data

    def _add_table(self, item: Any) -> None:
        self._export.tables.append(TableSchemaInfo.from_dict(item))

    def _add_row(self, row: Any) -> None:
        self._current.rows.append(row)

    def handle(self, prefix: str, event: str, value: Any) -> None:
        if prefix == _ROW_ITEM or prefix.startswith(_ROW_ITEM + "."):
            self._rows.feed(event, value)
        elif prefix == _TABLE_ITEM or prefix.startswith(_TABLE_ITEM + "."):
            self._tables.feed(event, value)
        elif prefix == "":
            if event in ("end_map", "end_array") or event in _SCALAR_EVENTS:
                self.finished = True
        elif prefix == "formatName" and event in _SCALAR_EVENTS:
            self.envelope.format_name = value
        elif prefix == "formatVersion" and event in _SCALAR_EVENTS:
            self.envelope.format_version = value
        elif prefix == "data":
            if event == "start_map":
                self.envelope.data = DatabaseExport()
        elif prefix == "data.databaseName" and event in _SCALAR_EVENTS:
            self._export.database_name = value
        elif prefix == "data.databaseVersion" and event in _SCALAR_EVENTS:
            self._export.database_version = value
        elif prefix == "data.tables" and event == "start_array":
            self._export.tables = []
        elif prefix == "data.data" and event == "start_array":
            self._export.data = PendingTables()
        elif prefix == _DATA_ITEM:
            self._handle_table_export(event)
        elif prefix == "data.data.item.tableName" and event == "string":
            self._current.table_name = value
        elif prefix == "data.data.item.inbound" and event in _SCALAR_EVENTS:
            self._current.inbound = bool(value)
        elif prefix == _ROWS:
            if event == "start_array":
                self._saw_rows = True
            elif event == "end_array":
                self._current.rows.mark_complete()

    def _handle_table_export(self, event: str) -> None:
        if event == "start_map":
            self._current = TableExport()
            self._saw_rows = False
            self._export.data.append(self._current)
        elif event == "end_map":
            if self._current.table_name is None:
                raise MalformedExportError("Table export without a tableName in export")
            if self._current.inbound is None:
                self._current.inbound = True
            if not self._saw_rows:
                # A table export without a rows array has nothing to import
                self._current.rows.mark_complete()
            self._current = None


class _ChunkReader:
    """``read(n)`` over an iterable of byte chunks.

    Each read returns what the next available chunk holds, capped at ``n``,
    and only blocks on the iterator when nothing is left over.
    """

    def __init__(self, chunks: Iterable[Union[bytes, str]]):
        self._chunks = iter(chunks)
        self._pending = b""

    def read(self, size: int) -> bytes:
        while not self._pending:
            chunk = next(self._chunks, None)
            if chunk is None:
                return b""
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            self._pending = bytes(chunk)
        data, self._pending = self._pending[:size], self._pending[size:]
        return data


ExportSource = Union["ExportStream", bytes, bytearray, str, os.PathLike, BinaryIO, Iterable[bytes]]


class ExportStream:
    """Live, incrementally parsed view of an export.

    ``pull`` reads at most ``byte_budget`` bytes and parses them, growing
    ``result``. ``done`` is true once the whole JSON document has been
    parsed, ``eof`` once the source is exhausted.
    """

    def __init__(self, reader: Callable[[int], Any], close: Optional[Callable[[], None]] = None):
        self._reader = reader
        self._close = close
        self._events = ijson.sendable_list()
        self._parser = ijson.parse_coro(self._events, use_float=True)
        self._builder = _EnvelopeBuilder()
        self._eof = False
        self.bytes_read = 0

    @classmethod
    def open(cls, source: ExportSource) -> "ExportStream":
        """Wrap bytes, a path, a binary file or an iterable of chunks."""
        if isinstance(source, ExportStream):
            return source
        if isinstance(source, (bytes, bytearray, memoryview)):
            return cls(io.BytesIO(bytes(source)).read)
        if isinstance(source, (str, os.PathLike)):
            handle = open(source, "rb")
            return cls(handle.read, close=handle.close)
        if hasattr(source, "read"):
            return cls(source.read)
        if isinstance(source, Iterable):
            return cls(_ChunkReader(source).read)
        raise TypeError(f"Unsupported export source: {type(source).__name__}")

    @property
    def result(self) -> ExportEnvelope:
        return self._builder.envelope

    def header_ready(self) -> bool:
        """True once the table manifest is parsed and row data has started."""
        data = self.result.data
        return data is not None and data.data is not None

    def done(self) -> bool:
        return self._builder.finished

    def eof(self) -> bool:
        return self._eof

    def pull(self, byte_budget: int) -> int:
        """Read and parse up to ``byte_budget`` bytes. Returns bytes consumed."""
        if self._eof:
            return 0

        chunk = self._reader(byte_budget)
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")

        try:
            if chunk:
                self.bytes_read += len(chunk)
                self._parser.send(chunk)
            else:
                self._eof = True
                self._parser.close()
        except ijson.IncompleteJSONError as exc:
            self._dispatch()
            raise TruncatedExportError(
                f"Export ended unexpectedly after {self.bytes_read} bytes",
                context={"bytes_read": self.bytes_read},
            ) from exc
        except ijson.JSONError as exc:
            raise MalformedExportError(
                f"Invalid JSON in export: {exc}",
                context={"bytes_read": self.bytes_read},
            ) from exc

        self._dispatch()
        logger.debug(f"Pulled {len(chunk)} bytes ({self.bytes_read} total)")
        return len(chunk)

    def _dispatch(self) -> None:
        for prefix, event, value in self._events:
            self._builder.handle(prefix, event, value)
        del self._events[:]

    def close(self) -> None:
        if self._close is not None:
            self._close()
            self._close = None

    def __enter__(self) -> "ExportStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def validate_header(envelope: ExportEnvelope) -> DatabaseExport:
    """Check the envelope identifies a supported, well-formed export."""
    if envelope.format_name not in FORMAT_NAMES:
        raise FormatError(
            "Given file is not a dexie-like export",
            context={"format_name": envelope.format_name},
        )
    if envelope.format_version is None:
        raise MalformedExportError(
            "Missing formatVersion in export file", context={"field": "formatVersion"}
        )
    if envelope.format_version > MAX_FORMAT_VERSION:
        raise UnsupportedVersionError(
            f"Format version {envelope.format_version} not supported",
            context={"format_version": envelope.format_version},
        )

    db_export = envelope.data
    if db_export is None:
        raise MalformedExportError("No data in export file", context={"field": "data"})
    if not db_export.database_name:
        raise MalformedExportError(
            "Missing databaseName in export file", context={"field": "databaseName"}
        )
    if db_export.database_version is None:
        raise MalformedExportError(
            "Missing databaseVersion in export file", context={"field": "databaseVersion"}
        )
    if db_export.tables is None:
        raise MalformedExportError(
            "Missing tables in export file", context={"field": "tables"}
        )
    if db_export.data is None:
        # Only possible once the whole document is parsed: no rows at all
        db_export.data = PendingTables()
    return db_export


def load_until_header(source: ExportSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ExportStream:
    """Pull chunks until the export header is available, then validate it.

    Returns the live stream; rows not yet read stay in the source.
    """
    stream = ExportStream.open(source)
    try:
        while not stream.eof() and not stream.done() and not stream.header_ready():
            stream.pull(chunk_size)
        validate_header(stream.result)
    except Exception:
        stream.close()
        raise
    return stream


def peek(source: ExportSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ExportEnvelope:
    """Return the validated header of an export without importing it."""
    stream = load_until_header(source, chunk_size)
    stream.close()
    return stream.result
