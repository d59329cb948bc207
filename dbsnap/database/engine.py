"""
Embedded object store on top of SQLAlchemy.

Each declared table is an SQL table of ``(id, key, value)`` rows: ``key`` is
the canonical transport encoding of the primary key and ``value`` the
transport-encoded record. Table definitions use Dexie-style schema strings
(``"++id,name,&email"``): the first field is the primary key, the rest are
index declarations kept in the catalogue.

Writes run on the connection of the enclosing :meth:`Database.transaction`
when there is one, otherwise each call commits on its own.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
)
from sqlalchemy import Table as SQLTable
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..utils.exceptions import ConstraintError, DatabaseError, DataError, InvalidTableError
from . import tson

META_TABLE = "_dbsnap_meta"
CATALOG_TABLE = "_dbsnap_tables"

KeyPath = Union[str, List[str], None]


@dataclass(frozen=True)
class IndexSpec:
    """One field of a schema string, e.g. ``++id`` or ``[first+last]``"""

    src: str
    key_path: KeyPath
    auto_increment: bool = False
    unique: bool = False
    multi_entry: bool = False

    @property
    def compound(self) -> bool:
        return isinstance(self.key_path, list)

    @classmethod
    def parse(cls, src: str) -> "IndexSpec":
        spec = src.strip()
        body = spec
        auto = body.startswith("++")
        if auto:
            body = body[2:]
        unique = body.startswith("&")
        if unique:
            body = body[1:]
        multi = body.startswith("*")
        if multi:
            body = body[1:]

        key_path: KeyPath
        if body.startswith("[") and body.endswith("]"):
            key_path = [part.strip() for part in body[1:-1].split("+")]
        else:
            key_path = body or None
        return cls(src=spec, key_path=key_path, auto_increment=auto, unique=unique, multi_entry=multi)


@dataclass(frozen=True)
class TableSchema:
    name: str
    primary_key: IndexSpec
    indexes: Tuple[IndexSpec, ...] = ()

    @property
    def inbound(self) -> bool:
        """Whether records carry their own primary key"""
        return self.primary_key.key_path is not None

    @property
    def src(self) -> str:
        return ",".join([self.primary_key.src] + [index.src for index in self.indexes])

    @classmethod
    def parse(cls, name: str, schema: str) -> "TableSchema":
        fields = [part.strip() for part in schema.split(",")]
        indexes = tuple(IndexSpec.parse(part) for part in fields[1:] if part)
        return cls(name=name, primary_key=IndexSpec.parse(fields[0]), indexes=indexes)


def _normalize_key(key: Any) -> Any:
    if isinstance(key, float) and key.is_integer():
        return int(key)
    if isinstance(key, (list, tuple)):
        return [_normalize_key(part) for part in key]
    return key


def encode_key(key: Any) -> str:
    """Canonical text for a primary key; equal keys encode identically."""
    return tson.dumps(_normalize_key(key), canonical=True)


def _resolve_path(value: Any, path: str) -> Any:
    current = value
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def extract_key(value: Any, key_path: KeyPath) -> Any:
    """Read the key at ``key_path`` from a record; ``None`` if absent."""
    if isinstance(key_path, list):
        parts = [_resolve_path(value, path) for path in key_path]
        return None if any(part is None for part in parts) else parts
    return _resolve_path(value, key_path)


@dataclass
class _Scope:
    connection: Connection
    tables: frozenset


class Table:
    """A declared table of a :class:`Database`"""

    def __init__(self, db: "Database", schema: TableSchema, sql_table: SQLTable):
        self.db = db
        self.schema = schema
        self._sql = sql_table

    @property
    def name(self) -> str:
        return self.schema.name

    def __repr__(self) -> str:
        return f"Table({self.name!r}, {self.schema.src!r})"

    def _rows(self, values: Iterable[Any], keys: Optional[Iterable[Any]]) -> List[Dict[str, str]]:
        values = list(values)
        if keys is not None:
            if self.schema.inbound:
                raise DataError(
                    f"Table {self.name} uses inbound keys; explicit keys are not allowed"
                )
            keys = list(keys)
            if len(keys) != len(values):
                raise DataError(
                    f"Got {len(keys)} keys for {len(values)} values in table {self.name}"
                )
        elif not self.schema.inbound:
            raise DataError(f"Table {self.name} uses outbound keys; keys are required")

        rows = []
        for index, value in enumerate(values):
            if keys is not None:
                key = keys[index]
            else:
                key = extract_key(value, self.schema.primary_key.key_path)
            if key is None:
                raise DataError(
                    f"Missing primary key {self.schema.primary_key.src!r} "
                    f"for record {index} of table {self.name}"
                )
            rows.append({"key": encode_key(key), "value": tson.dumps(value)})
        return rows

    def bulk_add(self, values: Iterable[Any], keys: Optional[Iterable[Any]] = None) -> int:
        """Insert records; fails with ConstraintError if any key exists."""
        rows = self._rows(values, keys)
        if not rows:
            return 0
        with self.db.connection(self.name) as conn:
            try:
                conn.execute(insert(self._sql), rows)
            except IntegrityError as exc:
                raise ConstraintError(
                    f"Key already exists in table {self.name}",
                    context={"table": self.name},
                ) from exc
        return len(rows)

    def bulk_put(self, values: Iterable[Any], keys: Optional[Iterable[Any]] = None) -> int:
        """Insert records, replacing existing records with the same key."""
        rows = self._rows(values, keys)
        if not rows:
            return 0
        with self.db.connection(self.name) as conn:
            dialect = conn.dialect.name
            if dialect in ("sqlite", "postgresql"):
                if dialect == "sqlite":
                    from sqlalchemy.dialects.sqlite import insert as upsert
                else:
                    from sqlalchemy.dialects.postgresql import insert as upsert
                stmt = upsert(self._sql)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[self._sql.c.key],
                    set_={"value": stmt.excluded.value},
                )
                conn.execute(stmt, rows)
            else:
                conn.execute(
                    delete(self._sql).where(self._sql.c.key.in_([row["key"] for row in rows]))
                )
                conn.execute(insert(self._sql), rows)
        return len(rows)

    def clear(self) -> int:
        with self.db.connection(self.name) as conn:
            result = conn.execute(delete(self._sql))
        return result.rowcount

    def count(self) -> int:
        with self.db.connection(self.name) as conn:
            return conn.execute(select(func.count()).select_from(self._sql)).scalar_one()

    def get(self, key: Any) -> Any:
        with self.db.connection(self.name) as conn:
            text = conn.execute(
                select(self._sql.c.value).where(self._sql.c.key == encode_key(key))
            ).scalar_one_or_none()
        return None if text is None else tson.loads(text)

    def keys(self) -> List[Any]:
        with self.db.connection(self.name) as conn:
            texts = conn.execute(select(self._sql.c.key).order_by(self._sql.c.id)).scalars().all()
        return [tson.loads(text) for text in texts]

    def to_list(self) -> List[Any]:
        """All records in insertion order"""
        with self.db.connection(self.name) as conn:
            texts = conn.execute(select(self._sql.c.value).order_by(self._sql.c.id)).scalars().all()
        return [tson.loads(text) for text in texts]


def _parse_version(text: Optional[str]) -> Union[int, float]:
    if text is None:
        return 0
    number = float(text)
    return int(number) if number.is_integer() else number


class Database:
    """A named, versioned set of tables stored through SQLAlchemy.

    Usage::

        db = Database("shop", "sqlite:///shop.db")
        db.declare(1, {"products": "++id,name", "settings": ""})
        db.open()
    """

    def __init__(
        self,
        name: str,
        url: Optional[str] = None,
        *,
        engine: Optional[Engine] = None,
        echo: bool = False,
    ):
        self.name = name
        self._owns_engine = engine is None
        self.engine = engine or create_engine(url or "sqlite://", echo=echo)
        self.verno: Union[int, float] = 0
        self._versions: Dict[Union[int, float], Dict[str, Optional[str]]] = {}
        self._tables: Dict[str, Table] = {}
        self._is_open = False
        self._scope: contextvars.ContextVar[Optional[_Scope]] = contextvars.ContextVar(
            f"dbsnap_scope_{name}", default=None
        )

        self._metadata = MetaData()
        self._meta = SQLTable(
            META_TABLE,
            self._metadata,
            Column("name", String(64), primary_key=True),
            Column("value", Text, nullable=True),
        )
        self._catalog = SQLTable(
            CATALOG_TABLE,
            self._metadata,
            Column("name", String(255), primary_key=True),
            Column("schema", Text, nullable=False),
        )

    def __repr__(self) -> str:
        return f"Database({self.name!r}, verno={self.verno})"

    # Schema

    def declare(self, version: Union[int, float], stores: Mapping[str, Optional[str]]) -> "Database":
        """Declare the tables of ``version``; a ``None`` schema deletes the table.

        Declarations accumulate across versions and are applied by :meth:`open`.
        """
        if self._is_open:
            raise DatabaseError("Cannot declare a schema on an open database")
        if version <= 0:
            raise DatabaseError(f"Database version must be positive, got {version}")
        for table_name in stores:
            if table_name.startswith("_dbsnap"):
                raise DatabaseError(f"Table name {table_name!r} is reserved")
        self._versions.setdefault(version, {}).update(stores)
        return self

    def _declared_schemas(self) -> Dict[str, str]:
        schemas: Dict[str, str] = {}
        for version in sorted(self._versions):
            for table_name, schema in self._versions[version].items():
                if schema is None:
                    schemas.pop(table_name, None)
                else:
                    schemas[table_name] = schema
        return schemas

    def _sql_table(self, table_name: str) -> SQLTable:
        if table_name in self._metadata.tables:
            return self._metadata.tables[table_name]
        return SQLTable(
            table_name,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("key", Text, nullable=False, unique=True),
            Column("value", Text, nullable=False),
        )

    def open(self) -> "Database":
        """Create or upgrade the stored schema and load table definitions."""
        if self._is_open:
            return self

        try:
            with self.engine.begin() as conn:
                self._metadata.create_all(conn, tables=[self._meta, self._catalog])
                meta = dict(conn.execute(select(self._meta.c.name, self._meta.c.value)).all())
                stored = dict(conn.execute(select(self._catalog.c.name, self._catalog.c.schema)).all())

                stored_name = meta.get("database_name")
                if stored_name is not None and stored_name != self.name:
                    raise DatabaseError(
                        f"Storage holds database {stored_name!r}, not {self.name!r}"
                    )
                stored_version = _parse_version(meta.get("database_version"))

                if not self._versions:
                    schemas = stored
                    self.verno = stored_version
                else:
                    target_version = max(self._versions)
                    if stored_version > target_version:
                        raise DatabaseError(
                            f"Stored database {self.name} has version {stored_version}, "
                            f"newer than declared version {target_version}"
                        )
                    schemas = self._declared_schemas()
                    if target_version > stored_version:
                        self._upgrade(conn, stored, schemas, target_version)
                    self.verno = target_version

                self._tables = {
                    table_name: Table(self, TableSchema.parse(table_name, schema), self._sql_table(table_name))
                    for table_name, schema in schemas.items()
                }
                self._metadata.create_all(conn, tables=[table._sql for table in self._tables.values()])
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to open database {self.name}: {exc}") from exc

        self._is_open = True
        logger.debug(f"Opened database {self.name} v{self.verno} with tables {self.table_names}")
        return self

    def _upgrade(
        self,
        conn: Connection,
        stored: Dict[str, str],
        schemas: Dict[str, str],
        version: Union[int, float],
    ) -> None:
        for table_name, schema in schemas.items():
            if table_name in stored:
                old_pk = TableSchema.parse(table_name, stored[table_name]).primary_key.src
                new_pk = TableSchema.parse(table_name, schema).primary_key.src
                if old_pk != new_pk:
                    raise DatabaseError(
                        f"Changing primary key of {table_name} from {old_pk!r} to {new_pk!r} "
                        "is not supported"
                    )

        for table_name in set(stored) - set(schemas):
            self._sql_table(table_name).drop(conn, checkfirst=True)
            self._metadata.remove(self._metadata.tables[table_name])
            logger.info(f"Dropped table {table_name} in upgrade of {self.name} to v{version}")

        conn.execute(delete(self._catalog))
        if schemas:
            conn.execute(
                insert(self._catalog),
                [{"name": table_name, "schema": schema} for table_name, schema in schemas.items()],
            )
        conn.execute(delete(self._meta))
        conn.execute(
            insert(self._meta),
            [
                {"name": "database_name", "value": self.name},
                {"name": "database_version", "value": str(version)},
            ],
        )

    def close(self) -> None:
        self._is_open = False
        self._tables = {}
        if self._owns_engine:
            self.engine.dispose()

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Tables

    def _ensure_open(self) -> None:
        if not self._is_open:
            self.open()

    @property
    def tables(self) -> List[Table]:
        self._ensure_open()
        return list(self._tables.values())

    @property
    def table_names(self) -> List[str]:
        return list(self._tables)

    def get_table(self, table_name: str) -> Optional[Table]:
        self._ensure_open()
        return self._tables.get(table_name)

    def table(self, table_name: str) -> Table:
        table = self.get_table(table_name)
        if table is None:
            raise InvalidTableError(f"Table {table_name} does not exist in database {self.name}")
        return table

    # Transactions

    @contextmanager
    def transaction(self, table_names: Optional[Sequence[str]] = None) -> Iterator["Database"]:
        """Run the block atomically over ``table_names`` (default: all tables).

        The transaction commits when the block exits normally and rolls back
        when it raises. Table operations outside the named set fail.
        """
        self._ensure_open()
        names = frozenset(self._tables if table_names is None else table_names)
        unknown = names - set(self._tables)
        if unknown:
            raise InvalidTableError(f"Unknown tables in transaction: {', '.join(sorted(unknown))}")

        outer = self._scope.get()
        if outer is not None:
            if not names <= outer.tables:
                raise InvalidTableError("Nested transaction includes tables outside the parent scope")
            yield self
            return

        with self.engine.begin() as conn:
            token = self._scope.set(_Scope(conn, names))
            try:
                yield self
            finally:
                self._scope.reset(token)

    def in_transaction(self) -> bool:
        return self._scope.get() is not None

    @contextmanager
    def connection(self, table_name: str) -> Iterator[Connection]:
        """Connection for an operation on ``table_name``."""
        scope = self._scope.get()
        if scope is not None:
            if table_name not in scope.tables:
                raise InvalidTableError(f"Table {table_name} is not part of the current transaction")
            yield scope.connection
            return
        with self.engine.begin() as conn:
            yield conn
