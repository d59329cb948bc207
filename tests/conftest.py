import json
from typing import Any, Dict, Iterator, List

import pytest
from loguru import logger

from dbsnap.database import Database


def _make_export(
    tables: List[Dict[str, Any]],
    database_name: str = "db1",
    database_version: Any = 1,
    format_name: str = "dexie-like",
    format_version: int = 1,
) -> Dict[str, Any]:
    return {
        "formatName": format_name,
        "formatVersion": format_version,
        "data": {
            "databaseName": database_name,
            "databaseVersion": database_version,
            "tables": [
                {
                    "name": table["name"],
                    "schema": table["schema"],
                    "rowCount": len(table["rows"]),
                }
                for table in tables
            ],
            "data": [
                {
                    "tableName": table["name"],
                    "inbound": table.get("inbound", True),
                    "rows": table["rows"],
                }
                for table in tables
            ],
        },
    }


def _chunked(data: bytes, size: int) -> Iterator[bytes]:
    for start in range(0, len(data), size):
        yield data[start : start + size]


@pytest.fixture()
def make_export():
    """Build an export envelope from ``[{"name", "schema", "rows", "inbound"}]``."""
    return _make_export


@pytest.fixture()
def export_bytes(make_export):
    def build(tables: List[Dict[str, Any]], **kwargs: Any) -> bytes:
        return json.dumps(make_export(tables, **kwargs)).encode("utf-8")

    return build


@pytest.fixture()
def chunked():
    """Split bytes into an iterator of fixed-size chunks."""
    return _chunked


@pytest.fixture()
def make_db(tmp_path):
    created: List[Database] = []

    def factory(name: str = "db1", version: Any = 1, stores: Dict[str, Any] = None, filename: str = None):
        db = Database(name, f"sqlite:///{tmp_path / (filename or name + '.db')}")
        db.declare(version, stores if stores is not None else {"t": "id"})
        db.open()
        created.append(db)
        return db

    yield factory
    for db in created:
        db.close()


@pytest.fixture(autouse=True)
def reset_loguru():
    yield
    logger.remove()
