"""
Tests for streaming import of dexie-like exports
"""

import json
from datetime import datetime, timezone

import pytest
from loguru import logger

from dbsnap.config import ImportOptions
from dbsnap.database import Database, ImportManager, import_db, import_into, load_until_header
from dbsnap.database import tson
from dbsnap.utils.exceptions import (
    AbortedError,
    ConfigurationError,
    ConstraintError,
    MalformedExportError,
    MissingTableError,
    NameMismatchError,
    PrimaryKeyMismatchError,
    VersionMismatchError,
)


def _rows(count, start=0):
    return [{"id": i, "name": f"row-{i:05d}"} for i in range(start, start + count)]


def _run_manager(db, source, **options):
    opts = ImportOptions(**options)
    stream = load_until_header(source, opts.chunk_size)
    try:
        manager = ImportManager(db, stream, opts)
        manager.run()
    finally:
        stream.close()
    return manager


class TestBasicImport:
    """Rows end up in the target tables, in export order"""

    def test_minimal_export(self, make_db):
        data = (
            b'{"formatName":"dexie-like","formatVersion":1,"data":{"databaseName":"db1",'
            b'"databaseVersion":1,"tables":[{"name":"t","schema":"id","rowCount":2}],'
            b'"data":[{"tableName":"t","inbound":true,"rows":[{"id":1},{"id":2}]}]}}'
        )
        db = make_db()

        import_into(db, data)

        assert db.table("t").to_list() == [{"id": 1}, {"id": 2}]

    def test_dexie_format_name_accepted(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(3)}], format_name="dexie")

        import_into(db, data)

        assert db.table("t").count() == 3

    def test_multiple_tables_small_chunks(self, make_db, export_bytes, tmp_path):
        db = make_db(stores={"users": "++id,name", "posts": "id,author"})
        users = _rows(400)
        posts = [{"id": f"p{i}", "author": i % 7, "body": "x" * 40} for i in range(250)]
        path = tmp_path / "export.json"
        path.write_bytes(
            export_bytes(
                [
                    {"name": "users", "schema": "++id,name", "rows": users},
                    {"name": "posts", "schema": "id,author", "rows": posts},
                ]
            )
        )

        import_into(db, path, {"num_kilobytes_per_chunk": 1})

        assert db.table("users").to_list() == users
        assert db.table("posts").to_list() == posts

    def test_outbound_table(self, make_db, export_bytes):
        db = make_db(stores={"kv": ""})
        rows = [["a", {"v": 1}], ["b", {"v": 2}]]

        import_into(db, export_bytes([{"name": "kv", "schema": "", "rows": rows, "inbound": False}]))

        table = db.table("kv")
        assert table.keys() == ["a", "b"]
        assert table.get("b") == {"v": 2}

    def test_typed_values_are_revived(self, make_db, export_bytes):
        db = make_db()
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        row = tson.encapsulate({"id": 1, "when": when, "blob": b"\x00\x01", "tags": {"a"}})

        import_into(db, export_bytes([{"name": "t", "schema": "id", "rows": [row]}]))

        value = db.table("t").get(1)
        assert value["when"] == when
        assert value["blob"] == b"\x00\x01"
        assert value["tags"] == {"a"}

    def test_empty_table(self, make_db, export_bytes):
        db = make_db(stores={"t": "id", "empty": "id"})
        progress = []
        data = export_bytes(
            [
                {"name": "empty", "schema": "id", "rows": []},
                {"name": "t", "schema": "id", "rows": _rows(2)},
            ]
        )

        import_into(db, data, {"progress_callback": progress.append})

        assert db.table("empty").count() == 0
        assert db.table("t").count() == 2
        assert progress[-1].completed_tables == 2

    def test_iterable_source(self, make_db, export_bytes, chunked):
        db = make_db()
        rows = _rows(200)

        import_into(db, chunked(export_bytes([{"name": "t", "schema": "id", "rows": rows}]), 100))

        assert db.table("t").to_list() == rows

    def test_options_as_mapping(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(2)}])

        import_into(db, data)
        import_into(db, data, {"overwrite_values": True})

        assert db.table("t").count() == 2

    def test_invalid_options(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(2)}])

        with pytest.raises(ConfigurationError):
            import_into(db, data, {"num_kilobytes_per_chunk": 0})
        with pytest.raises(ConfigurationError):
            import_into(db, data, {"no_such_option": True})


class TestMemoryBound:
    """Only about one chunk worth of rows is buffered at a time"""

    @pytest.mark.parametrize("row_count", [100, 3000])
    def test_peak_buffer_independent_of_row_count(self, make_db, export_bytes, chunked, row_count):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(row_count)}])

        manager = _run_manager(db, chunked(data, 256))

        assert db.table("t").count() == row_count
        # Rows are about 30 bytes each
        assert manager.peak_buffered_rows <= 16
        assert manager.progress.completed_rows == row_count

    def test_chunk_size_option_limits_batches(self, make_db, export_bytes, tmp_path):
        db = make_db()
        path = tmp_path / "big.json"
        path.write_bytes(export_bytes([{"name": "t", "schema": "id", "rows": _rows(3000)}]))

        manager = _run_manager(db, path, num_kilobytes_per_chunk=1)

        assert db.table("t").count() == 3000
        assert manager.peak_buffered_rows <= 64


class TestOverwriteAndClear:
    def test_duplicate_keys_fail_without_overwrite(self, make_db, export_bytes):
        db = make_db()
        db.table("t").bulk_add([{"id": 1, "name": "existing"}])
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(3, start=1)}])

        with pytest.raises(ConstraintError):
            import_into(db, data)

        assert db.table("t").to_list() == [{"id": 1, "name": "existing"}]

    def test_overwrite_values_replaces(self, make_db, export_bytes):
        db = make_db()
        db.table("t").bulk_add([{"id": 1, "name": "existing"}])
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(3, start=1)}])

        import_into(db, data, {"overwrite_values": True})

        assert db.table("t").get(1) == {"id": 1, "name": "row-00001"}
        assert db.table("t").count() == 3

    def test_overwrite_is_idempotent(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(50)}])

        import_into(db, data, {"overwrite_values": True})
        first = db.table("t").to_list()
        import_into(db, data, {"overwrite_values": True})

        assert db.table("t").to_list() == first

    def test_clear_tables_before_import(self, make_db, export_bytes, chunked):
        db = make_db()
        db.table("t").bulk_add([{"id": 999, "name": "stale"}])
        rows = _rows(150)
        data = export_bytes([{"name": "t", "schema": "id", "rows": rows}])

        # Many batches: the table must only be cleared before the first one
        import_into(db, chunked(data, 128), {"clear_tables_before_import": True})

        assert db.table("t").to_list() == rows


class TestFilter:
    def test_inbound_filter(self, make_db, export_bytes):
        db = make_db()
        seen = []

        def keep_even(table_name, value):
            seen.append(table_name)
            return value["id"] % 2 == 0

        import_into(
            db,
            export_bytes([{"name": "t", "schema": "id", "rows": _rows(10)}]),
            {"filter": keep_even},
        )

        assert [row["id"] for row in db.table("t").to_list()] == [0, 2, 4, 6, 8]
        assert set(seen) == {"t"}

    def test_outbound_filter_keeps_keys_aligned(self, make_db, export_bytes):
        db = make_db(stores={"kv": ""})
        rows = [["a", {"v": 1}], ["b", {"v": 2}], ["c", {"v": 3}]]

        import_into(
            db,
            export_bytes([{"name": "kv", "schema": "", "rows": rows, "inbound": False}]),
            {"filter": lambda table_name, value, key=None: key != "b"},
        )

        table = db.table("kv")
        assert table.keys() == ["a", "c"]
        assert table.get("a") == {"v": 1}
        assert table.get("c") == {"v": 3}
        assert table.get("b") is None

    def test_filtered_rows_still_count_as_processed(self, make_db, export_bytes):
        db = make_db()
        progress = []

        import_into(
            db,
            export_bytes([{"name": "t", "schema": "id", "rows": _rows(4)}]),
            {"filter": lambda table_name, value: False, "progress_callback": progress.append},
        )

        assert db.table("t").count() == 0
        assert progress[-1].completed_rows == 4


class TestSchemaChecks:
    def test_name_mismatch_leaves_database_unchanged(self, make_db, export_bytes):
        db = make_db(name="other")
        db.table("t").bulk_add([{"id": 100}])
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(3)}])

        with pytest.raises(NameMismatchError):
            import_into(db, data)

        assert db.table("t").to_list() == [{"id": 100}]

    def test_accept_name_diff(self, make_db, export_bytes):
        db = make_db(name="other")

        import_into(
            db,
            export_bytes([{"name": "t", "schema": "id", "rows": _rows(3)}]),
            {"accept_name_diff": True},
        )

        assert db.table("t").count() == 3

    def test_version_mismatch(self, make_db, export_bytes):
        db = make_db(version=2)
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(3)}])

        with pytest.raises(VersionMismatchError):
            import_into(db, data)
        import_into(db, data, {"accept_version_diff": True})

        assert db.table("t").count() == 3

    def test_missing_table(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes(
            [
                {"name": "t", "schema": "id", "rows": _rows(3)},
                {"name": "gone", "schema": "id", "rows": _rows(2)},
            ]
        )

        with pytest.raises(MissingTableError):
            import_into(db, data)

        assert db.table("t").count() == 0

    def test_accept_missing_tables(self, make_db, export_bytes):
        db = make_db()
        progress = []
        data = export_bytes(
            [
                {"name": "gone", "schema": "id", "rows": _rows(2)},
                {"name": "t", "schema": "id", "rows": _rows(3)},
            ]
        )

        import_into(
            db, data, {"accept_missing_tables": True, "progress_callback": progress.append}
        )

        assert db.table("t").count() == 3
        assert db.table_names == ["t"]
        final = progress[-1]
        assert final.done
        assert final.completed_tables == final.total_tables == 2
        assert final.completed_rows == final.total_rows == 5

    def test_primary_key_mismatch(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "++id", "rows": _rows(3)}])

        with pytest.raises(PrimaryKeyMismatchError):
            import_into(db, data)
        import_into(db, data, {"accept_changed_primary_key": True})

        assert db.table("t").count() == 3


class TestProgressAndAbort:
    def test_progress_sequence(self, make_db, export_bytes):
        db = make_db()
        progress = []

        import_into(
            db,
            export_bytes([{"name": "t", "schema": "id", "rows": _rows(2)}]),
            {"progress_callback": progress.append},
        )

        first, last = progress[0], progress[-1]
        assert (first.completed_rows, first.completed_tables, first.done) == (0, 0, False)
        assert first.total_tables == 1
        assert first.total_rows == 2
        assert (last.completed_rows, last.completed_tables, last.done) == (2, 1, True)
        assert [p.done for p in progress].count(True) == 1

    def test_progress_is_monotonic(self, make_db, export_bytes, chunked):
        db = make_db()
        progress = []
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(300)}])

        import_into(db, chunked(data, 200), {"progress_callback": progress.append})

        counts = [p.completed_rows for p in progress]
        assert counts == sorted(counts)
        assert len(progress) > 3
        assert all(p.completed_rows <= p.total_rows for p in progress)

    @pytest.mark.parametrize("abort_at", [1, 2, 3])
    def test_abort_rolls_back(self, make_db, export_bytes, chunked, abort_at):
        db = make_db()
        calls = []

        def on_progress(progress):
            calls.append(progress)
            return len(calls) == abort_at

        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(50)}])
        with pytest.raises(AbortedError):
            import_into(db, chunked(data, 64), {"progress_callback": on_progress})

        assert len(calls) == abort_at
        assert db.table("t").count() == 0

    def test_abort_on_final_notification_rolls_back(self, make_db, export_bytes):
        db = make_db()

        with pytest.raises(AbortedError):
            import_into(
                db,
                export_bytes([{"name": "t", "schema": "id", "rows": _rows(5)}]),
                {"progress_callback": lambda progress: progress.done},
            )

        assert db.table("t").count() == 0

    def test_abort_without_transaction_keeps_written_rows(self, make_db, export_bytes, chunked):
        db = make_db()
        calls = []

        def on_progress(progress):
            calls.append(progress)
            return len(calls) == 3

        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(50)}])
        with pytest.raises(AbortedError):
            import_into(
                db, chunked(data, 64), {"progress_callback": on_progress, "no_transaction": True}
            )

        assert 0 < db.table("t").count() < 50

    def test_abort_is_logged(self, make_db, export_bytes):
        db = make_db()
        messages = []
        logger.add(lambda message: messages.append(message.record["message"]), level="INFO")

        with pytest.raises(AbortedError):
            import_into(
                db,
                export_bytes([{"name": "t", "schema": "id", "rows": _rows(5)}]),
                {"progress_callback": lambda progress: True},
            )

        assert any("aborted" in message for message in messages)


class TestTruncatedInput:
    def test_truncated_export_rolls_back(self, make_db, export_bytes):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(100)}])

        with pytest.raises(MalformedExportError):
            import_into(db, data[:-200])

        assert db.table("t").count() == 0

    def test_truncated_export_small_chunks(self, make_db, export_bytes, chunked):
        db = make_db()
        data = export_bytes([{"name": "t", "schema": "id", "rows": _rows(100)}])

        with pytest.raises(MalformedExportError):
            import_into(db, chunked(data[: len(data) // 2], 64))

        assert db.table("t").count() == 0


class TestImportDb:
    def test_creates_database_from_export(self, export_bytes, tmp_path):
        url = f"sqlite:///{tmp_path / 'new.db'}"
        data = export_bytes(
            [
                {"name": "users", "schema": "++id,name", "rows": _rows(5)},
                {"name": "kv", "schema": "", "rows": [["k", 1]], "inbound": False},
            ],
            database_name="shop",
            database_version=3,
        )

        db = import_db(data, url=url)
        try:
            assert db.name == "shop"
            assert db.verno == 3
            assert sorted(db.table_names) == ["kv", "users"]
            assert db.table("users").count() == 5
            assert db.table("kv").get("k") == 1
        finally:
            db.close()

        reopened = Database("shop", url).open()
        try:
            assert reopened.verno == 3
            assert reopened.table("users").schema.src == "++id,name"
            assert reopened.table("users").count() == 5
        finally:
            reopened.close()

    def test_in_memory_by_default(self, export_bytes):
        db = import_db(export_bytes([{"name": "t", "schema": "id", "rows": _rows(2)}]))

        assert db.table("t").count() == 2
        db.close()


class TestEntryKeyOrder:
    """Keys of a table entry may come in any order"""

    def _rows_first(self, make_export, tables):
        export = make_export(tables)
        export["data"]["data"] = [
            {"rows": entry["rows"], "tableName": entry["tableName"], "inbound": entry["inbound"]}
            for entry in export["data"]["data"]
        ]
        return json.dumps(export).encode("utf-8")

    def test_rows_before_table_name(self, make_db, make_export, chunked):
        db = make_db(stores={"t": "id", "u": "id"})
        t_rows, u_rows = _rows(40), _rows(25, start=100)
        data = self._rows_first(
            make_export,
            [
                {"name": "t", "schema": "id", "rows": t_rows},
                {"name": "u", "schema": "id", "rows": u_rows},
            ],
        )

        import_into(db, chunked(data, 64))

        assert db.table("t").to_list() == t_rows
        assert db.table("u").to_list() == u_rows

    def test_inbound_after_rows(self, make_db, make_export, chunked):
        db = make_db(stores={"kv": ""})
        rows = [[f"k{i}", {"v": i}] for i in range(30)]
        data = self._rows_first(
            make_export, [{"name": "kv", "schema": "", "rows": rows, "inbound": False}]
        )

        import_into(db, chunked(data, 64))

        table = db.table("kv")
        assert table.keys() == [f"k{i}" for i in range(30)]
        assert table.get("k7") == {"v": 7}

    def test_missing_inbound_defaults_to_inbound(self, make_db, make_export, chunked):
        db = make_db()
        export = make_export([{"name": "t", "schema": "id", "rows": _rows(20)}])
        del export["data"]["data"][0]["inbound"]

        import_into(db, chunked(json.dumps(export).encode("utf-8"), 64))

        assert db.table("t").count() == 20


class TestManifestRowCount:
    def test_rows_beyond_manifest_are_clamped(self, make_db, make_export):
        db = make_db()
        export = make_export([{"name": "t", "schema": "id", "rows": _rows(4)}])
        export["data"]["tables"][0]["rowCount"] = 2
        progress, warnings = [], []
        logger.add(lambda message: warnings.append(message.record["message"]), level="WARNING")

        import_into(db, json.dumps(export).encode("utf-8"), {"progress_callback": progress.append})

        assert db.table("t").count() == 4
        assert progress[-1].completed_rows == progress[-1].total_rows == 2
        assert any("more rows than its manifest" in message for message in warnings)
