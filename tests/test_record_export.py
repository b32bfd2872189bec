import csv
import io
import json
import os
import shutil
import sys
import tempfile
import unittest
from datetime import date


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.stores import MemoryContentStore
from app.tmpfiles import TempFileSink
from entity_model import Entity
from field_schema import FieldSchema
from memo_cache import MemoCache
from record_export import RecordExporter, column_labels


def _rows():
    return [
        {"id": "1", "entity": {"title": "Buy milk, eggs"}, "meta": {"schema1": {"priority": "high", "due": date(2024, 1, 2)}}},
        {"id": "2", "entity": {"title": 'Say "hi"'}, "meta": {"schema1": {"priority": None}}},
    ]


class TestRecordExport(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        self.sink = TempFileSink(self.tmpdir)
        self.exporter = RecordExporter(self.sink)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _read_csv(self, path):
        with open(path, newline="", encoding="utf-8") as fh:
            return list(csv.reader(fh))

    def test_csv_header_and_quoting(self) -> None:
        result = self.exporter.export(iter(_rows()), ["title", "meta.schema1.priority"])
        self.assertTrue(result["ok"], result)
        self.assertEqual(result["row_count"], 2)
        self.assertEqual(result["content_type"], "text/csv")
        with open(result["file_path"], encoding="utf-8", newline="") as fh:
            raw = fh.read()
        self.assertTrue(raw.startswith("title,priority\r\n"))
        self.assertIn('"Buy milk, eggs"', raw)
        rows = self._read_csv(result["file_path"])
        self.assertEqual(rows, [["title", "priority"], ["Buy milk, eggs", "high"], ['Say "hi"', ""]])

    def test_unresolved_paths_give_empty_cells(self) -> None:
        result = self.exporter.export(_rows(), ["meta.nope.x", "meta.schema1.due", "bad..path"])
        rows = self._read_csv(result["file_path"])
        self.assertEqual(rows[1], ["", "2024-01-02", ""])

    def test_duplicate_labels_use_full_path(self) -> None:
        self.assertEqual(
            column_labels(["entity.status", "meta.todo_details.status", "title"]),
            ["entity.status", "meta.todo_details.status", "title"],
        )

    def test_jsonl(self) -> None:
        result = self.exporter.export(_rows(), ["title", "meta.schema1.due"], fmt="jsonl", name="todos")
        self.assertEqual(result["file_name"], "todos.jsonl")
        with open(result["file_path"], encoding="utf-8") as fh:
            lines = [json.loads(line) for line in fh]
        self.assertEqual(lines[0], {"title": "Buy milk, eggs", "due": "2024-01-02"})
        self.assertEqual(lines[1], {"title": 'Say "hi"', "due": None})

    def test_unsupported_format(self) -> None:
        result = self.exporter.export(_rows(), ["title"], fmt="xlsx")
        self.assertEqual(result["errors"][0]["code"], "EXPORT_FORMAT_UNSUPPORTED")
        self.assertEqual(os.listdir(self.tmpdir), [])

    def test_failing_query_deletes_partial_file(self) -> None:
        def rows():
            yield _rows()[0]
            raise RuntimeError("store went away")

        with self.assertLogs("recordkit.export", level="ERROR"):
            result = self.exporter.export(rows(), ["title"])
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "EXPORT_QUERY_FAILED")
        self.assertEqual(os.listdir(self.tmpdir), [])

    def test_unwritable_sink(self) -> None:
        class BrokenSink:
            def open_for_write(self, suffix):
                raise PermissionError("read-only")

        result = RecordExporter(BrokenSink()).export(_rows(), ["title"])
        self.assertEqual(result["errors"][0]["code"], "EXPORT_SINK_UNWRITABLE")

    def test_cleanup(self) -> None:
        result = self.exporter.export(_rows(), ["title"])
        self.assertTrue(self.exporter.cleanup(result["file_path"]))
        self.assertFalse(os.path.exists(result["file_path"]))
        self.assertFalse(self.exporter.cleanup(result["file_path"]))


class TestEntityExport(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        schema = FieldSchema.define("schema1", "Schema 1", "note").add_field(
            "priority", "Priority", "select", {"low": "Low", "high": "High"}
        )
        self.entity = Entity(
            "note",
            MemoryContentStore(),
            MemoCache(),
            setup=[lambda e: e.register_schema(schema)],
            exporter=RecordExporter(TempFileSink(self.tmpdir)),
        ).run()

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_round_trip_in_query_order(self) -> None:
        self.entity.create({"title": "First, really"}, {"schema1": {"priority": "high"}})
        self.entity.create({"title": "Second"}, {"schema1": {"priority": "low"}})
        result = self.entity.export({"query_args": None, "fields": ["title", "meta.schema1.priority"]})
        self.assertTrue(result["ok"], result)
        with open(result["file_path"], newline="", encoding="utf-8") as fh:
            rows = list(csv.reader(io.StringIO(fh.read())))
        self.assertEqual(rows, [["title", "priority"], ["First, really", "high"], ["Second", "low"]])
        self.assertTrue(self.entity.finish_export(result))
        self.assertFalse(os.path.exists(result["file_path"]))

    def test_malformed_where_fails_export_on_empty_store(self) -> None:
        result = self.entity.export({"query_args": {"where": {"op": "bogus"}}, "fields": ["title"]})
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "EXPORT_QUERY_FAILED")
        self.assertEqual(os.listdir(self.tmpdir), [])

    def test_bad_query_is_reported(self) -> None:
        result = self.entity.export({"query_args": {"posts_per_page": -1}, "fields": ["title"]})
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "EXPORT_QUERY_FAILED")


if __name__ == "__main__":
    unittest.main()
