"""Flatten entity views into export files, one row at a time."""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import date
from typing import Any, Iterable, List

from recordkit.field_path import FieldPathError, path_label, resolve_path

logger = logging.getLogger("recordkit.export")

FORMATS = {
    "csv": {"suffix": ".csv", "content_type": "text/csv"},
    "jsonl": {"suffix": ".jsonl", "content_type": "application/x-ndjson"},
}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def column_labels(fields: List[str]) -> List[str]:
    """Last path segment per field; the full path wherever that label repeats."""
    labels = []
    for field in fields:
        try:
            labels.append(path_label(field))
        except FieldPathError:
            labels.append(field)
    return [field if labels.count(label) > 1 else label for field, label in zip(fields, labels)]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def _csv_line(values: List[str]) -> bytes:
    buf = io.StringIO()
    csv.writer(buf).writerow(values)
    return buf.getvalue().encode("utf-8")


class RecordExporter:
    def __init__(self, sink) -> None:
        self.sink = sink

    def _encode(self, fmt: str, fields: List[str], labels: List[str], view: dict) -> bytes:
        values = [resolve_path(view, field, None) for field in fields]
        if fmt == "csv":
            return _csv_line([_cell(value) for value in values])
        row = dict(zip(labels, values))
        return (json.dumps(row, default=str) + "\n").encode("utf-8")

    def export(self, rows: Iterable[dict], fields: List[str], fmt: str = "csv", name: str | None = None) -> dict:
        if fmt not in FORMATS:
            return {
                "ok": False,
                "errors": [_issue("EXPORT_FORMAT_UNSUPPORTED", f"Unsupported export format: {fmt}", "format")],
            }
        if not isinstance(fields, list) or not fields or not all(isinstance(f, str) for f in fields):
            return {"ok": False, "errors": [_issue("EXPORT_FIELDS_INVALID", "fields must be a list of paths", "fields")]}
        info = FORMATS[fmt]
        labels = column_labels(fields)
        try:
            handle = self.sink.open_for_write(info["suffix"])
        except OSError as exc:
            logger.warning("export_sink_unwritable error=%s", exc)
            return {"ok": False, "errors": [_issue("EXPORT_SINK_UNWRITABLE", str(exc), "sink")]}

        file_path = handle.path()
        row_count = 0
        failure = None
        iterator = iter(rows)
        try:
            if fmt == "csv":
                handle.write(_csv_line(labels))
            while True:
                try:
                    view = next(iterator)
                except StopIteration:
                    break
                except Exception as exc:
                    logger.exception("export_query_failed path=%s rows=%s", file_path, row_count)
                    failure = _issue("EXPORT_QUERY_FAILED", str(exc), "query_args", {"row_count": row_count})
                    break
                handle.write(self._encode(fmt, fields, labels, view))
                row_count += 1
        except OSError as exc:
            logger.warning("export_sink_unwritable path=%s error=%s", file_path, exc)
            failure = _issue("EXPORT_SINK_UNWRITABLE", str(exc), "sink", {"row_count": row_count})
        finally:
            handle.close()

        if failure is not None:
            self.sink.delete(file_path)
            return {"ok": False, "errors": [failure]}
        logger.info("export_written format=%s rows=%s path=%s", fmt, row_count, file_path)
        return {
            "ok": True,
            "file_path": file_path,
            "file_name": f"{name or 'export'}{info['suffix']}",
            "row_count": row_count,
            "format": fmt,
            "content_type": info["content_type"],
        }

    def cleanup(self, file_path: str) -> bool:
        return self.sink.delete(file_path)
