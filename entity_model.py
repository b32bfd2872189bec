"""Typed entity over a generic content store.

An ``Entity`` owns the field schemas attached to its records, runs CRUD
through the injected store, memoizes its stats snapshot in the injected cache
and drops every dependent cache key on mutation. Lifecycle::

    UNREGISTERED --run()--> REGISTERED (setup callbacks) --> RUNNING
    RUNNING --shutdown()--> UNREGISTERED

``create`` is not atomic across the base record and its schema groups: when a
schema write fails the base record stays, and the result carries its id.
"""

from __future__ import annotations

import copy
import itertools
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List

from field_schema import INVALID_CHOICE, INVALID_FORMAT, FieldSchema, SchemaError
from memo_cache import MISSING, SystemClock
from record_query import (
    RecordQueryError,
    build_condition,
    matches,
    needs_meta,
    search_text,
    sort_views,
    validate_query,
)
from recordkit.field_path import FieldPathError, normalize_path, resolve_path, split_path

logger = logging.getLogger("recordkit.entity")

STATS_TTL_S = float(os.getenv("RECORDKIT_STATS_TTL_S", "300"))
RECORD_CACHE_TTL_S = float(os.getenv("RECORDKIT_RECORD_CACHE_TTL_S", "3600"))

STATUSES = ("draft", "published", "pending", "private")
DEFAULT_STATUS = "published"
ENTITY_KEYS = ("id", "title", "body", "status", "created_at", "updated_at")
_STATS_RESERVED = {"total", "overdue", "priority_breakdown"}


class LifecycleState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    RUNNING = "running"


@dataclass
class LifecycleError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _fail(*issues: dict, **extra: Any) -> dict:
    return {"ok": False, "errors": list(issues), **extra}


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


class Entity:
    def __init__(
        self,
        entity_type: str,
        store,
        cache,
        clock=None,
        setup: Iterable[Callable[["Entity"], Any]] = (),
        after_run: Iterable[Callable[["Entity"], Any]] = (),
        teardown: Iterable[Callable[["Entity"], Any]] = (),
        stats: dict | None = None,
        admin_columns: List[dict] | None = None,
        admin_buttons: List[dict] | None = None,
        label: str | None = None,
        exporter=None,
    ) -> None:
        if not isinstance(entity_type, str) or not entity_type.strip():
            raise ValueError("entity_type must be a non-empty string")
        self.entity_type = entity_type.strip()
        self.label = label or self.entity_type.replace("_", " ").title()
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()
        self.exporter = exporter
        self.state = LifecycleState.UNREGISTERED
        self.stats = dict(stats or {})
        self._setup = list(setup)
        self._after_run = list(after_run)
        self._teardown = list(teardown)
        self._admin_columns = [dict(col) for col in (admin_columns or [])]
        self._admin_buttons = [dict(btn) for btn in (admin_buttons or [])]
        self._schemas: Dict[str, FieldSchema] = {}
        self._hooked: List[FieldSchema] = []
        self._cache_deps: List[tuple[str, str]] = [(self.stats_namespace, self.stats_key)]

    # -- naming --------------------------------------------------------------

    @property
    def stats_namespace(self) -> str:
        return f"{self.entity_type}s"

    @property
    def stats_key(self) -> str:
        return f"{self.entity_type}_stats"

    @property
    def record_namespace(self) -> str:
        return f"{self.entity_type}_model"

    def record_cache_key(self, record_id: Any, with_meta: bool) -> str:
        return f"post_{record_id}_{'with_meta' if with_meta else 'no_meta'}"

    # -- lifecycle -----------------------------------------------------------

    def run(self) -> "Entity":
        if self.state is LifecycleState.RUNNING:
            return self
        self.state = LifecycleState.REGISTERED
        try:
            for callback in self._setup:
                callback(self)
            for schema in self._schemas.values():
                if not any(hooked is schema for hooked in self._hooked):
                    schema.on_success(self._schema_saved)
                    self._hooked.append(schema)
            for callback in self._after_run:
                callback(self)
        except Exception:
            logger.exception("entity_run_failed type=%s", self.entity_type)
            self._schemas.clear()
            self.state = LifecycleState.UNREGISTERED
            raise
        self.state = LifecycleState.RUNNING
        logger.info("entity_running type=%s schemas=%s", self.entity_type, list(self._schemas))
        return self

    def shutdown(self) -> "Entity":
        if self.state is LifecycleState.UNREGISTERED:
            return self
        for callback in reversed(self._teardown):
            callback(self)
        self._schemas.clear()
        self.state = LifecycleState.UNREGISTERED
        logger.info("entity_shutdown type=%s", self.entity_type)
        return self

    def _require_running(self, action: str) -> None:
        if self.state is not LifecycleState.RUNNING:
            raise LifecycleError("ENTITY_NOT_RUNNING", f"{self.entity_type} must be running to {action}", action)

    def _schema_saved(self, entity_id: Any, schema: FieldSchema) -> None:
        self._invalidate(entity_id)

    # -- schema registry -----------------------------------------------------

    def register_schema(self, schema: FieldSchema) -> FieldSchema:
        if self.state is LifecycleState.RUNNING:
            raise LifecycleError("ENTITY_ALREADY_RUNNING", "schemas are registered during setup", schema.id)
        if schema.id in self._schemas:
            raise SchemaError("DUPLICATE_SCHEMA", f"Duplicate schema id: {schema.id}", schema.id)
        if schema.owner_entity_type != self.entity_type:
            raise SchemaError(
                "SCHEMA_OWNER_MISMATCH",
                f"Schema belongs to {schema.owner_entity_type}, not {self.entity_type}",
                schema.id,
            )
        if not schema.bound:
            schema.bind(self.store)
        self._schemas[schema.id] = schema
        return schema

    def get_schema(self, schema_id: str) -> FieldSchema | None:
        return self._schemas.get(schema_id)

    def get_schemas(self) -> list[FieldSchema]:
        return list(self._schemas.values())

    def get_expected_fields(self) -> list[str]:
        paths = [f"entity.{key}" for key in ENTITY_KEYS]
        for schema in self._schemas.values():
            paths.extend(f"meta.{schema.id}.{key}" for key in schema.field_keys())
        return paths

    # -- cache ---------------------------------------------------------------

    def add_cache_dependency(self, namespace: str, key: str) -> None:
        if (namespace, key) not in self._cache_deps:
            self._cache_deps.append((namespace, key))

    def _invalidate(self, record_id: Any = None) -> None:
        for namespace, key in self._cache_deps:
            self.cache.delete(namespace, key)
        if record_id is not None:
            for with_meta in (True, False):
                self.cache.delete(self.record_namespace, self.record_cache_key(record_id, with_meta))

    # -- CRUD ----------------------------------------------------------------

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self.clock.now(), timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _base_values(self, fields: Any, partial: bool) -> tuple[dict, list[dict]]:
        if fields is None:
            fields = {}
        if not isinstance(fields, dict):
            return {}, [_issue(INVALID_FORMAT, "fields must be an object", "fields")]
        values: dict = {}
        issues: list[dict] = []
        for key in ("title", "body"):
            if key not in fields:
                if not partial:
                    values[key] = ""
                continue
            raw = fields[key]
            if raw is None:
                values[key] = ""
            elif isinstance(raw, str):
                values[key] = raw if key == "body" else raw.strip()
            else:
                issues.append(_issue(INVALID_FORMAT, f"{key} must be text", f"entity.{key}", {"value": raw}))
        if "status" in fields:
            status = fields["status"]
            if status not in STATUSES:
                issues.append(
                    _issue(INVALID_CHOICE, f"status must be one of {list(STATUSES)}", "entity.status", {"value": status})
                )
            else:
                values["status"] = status
        elif not partial:
            values["status"] = DEFAULT_STATUS
        return values, issues

    def _meta_issues(self, meta: Any) -> list[dict]:
        if not isinstance(meta, dict):
            return [_issue(INVALID_FORMAT, "meta must be an object keyed by schema id", "meta")]
        unknown = [schema_id for schema_id in meta if schema_id not in self._schemas]
        if unknown:
            return [_issue("UNKNOWN_SCHEMA", f"Unknown schema ids: {unknown}", "meta", {"schema_ids": unknown})]
        return [
            _issue(INVALID_FORMAT, "schema values must be an object", f"meta.{schema_id}")
            for schema_id, values in meta.items()
            if values is not None and not isinstance(values, dict)
        ]

    def _persist_meta(self, record_id: str, meta: dict, merge: bool) -> dict | None:
        for schema in self._schemas.values():
            if schema.id not in meta:
                continue
            result = schema.persist(record_id, meta[schema.id], merge=merge)
            if not result["ok"]:
                return _fail(
                    _issue(
                        "VALIDATION_FAILED",
                        f"{schema.label} failed validation",
                        f"meta.{schema.id}",
                        {"schema_id": schema.id, "errors": result["errors"], "record_id": record_id},
                    ),
                    record_id=record_id,
                )
        return None

    def create(self, fields: dict | None, meta: dict | None = None) -> dict:
        self._require_running("create")
        meta = {} if meta is None else meta
        issues = self._meta_issues(meta)
        base, base_issues = self._base_values(fields, partial=False)
        issues.extend(base_issues)
        if issues:
            return _fail(*issues)
        stamp = self._timestamp()
        record = self.store.create_record(self.entity_type, {**base, "created_at": stamp, "updated_at": stamp})
        record_id = record["id"]
        try:
            failure = self._persist_meta(record_id, meta, merge=False)
        finally:
            self._invalidate(record_id)
        if failure is not None:
            logger.warning("entity_create_partial type=%s id=%s", self.entity_type, record_id)
            return failure
        logger.info("entity_created type=%s id=%s", self.entity_type, record_id)
        return {"ok": True, "id": record_id, "record": self._view(record, with_meta=True)}

    def update(self, record_id: Any, fields: dict | None = None, meta: dict | None = None) -> dict:
        self._require_running("update")
        record = self.store.get_record(self.entity_type, record_id)
        if record is None:
            return _fail(_issue("NOT_FOUND", f"{self.label} not found", str(record_id)))
        meta = {} if meta is None else meta
        issues = self._meta_issues(meta)
        base, base_issues = self._base_values(fields, partial=True)
        issues.extend(base_issues)
        if issues:
            return _fail(*issues)
        record_id = record["id"]
        try:
            record = self.store.update_record(self.entity_type, record_id, {**base, "updated_at": self._timestamp()})
            failure = self._persist_meta(record_id, meta, merge=True)
        finally:
            self._invalidate(record_id)
        if failure is not None:
            return failure
        logger.info("entity_updated type=%s id=%s", self.entity_type, record_id)
        return {"ok": True, "id": record_id, "record": self._view(record, with_meta=True)}

    def delete(self, record_id: Any) -> dict:
        self._require_running("delete")
        record = self.store.get_record(self.entity_type, record_id)
        if record is None:
            return _fail(_issue("NOT_FOUND", f"{self.label} not found", str(record_id)))
        try:
            self.store.delete_record(self.entity_type, record["id"])
            self.store.delete_groups(record["id"])
        finally:
            self._invalidate(record["id"])
        logger.info("entity_deleted type=%s id=%s", self.entity_type, record["id"])
        return {"ok": True, "id": record["id"]}

    # -- reads ---------------------------------------------------------------

    def _view(self, record: dict, with_meta: bool) -> dict:
        view = {
            "id": record.get("id"),
            "entity": {key: record.get(key) for key in ENTITY_KEYS},
            "meta": {},
        }
        if with_meta:
            view["meta"] = {schema_id: schema.load(record["id"]) for schema_id, schema in self._schemas.items()}
        return view

    def iter_posts(self, query: dict | None = None, with_meta: bool = False) -> Iterator[dict]:
        """Lazily yield views matching ``query``.

        Rows stream straight from the store unless ``order_by`` is given, in
        which case the matching set is materialized for sorting.
        """
        self._require_running("query")
        query = validate_query(query)
        condition = build_condition(query)
        load_meta = with_meta or needs_meta(query)
        term = (query.get("search") or "").strip().lower()
        return self._iter_views(query, condition, load_meta, with_meta, term)

    def _iter_views(self, query: dict, condition, load_meta: bool, with_meta: bool, term: str) -> Iterator[dict]:
        def matching() -> Iterator[dict]:
            for record in self.store.iter_records(self.entity_type):
                view = self._view(record, load_meta)
                if condition is not None and not matches(condition, view):
                    continue
                if term and term not in search_text(view):
                    continue
                yield view

        views: Iterable[dict] = matching()
        if query.get("order_by"):
            views = sort_views(views, query["order_by"])
        offset = query.get("offset") or 0
        limit = query.get("limit")
        stop = offset + limit if limit is not None else None
        for view in itertools.islice(views, offset, stop):
            if not with_meta:
                view["meta"] = {}
            yield view

    def get_posts(self, query: dict | None = None, with_meta: bool = False) -> list[dict]:
        return list(self.iter_posts(query, with_meta=with_meta))

    def get_post(self, record_id: Any, with_meta: bool = True) -> dict | None:
        self._require_running("read")
        key = self.record_cache_key(record_id, with_meta)
        cached = self.cache.get(self.record_namespace, key)
        if cached is not MISSING:
            return copy.deepcopy(cached)
        record = self.store.get_record(self.entity_type, record_id)
        if record is None:
            return None
        view = self._view(record, with_meta)
        self.cache.set(self.record_namespace, key, view, RECORD_CACHE_TTL_S)
        return copy.deepcopy(view)

    def get_by(self, path: str, value: Any, with_meta: bool = False) -> list[dict]:
        return self.get_posts({"filters": [{"field": path, "op": "eq", "value": value}]}, with_meta=with_meta)

    def search(self, term: str, fields: Iterable[str] = ("title", "body"), query: dict | None = None) -> list[dict]:
        """Relevance-ranked matches, highest score first.

        Title containing the term scores 10 (30 on an exact title match),
        each body occurrence 2 and each meta value containing it 1.
        """
        term = (term or "").strip().lower()
        if not term:
            return []
        fields = set(fields)
        scored: list[tuple[int, dict]] = []
        for view in self.iter_posts(query, with_meta=True):
            entity = view["entity"]
            score = 0
            if "title" in fields:
                title = str(entity.get("title") or "").lower()
                if term in title:
                    score += 10
                if title == term:
                    score += 20
            if "body" in fields:
                score += 2 * str(entity.get("body") or "").lower().count(term)
            for group in view["meta"].values():
                for value in group.values():
                    if value is not None and term in str(value).lower():
                        score += 1
            if score:
                view["score"] = score
                scored.append((score, view))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [view for _, view in scored]

    # -- stats ---------------------------------------------------------------

    def _choices_for(self, path: str) -> list:
        parts = split_path(path)
        if parts[0] == "entity":
            return list(STATUSES) if parts[1] == "status" else []
        schema = self._schemas.get(parts[1])
        field = schema.get_field(parts[2]) if schema else None
        if field is None or field["kind"] != "select":
            return []
        return list(field["choices"])

    def get_stats(self) -> dict:
        self._require_running("compute stats")
        snapshot = self.cache.remember(self.stats_namespace, self.stats_key, STATS_TTL_S, self._compute_stats)
        return copy.deepcopy(snapshot)

    def _compute_stats(self) -> dict:
        status_path = normalize_path(self.stats.get("status") or "status")
        priority_path = normalize_path(self.stats["priority"]) if self.stats.get("priority") else None
        due_path = normalize_path(self.stats["due"]) if self.stats.get("due") else None
        completed = self.stats.get("completed", "completed")
        paths = [p for p in (status_path, priority_path, due_path) if p]
        load_meta = any(p.startswith("meta.") for p in paths)

        snapshot: dict = {"total": 0}
        for status in self._choices_for(status_path):
            if status not in _STATS_RESERVED:
                snapshot[status] = 0
        breakdown = {choice: 0 for choice in (self._choices_for(priority_path) if priority_path else [])}
        overdue = 0
        today = self.clock.today()

        for view in self.iter_posts(with_meta=load_meta):
            snapshot["total"] += 1
            status = resolve_path(view, status_path, None)
            if status is not None and str(status) not in _STATS_RESERVED:
                snapshot[str(status)] = snapshot.get(str(status), 0) + 1
            if priority_path:
                priority = resolve_path(view, priority_path, None)
                if priority is not None:
                    breakdown[str(priority)] = breakdown.get(str(priority), 0) + 1
            if due_path:
                due = _as_date(resolve_path(view, due_path, None))
                if due is not None and due < today and status != completed:
                    overdue += 1

        snapshot["priority_breakdown"] = breakdown
        snapshot["overdue"] = overdue
        logger.info("entity_stats_computed type=%s total=%s", self.entity_type, snapshot["total"])
        return snapshot

    # -- export --------------------------------------------------------------

    def export(self, spec: dict | None) -> dict:
        self._require_running("export")
        if self.exporter is None:
            raise LifecycleError("EXPORTER_UNBOUND", f"{self.entity_type} has no exporter", "exporter")
        spec = spec or {}
        fields = spec.get("fields") or self.get_expected_fields()
        load_meta = False
        for path in fields if isinstance(fields, list) else []:
            try:
                load_meta = load_meta or normalize_path(path).startswith("meta.")
            except FieldPathError:
                continue
        try:
            rows = self.iter_posts(spec.get("query_args"), with_meta=load_meta)
        except RecordQueryError as exc:
            logger.info("entity_export_rejected type=%s error=%s", self.entity_type, exc)
            return _fail(_issue("EXPORT_QUERY_FAILED", exc.message, exc.path, {"code": exc.code}))
        return self.exporter.export(
            rows,
            fields,
            fmt=spec.get("format", "csv"),
            name=spec.get("name") or f"{self.entity_type}s",
        )

    def finish_export(self, result: dict) -> bool:
        if self.exporter is None or not result or not result.get("ok") or not result.get("file_path"):
            return False
        return self.exporter.cleanup(result["file_path"])

    # -- admin metadata ------------------------------------------------------

    def get_admin_columns(self) -> list[dict]:
        return [dict(col) for col in self._admin_columns]

    def get_admin_buttons(self) -> list[dict]:
        return [dict(btn) for btn in self._admin_buttons]

    def format_admin_cell(self, column_id: str, view: dict) -> str:
        for column in self._admin_columns:
            if column.get("id") != column_id:
                continue
            value = resolve_path(view, column.get("field") or column_id, None)
            formatter = column.get("formatter")
            if formatter is not None:
                return formatter(value, view)
            return "" if value is None else str(value)
        raise SchemaError("UNKNOWN_COLUMN", f"Unknown admin column: {column_id}", column_id)
