"""Postgres-backed content store for entity records and schema field groups."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import psycopg2

from app.db import execute, fetch_one, get_conn, iter_rows
from app.stores import StoreError

logger = logging.getLogger("recordkit.db")

_SCHEMA_SQL = (
    """
    create table if not exists entity_records (
        seq bigserial,
        id text primary key,
        entity_type text not null,
        data jsonb not null,
        created_at timestamptz not null default now(),
        updated_at timestamptz not null default now()
    )
    """,
    "create index if not exists entity_records_type_seq on entity_records (entity_type, seq)",
    """
    create table if not exists field_groups (
        record_id text not null,
        schema_id text not null,
        data jsonb not null,
        updated_at timestamptz not null default now(),
        primary key (record_id, schema_id)
    )
    """,
)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _record_from_row(row: dict) -> dict:
    record = copy.deepcopy(_ensure_json(row.get("data")) or {})
    record["id"] = str(row.get("id"))
    return record


@contextmanager
def _store_errors(action: str, path: str | None = None):
    try:
        yield
    except psycopg2.Error as exc:
        logger.warning("store_failed action=%s path=%s error=%s", action, path, exc)
        raise StoreError("STORE_BACKEND_ERROR", f"{action} failed: {exc}", path) from exc


class DbContentStore:
    """Same contract as ``MemoryContentStore``; ``seq`` keeps insertion order."""

    def ensure_schema(self) -> None:
        with _store_errors("ensure_schema"):
            with get_conn() as conn:
                for sql in _SCHEMA_SQL:
                    execute(conn, sql, query_name="content_store.ensure_schema")

    def create_record(self, entity_type: str, data: dict) -> dict:
        if not isinstance(data, dict):
            raise StoreError("STORE_INVALID_PAYLOAD", "record data must be an object", entity_type)
        record = copy.deepcopy(data)
        record["id"] = str(uuid.uuid4())
        record.setdefault("created_at", _now())
        record.setdefault("updated_at", record["created_at"])
        with _store_errors("create_record", entity_type):
            with get_conn() as conn:
                execute(
                    conn,
                    """
                    insert into entity_records (id, entity_type, data, created_at, updated_at)
                    values (%s, %s, %s::jsonb, %s, %s)
                    """,
                    [record["id"], entity_type, _json_dumps(record), record["created_at"], record["updated_at"]],
                    query_name="entity_records.create",
                )
        return record

    def get_record(self, entity_type: str, record_id: Any) -> dict | None:
        with _store_errors("get_record", str(record_id)):
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    "select id, data from entity_records where entity_type=%s and id=%s",
                    [entity_type, str(record_id)],
                    query_name="entity_records.get",
                )
        return _record_from_row(row) if row else None

    def update_record(self, entity_type: str, record_id: Any, changes: dict) -> dict:
        with _store_errors("update_record", str(record_id)):
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    "select id, data from entity_records where entity_type=%s and id=%s for update",
                    [entity_type, str(record_id)],
                    query_name="entity_records.get_for_update",
                )
                if row is None:
                    raise StoreError("STORE_RECORD_MISSING", "record not found", str(record_id))
                updated = _record_from_row(row)
                updated.update(copy.deepcopy(changes))
                updated["id"] = str(row.get("id"))
                if "updated_at" not in changes:
                    updated["updated_at"] = _now()
                execute(
                    conn,
                    "update entity_records set data=%s::jsonb, updated_at=%s where entity_type=%s and id=%s",
                    [_json_dumps(updated), updated["updated_at"], entity_type, updated["id"]],
                    query_name="entity_records.update",
                )
        return updated

    def delete_record(self, entity_type: str, record_id: Any) -> bool:
        with _store_errors("delete_record", str(record_id)):
            with get_conn() as conn:
                count = execute(
                    conn,
                    "delete from entity_records where entity_type=%s and id=%s",
                    [entity_type, str(record_id)],
                    query_name="entity_records.delete",
                )
        return count > 0

    def iter_records(self, entity_type: str) -> Iterator[dict]:
        with _store_errors("iter_records", entity_type):
            with get_conn() as conn:
                for row in iter_rows(
                    conn,
                    "select id, data from entity_records where entity_type=%s order by seq",
                    [entity_type],
                    query_name="entity_records.iter",
                ):
                    yield _record_from_row(row)

    def count(self, entity_type: str) -> int:
        with _store_errors("count", entity_type):
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    "select count(*) as n from entity_records where entity_type=%s",
                    [entity_type],
                    query_name="entity_records.count",
                )
        return int((row or {}).get("n") or 0)

    def get_group(self, record_id: Any, schema_id: str) -> dict | None:
        with _store_errors("get_group", f"{record_id}.{schema_id}"):
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    "select data from field_groups where record_id=%s and schema_id=%s",
                    [str(record_id), schema_id],
                    query_name="field_groups.get",
                )
        if not row:
            return None
        return copy.deepcopy(_ensure_json(row.get("data")) or {})

    def put_group(self, record_id: Any, schema_id: str, values: dict) -> None:
        if not isinstance(values, dict):
            raise StoreError("STORE_INVALID_PAYLOAD", "group values must be an object", schema_id)
        with _store_errors("put_group", f"{record_id}.{schema_id}"):
            with get_conn() as conn:
                execute(
                    conn,
                    """
                    insert into field_groups (record_id, schema_id, data, updated_at)
                    values (%s, %s, %s::jsonb, now())
                    on conflict (record_id, schema_id)
                    do update set data=excluded.data, updated_at=excluded.updated_at
                    """,
                    [str(record_id), schema_id, _json_dumps(values)],
                    query_name="field_groups.put",
                )

    def delete_groups(self, record_id: Any) -> int:
        with _store_errors("delete_groups", str(record_id)):
            with get_conn() as conn:
                return execute(
                    conn,
                    "delete from field_groups where record_id=%s",
                    [str(record_id)],
                    query_name="field_groups.delete",
                )
