"""Postgres connection pool and query helpers for the DB-backed content store."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool


def get_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")
    return url


_POOL: ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("recordkit.db")
_query_logger = logging.getLogger("recordkit.db.query")
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("recordkit_db_stats", default=None)
_SLOW_MS = float(os.getenv("RECORDKIT_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("RECORDKIT_QUERY_LOG", "").strip() == "1"
STATEMENT_TIMEOUT_MS = int(os.getenv("RECORDKIT_DB_STATEMENT_TIMEOUT_MS", "5000"))
STREAM_BATCH = int(os.getenv("RECORDKIT_DB_STREAM_BATCH", "500"))


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}…{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(*, query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    stats = get_db_stats()
    stats["queries"] += 1
    stats["total_ms"] += elapsed_ms
    _DB_STATS.set(stats)
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.info("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            return
        if minconn is None:
            minconn = int(os.getenv("RECORDKIT_DB_POOL_MIN", "1"))
        if maxconn is None:
            maxconn = int(os.getenv("RECORDKIT_DB_POOL_MAX", "10"))
        # every statement is bounded; the core never retries
        _POOL = ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=get_db_url(),
            options=f"-c statement_timeout={STATEMENT_TIMEOUT_MS}",
        )
        _logger.info("db_pool_ready min=%s max=%s statement_timeout_ms=%s", minconn, maxconn, STATEMENT_TIMEOUT_MS)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            _POOL.closeall()
            _POOL = None


def _get_pool() -> ThreadedConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


def reset_db_stats() -> None:
    _DB_STATS.set({"queries": 0, "total_ms": 0.0})


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "total_ms": 0.0}
    return stats


@contextmanager
def get_conn():
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        row = cur.fetchone()
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return dict(row) if row else None


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params or [])
        rows = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return rows


def iter_rows(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> Iterator[dict]:
    """Stream rows through a server-side cursor, ``STREAM_BATCH`` at a time."""
    start = time.perf_counter()
    count = 0
    name = f"recordkit_{uuid.uuid4().hex[:12]}"
    with conn.cursor(name=name, cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.itersize = STREAM_BATCH
        cur.execute(sql, params or [])
        for row in cur:
            count += 1
            yield dict(row)
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=count)


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params or [])
        rowcount = cur.rowcount
    _log_query(query_name=query_name, params=params, elapsed_ms=(time.perf_counter() - start) * 1000, rowcount=rowcount)
    return rowcount
