"""Environment-driven wiring: logging, content store choice and the Todo entity."""

from __future__ import annotations

import logging
import os

from app.stores import MemoryContentStore
from app.tmpfiles import TempFileSink
from app.todo import build_todo_entity
from memo_cache import shared_cache
from record_export import RecordExporter

USE_DB = os.getenv("USE_DB", "").strip() == "1"
LOG_LEVEL = os.getenv("RECORDKIT_LOG_LEVEL", "INFO").strip().upper() or "INFO"

logger = logging.getLogger("recordkit.runtime")


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO))


def build_store(use_db: bool | None = None):
    use_db = USE_DB if use_db is None else use_db
    if use_db:
        from app.stores_db import DbContentStore

        store = DbContentStore()
        store.ensure_schema()
        logger.info("content_store=db")
        return store
    logger.info("content_store=memory")
    return MemoryContentStore()


def build_runtime(use_db: bool | None = None, cache=None, clock=None) -> dict:
    store = build_store(use_db)
    cache = cache or shared_cache
    exporter = RecordExporter(TempFileSink())
    todos = build_todo_entity(store, cache, clock=clock, exporter=exporter).run()
    return {"store": store, "cache": cache, "exporter": exporter, "todos": todos}
