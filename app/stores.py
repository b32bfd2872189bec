"""In-memory content store for entity records and schema field groups."""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Tuple


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class StoreError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class MemoryContentStore:
    """Base records per entity type plus grouped field values per (record, schema).

    Records keep insertion order (dicts preserve it). Every read hands out a
    deep copy so callers can never mutate stored state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, dict]] = {}
        self._groups: Dict[Tuple[str, str], dict] = {}

    def _bucket(self, entity_type: str) -> Dict[str, dict]:
        return self._records.setdefault(entity_type, {})

    def create_record(self, entity_type: str, data: dict) -> dict:
        if not isinstance(data, dict):
            raise StoreError("STORE_INVALID_PAYLOAD", "record data must be an object", entity_type)
        record_id = str(uuid.uuid4())
        record = copy.deepcopy(data)
        record["id"] = record_id
        record.setdefault("created_at", _now())
        record.setdefault("updated_at", record["created_at"])
        with self._lock:
            self._bucket(entity_type)[record_id] = record
        return copy.deepcopy(record)

    def get_record(self, entity_type: str, record_id: Any) -> dict | None:
        with self._lock:
            record = self._records.get(entity_type, {}).get(str(record_id))
            return copy.deepcopy(record) if record else None

    def update_record(self, entity_type: str, record_id: Any, changes: dict) -> dict:
        with self._lock:
            record = self._records.get(entity_type, {}).get(str(record_id))
            if record is None:
                raise StoreError("STORE_RECORD_MISSING", "record not found", str(record_id))
            updated = copy.deepcopy(record)
            updated.update(copy.deepcopy(changes))
            updated["id"] = record["id"]
            if "updated_at" not in changes:
                updated["updated_at"] = _now()
            self._bucket(entity_type)[record["id"]] = updated
            return copy.deepcopy(updated)

    def delete_record(self, entity_type: str, record_id: Any) -> bool:
        with self._lock:
            return self._records.get(entity_type, {}).pop(str(record_id), None) is not None

    def iter_records(self, entity_type: str) -> Iterator[dict]:
        with self._lock:
            snapshot = list(self._records.get(entity_type, {}).values())
        for record in snapshot:
            yield copy.deepcopy(record)

    def count(self, entity_type: str) -> int:
        with self._lock:
            return len(self._records.get(entity_type, {}))

    def get_group(self, record_id: Any, schema_id: str) -> dict | None:
        with self._lock:
            group = self._groups.get((str(record_id), schema_id))
            return copy.deepcopy(group) if group is not None else None

    def put_group(self, record_id: Any, schema_id: str, values: dict) -> None:
        if not isinstance(values, dict):
            raise StoreError("STORE_INVALID_PAYLOAD", "group values must be an object", schema_id)
        with self._lock:
            # whole-group replacement keeps a group write atomic for readers
            self._groups[(str(record_id), schema_id)] = copy.deepcopy(values)

    def delete_groups(self, record_id: Any) -> int:
        record_key = str(record_id)
        with self._lock:
            keys = [key for key in self._groups if key[0] == record_key]
            for key in keys:
                del self._groups[key]
        return len(keys)
