"""Field schemas ("metaboxes"): typed field groups attached to an entity type.

A schema validates a mapping of raw values, writes the typed result as one
grouped record per ``(entity_id, schema_id)`` and fires lifecycle hooks
around the write. Validation is all-or-nothing: either every field passes and
the whole group is written, or nothing is written and ``error`` hooks fire.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List

logger = logging.getLogger("recordkit.schema")

KINDS = ("text", "select", "date", "number")

MISSING_VALUE = "MISSING_VALUE"
INVALID_CHOICE = "INVALID_CHOICE"
OUT_OF_RANGE = "OUT_OF_RANGE"
INVALID_FORMAT = "INVALID_FORMAT"

HOOK_EVENTS = ("success", "error", "pre_validate", "post_validate", "pre_save", "post_save")

Issue = Dict[str, Any]


@dataclass
class SchemaError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, tuple, dict)) and not value:
        return True
    return False


class _FieldValueError(Exception):
    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise _FieldValueError(INVALID_FORMAT, "must be a number")
    if isinstance(value, (int, float)):
        parsed = Decimal(str(value))
    elif isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            raise _FieldValueError(INVALID_FORMAT, "must be a number") from None
    else:
        raise _FieldValueError(INVALID_FORMAT, "must be a number")
    if not parsed.is_finite():
        raise _FieldValueError(INVALID_FORMAT, "must be a finite number")
    return parsed


def _number_value(field: dict, raw: Any) -> int | float:
    value = _to_decimal(raw)
    constraints = field["constraints"]
    lo = constraints.get("min")
    hi = constraints.get("max")
    step = constraints.get("step")
    if lo is not None and value < _to_decimal(lo):
        raise _FieldValueError(OUT_OF_RANGE, f"must be >= {lo}")
    if hi is not None and value > _to_decimal(hi):
        raise _FieldValueError(OUT_OF_RANGE, f"must be <= {hi}")
    if step:
        base = _to_decimal(lo) if lo is not None else Decimal(0)
        if (value - base) % _to_decimal(step) != 0:
            raise _FieldValueError(OUT_OF_RANGE, f"must be a multiple of {step} from {lo or 0}")
    if value == value.to_integral_value() and not isinstance(raw, float):
        return int(value)
    return float(value)


def _date_value(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw.strip())
        except ValueError:
            raise _FieldValueError(INVALID_FORMAT, "must be a YYYY-MM-DD date") from None
    raise _FieldValueError(INVALID_FORMAT, "must be a YYYY-MM-DD date")


def _text_value(raw: Any) -> str:
    if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
        raise _FieldValueError(INVALID_FORMAT, "must be text")
    return str(raw).strip()


def _select_value(field: dict, raw: Any) -> Any:
    choices = field["choices"]
    if isinstance(raw, (list, tuple, dict, set)):
        raise _FieldValueError(INVALID_CHOICE, f"must be one of {list(choices)}")
    if raw in choices:
        return raw
    if not isinstance(raw, str) and str(raw) in choices:
        return str(raw)
    raise _FieldValueError(INVALID_CHOICE, f"must be one of {list(choices)}")


def _encode(field: dict, value: Any) -> Any:
    if value is not None and field["kind"] == "date":
        return value.isoformat()
    return value


def _decode(field: dict, value: Any) -> Any:
    if value is None:
        return None
    if field["kind"] == "date" and isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            logger.warning("schema_decode_failed field=%s value=%r", field["key"], value)
            return None
    return value


class HookRegistry:
    def __init__(self) -> None:
        self._hooks: Dict[str, List[Callable[..., Any]]] = {event: [] for event in HOOK_EVENTS}

    def add(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self._hooks:
            raise SchemaError("UNKNOWN_HOOK", f"Unknown hook event: {event}", event)
        if not callable(callback):
            raise SchemaError("HOOK_NOT_CALLABLE", "Hook must be callable", event)
        self._hooks[event].append(callback)

    def count(self, event: str) -> int:
        return len(self._hooks.get(event, []))

    def fire(self, event: str, *args: Any) -> None:
        for callback in list(self._hooks.get(event, [])):
            try:
                callback(*args)
            except Exception:
                logger.exception("schema_hook_failed event=%s callback=%r", event, callback)


class FieldSchema:
    def __init__(self, schema_id: str, label: str, owner_entity_type: str, store=None) -> None:
        if not isinstance(schema_id, str) or not schema_id.strip():
            raise SchemaError("SCHEMA_ID_INVALID", "Schema id must be a non-empty string", "id")
        self.id = schema_id.strip()
        self.label = label
        self.owner_entity_type = owner_entity_type
        self.hooks = HookRegistry()
        self.last_errors: Dict[str, str] = {}
        self._fields: List[dict] = []
        self._sanitizers: Dict[str, Callable[[Any], Any]] = {}
        self._store = store

    @classmethod
    def define(cls, schema_id: str, label: str, owner_entity_type: str) -> "FieldSchema":
        return cls(schema_id, label, owner_entity_type)

    def bind(self, store) -> "FieldSchema":
        self._store = store
        return self

    @property
    def bound(self) -> bool:
        return self._store is not None

    @property
    def store(self):
        if self._store is None:
            raise SchemaError("SCHEMA_UNBOUND", "Schema has no content store bound", self.id)
        return self._store

    def add_field(
        self,
        key: str,
        label: str,
        kind: str,
        choices: dict | None = None,
        constraints: dict | None = None,
    ) -> "FieldSchema":
        if not isinstance(key, str) or not key.strip():
            raise SchemaError("FIELD_KEY_INVALID", "Field key must be a non-empty string", self.id)
        key = key.strip()
        if any(f["key"] == key for f in self._fields):
            raise SchemaError("DUPLICATE_KEY", f"Duplicate field key: {key}", f"{self.id}.{key}")
        if kind not in KINDS:
            raise SchemaError("UNKNOWN_KIND", f"Unsupported field kind: {kind}", f"{self.id}.{key}")
        if kind == "select" and not choices:
            raise SchemaError("CHOICES_REQUIRED", "select fields need choices", f"{self.id}.{key}")
        self._fields.append(
            {
                "key": key,
                "label": label,
                "kind": kind,
                "choices": dict(choices or {}) if kind == "select" else {},
                "constraints": dict(constraints or {}),
            }
        )
        return self

    def on(self, event: str, callback: Callable[..., Any]) -> "FieldSchema":
        self.hooks.add(event, callback)
        return self

    def on_success(self, callback: Callable[[Any, "FieldSchema"], Any]) -> "FieldSchema":
        return self.on("success", callback)

    def on_error(self, callback: Callable[[dict, Any, "FieldSchema"], Any]) -> "FieldSchema":
        return self.on("error", callback)

    def register_sanitizer(self, kind: str, sanitizer: Callable[[Any], Any]) -> "FieldSchema":
        if kind not in KINDS:
            raise SchemaError("UNKNOWN_KIND", f"Unsupported field kind: {kind}", self.id)
        self._sanitizers[kind] = sanitizer
        return self

    def get_fields(self) -> list[dict]:
        return copy.deepcopy(self._fields)

    def get_field(self, key: str) -> dict | None:
        for field in self._fields:
            if field["key"] == key:
                return copy.deepcopy(field)
        return None

    def field_keys(self) -> list[str]:
        return [f["key"] for f in self._fields]

    def describe(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "owner_entity_type": self.owner_entity_type,
            "fields": [
                {
                    "key": f["key"],
                    "label": f["label"],
                    "kind": f["kind"],
                    "choices": dict(f["choices"]),
                    "required": bool(f["constraints"].get("required")),
                    "default": f["constraints"].get("default"),
                    "description": f["constraints"].get("description", ""),
                }
                for f in self._fields
            ],
        }

    def defaults(self) -> dict:
        return {f["key"]: f["constraints"].get("default") for f in self._fields}

    def _coerce(self, field: dict, raw: Any) -> Any:
        sanitizer = self._sanitizers.get(field["kind"])
        if sanitizer is not None:
            raw = sanitizer(raw)
        kind = field["kind"]
        if kind == "number":
            return _number_value(field, raw)
        if kind == "date":
            return _date_value(raw)
        if kind == "select":
            return _select_value(field, raw)
        return _text_value(raw)

    def validate(self, values: dict | None) -> dict:
        if values is None:
            values = {}
        if not isinstance(values, dict):
            return {
                "ok": False,
                "errors": {"$": INVALID_FORMAT},
                "issues": [_issue(INVALID_FORMAT, "Field values must be an object", self.id)],
            }
        typed: dict = {}
        errors: Dict[str, str] = {}
        issues: List[Issue] = []
        for field in self._fields:
            key = field["key"]
            constraints = field["constraints"]
            raw = values.get(key)
            if key not in values and "default" in constraints:
                raw = constraints.get("default")
            if _is_empty(raw):
                if constraints.get("required"):
                    errors[key] = MISSING_VALUE
                    issues.append(_issue(MISSING_VALUE, f"{field['label']} is required", key))
                else:
                    typed[key] = None
                continue
            try:
                typed[key] = self._coerce(field, raw)
            except _FieldValueError as exc:
                errors[key] = exc.kind
                issues.append(_issue(exc.kind, f"{field['label']} {exc.message}", key, {"value": raw}))
        if errors:
            return {"ok": False, "errors": errors, "issues": issues}
        return {"ok": True, "values": typed}

    def persist(self, entity_id: Any, values: dict | None, merge: bool = False) -> dict:
        incoming = dict(values or {})
        if merge:
            stored = self.store.get_group(entity_id, self.id) or {}
            incoming = {**stored, **incoming}
        self.hooks.fire("pre_validate", entity_id, incoming, self)
        result = self.validate(incoming)
        self.hooks.fire("post_validate", entity_id, incoming, result.get("errors", {}), self)
        if not result["ok"]:
            self.last_errors = dict(result["errors"])
            logger.info("schema_validation_failed schema=%s entity_id=%s errors=%s", self.id, entity_id, result["errors"])
            self.hooks.fire("error", dict(result["errors"]), entity_id, self)
            return result
        self.last_errors = {}
        typed = result["values"]
        encoded = {f["key"]: _encode(f, typed.get(f["key"])) for f in self._fields}
        self.hooks.fire("pre_save", entity_id, self)
        self.store.put_group(entity_id, self.id, encoded)
        logger.info("schema_saved schema=%s entity_id=%s", self.id, entity_id)
        self.hooks.fire("success", entity_id, self)
        self.hooks.fire("post_save", entity_id, True, self)
        return {"ok": True, "values": typed}

    def load(self, entity_id: Any) -> dict:
        stored = self.store.get_group(entity_id, self.id) or {}
        out = {}
        for field in self._fields:
            key = field["key"]
            value = _decode(field, stored.get(key))
            if value is None:
                value = field["constraints"].get("default")
                if value is not None and field["kind"] == "date":
                    value = _decode(field, value) if isinstance(value, str) else value
            out[key] = value
        return out

    def __repr__(self) -> str:
        return f"FieldSchema(id={self.id!r}, owner={self.owner_entity_type!r}, fields={self.field_keys()!r})"
