"""Query evaluation over entity views.

Conditions use the same node shapes as the rest of the house DSL::

    {"op": "and", "children": [...]}
    {"op": "eq", "left": {"var": "meta.todo_details.status"}, "right": {"literal": "pending"}}

``var`` names are dotted view paths (bare names address the entity). The
shorthand ``{"field": ..., "op": ..., "value": ...}`` compiles into the same
tree.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Iterator, List

from recordkit.field_path import MISSING, FieldPathError, normalize_path, resolve_path

COMPARE_OPS = {"eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "contains", "exists", "not_exists"}
QUERY_KEYS = {"where", "filters", "order_by", "limit", "offset", "search"}


@dataclass
class RecordQueryError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _schema_error(message: str, path: str) -> RecordQueryError:
    return RecordQueryError("QUERY_SCHEMA_ERROR", message, path)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _comparable(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return not (isinstance(left, float) and not math.isfinite(left)) and not (
            isinstance(right, float) and not math.isfinite(right)
        )
    if isinstance(left, date) and isinstance(right, date):
        return True
    return isinstance(left, str) and isinstance(right, str)


def _coerce_literal(left: Any, right: Any) -> Any:
    # date fields compare against ISO literals
    if isinstance(left, date) and isinstance(right, str):
        try:
            return date.fromisoformat(right)
        except ValueError:
            return right
    return right


def _resolve_var(view: dict, name: Any, path: str) -> Any:
    if not isinstance(name, str):
        raise _schema_error("var must be string", path)
    try:
        normalize_path(name)
    except FieldPathError as exc:
        raise _schema_error(exc.message, path) from None
    return resolve_path(view, name, MISSING)


def _eval_value(node: Any, view: dict, path: str) -> Any:
    if not isinstance(node, dict):
        raise _schema_error("Value node must be object", path)
    if "var" in node:
        return _resolve_var(view, node["var"], path)
    if "literal" in node:
        return node["literal"]
    raise _schema_error("Invalid value node", path)


def matches(cond: Any, view: dict, path: str = "$") -> bool:
    if not isinstance(cond, dict):
        raise _schema_error("Condition must be object", path)
    op = cond.get("op")
    if op in {"and", "or"}:
        children = cond.get("children")
        if not isinstance(children, list):
            raise _schema_error("children must be list", f"{path}.children")
        results = (matches(child, view, f"{path}.children[{i}]") for i, child in enumerate(children))
        return all(results) if op == "and" else any(results)
    if op == "not":
        children = cond.get("children")
        if not isinstance(children, list) or len(children) != 1:
            raise _schema_error("not requires single child", f"{path}.children")
        return not matches(children[0], view, f"{path}.children[0]")
    if op not in COMPARE_OPS:
        raise RecordQueryError("QUERY_UNKNOWN_OP", f"Unknown op: {op}", path)

    if "left" not in cond:
        raise _schema_error("Missing required field: left", path)
    left = _eval_value(cond.get("left"), view, f"{path}.left")
    if op in {"exists", "not_exists"}:
        present = left is not MISSING and left is not None
        return present if op == "exists" else not present
    if "right" not in cond:
        raise _schema_error("Missing required field: right", path)
    right = _eval_value(cond.get("right"), view, f"{path}.right")
    if left is MISSING:
        left = None
    if right is MISSING:
        right = None

    if op in {"in", "not_in"}:
        if not isinstance(right, list):
            raise RecordQueryError("QUERY_TYPE_ERROR", "right must be list", f"{path}.right")
        candidates = [_coerce_literal(left, item) for item in right]
        return (left in candidates) if op == "in" else (left not in candidates)
    right = _coerce_literal(left, right)
    if op == "eq":
        return left == right
    if op == "neq":
        return left != right
    if op == "contains":
        if isinstance(left, str) and isinstance(right, str):
            return right.lower() in left.lower()
        if isinstance(left, list):
            return right in left
        return False
    # range comparisons never match missing or mismatched values
    if left is None or right is None or not _comparable(left, right):
        return False
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


def compile_filters(filters: Any) -> dict:
    """Turn ``[{"field", "op", "value"}]`` shorthand into an ``and`` node."""
    if isinstance(filters, dict):
        filters = [{"field": key, "op": "eq", "value": value} for key, value in filters.items()]
    if not isinstance(filters, list):
        raise _schema_error("filters must be a list or object", "filters")
    children = []
    for idx, item in enumerate(filters):
        path = f"filters[{idx}]"
        if not isinstance(item, dict) or not isinstance(item.get("field"), str):
            raise _schema_error("filter needs a field", path)
        op = item.get("op", "eq")
        if op not in COMPARE_OPS:
            raise RecordQueryError("QUERY_UNKNOWN_OP", f"Unknown op: {op}", path)
        node: dict = {"op": op, "left": {"var": item["field"]}}
        if op not in {"exists", "not_exists"}:
            node["right"] = {"literal": item.get("value")}
        children.append(node)
    return {"op": "and", "children": children}


def build_condition(query: dict | None) -> dict | None:
    query = query or {}
    parts = []
    if query.get("where") is not None:
        parts.append(query["where"])
    if query.get("filters"):
        parts.append(compile_filters(query["filters"]))
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return {"op": "and", "children": parts}


def _vars_in(node: Any) -> Iterator[str]:
    if isinstance(node, dict):
        if isinstance(node.get("var"), str):
            yield node["var"]
        for value in node.values():
            yield from _vars_in(value)
    elif isinstance(node, list):
        for item in node:
            yield from _vars_in(item)


def parse_order_by(order_by: Any) -> List[tuple[str, bool]]:
    """Return ``[(path, descending)]``. Accepts ``"-field"``, dicts or lists of either."""
    if order_by is None:
        return []
    items = order_by if isinstance(order_by, list) else [order_by]
    out = []
    for idx, item in enumerate(items):
        path = f"order_by[{idx}]"
        if isinstance(item, str):
            descending = item.startswith("-")
            field = item[1:] if descending else item
        elif isinstance(item, dict) and isinstance(item.get("field"), str):
            field = item["field"]
            direction = str(item.get("direction", "asc")).lower()
            if direction not in ("asc", "desc"):
                raise _schema_error("direction must be asc or desc", path)
            descending = direction == "desc"
        else:
            raise _schema_error("order_by entries must be strings or objects", path)
        try:
            out.append((normalize_path(field), descending))
        except FieldPathError as exc:
            raise _schema_error(exc.message, path) from None
    return out


def _check_value(node: Any, path: str) -> None:
    if not isinstance(node, dict):
        raise _schema_error("Value node must be object", path)
    if "var" in node:
        if not isinstance(node["var"], str):
            raise _schema_error("var must be string", path)
        try:
            normalize_path(node["var"])
        except FieldPathError as exc:
            raise _schema_error(exc.message, path) from None
        return
    if "literal" not in node:
        raise _schema_error("Invalid value node", path)


def check_condition(cond: Any, path: str = "$") -> None:
    """Reject malformed condition trees without evaluating them."""
    if not isinstance(cond, dict):
        raise _schema_error("Condition must be object", path)
    op = cond.get("op")
    if op in {"and", "or", "not"}:
        children = cond.get("children")
        if not isinstance(children, list):
            raise _schema_error("children must be list", f"{path}.children")
        if op == "not" and len(children) != 1:
            raise _schema_error("not requires single child", f"{path}.children")
        for i, child in enumerate(children):
            check_condition(child, f"{path}.children[{i}]")
        return
    if op not in COMPARE_OPS:
        raise RecordQueryError("QUERY_UNKNOWN_OP", f"Unknown op: {op}", path)
    if "left" not in cond:
        raise _schema_error("Missing required field: left", path)
    _check_value(cond["left"], f"{path}.left")
    if op in {"exists", "not_exists"}:
        return
    if "right" not in cond:
        raise _schema_error("Missing required field: right", path)
    _check_value(cond["right"], f"{path}.right")
    right = cond["right"]
    if op in {"in", "not_in"} and "literal" in right and not isinstance(right["literal"], list):
        raise RecordQueryError("QUERY_TYPE_ERROR", "right must be list", f"{path}.right")


def validate_query(query: dict | None) -> dict:
    if query is None:
        return {}
    if not isinstance(query, dict):
        raise _schema_error("query must be an object", "$")
    unknown = set(query.keys()) - QUERY_KEYS
    if unknown:
        raise _schema_error(f"Unknown query keys: {sorted(unknown)}", "$")
    for key in ("limit", "offset"):
        value = query.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            raise _schema_error(f"{key} must be a non-negative integer", key)
    if query.get("search") is not None and not isinstance(query["search"], str):
        raise _schema_error("search must be a string", "search")
    # surface malformed conditions before any store access
    condition = build_condition(query)
    if condition is not None:
        check_condition(condition, "where")
    parse_order_by(query.get("order_by"))
    return query


def needs_meta(query: dict | None) -> bool:
    query = query or {}
    paths = list(_vars_in(build_condition(query)))
    paths.extend(p for p, _ in parse_order_by(query.get("order_by")))
    return any(normalize_path(p).startswith("meta.") for p in paths)


def _sort_key(view: dict, path: str) -> tuple:
    value = resolve_path(view, path, None)
    if value is None:
        return (1, 0, "")
    if isinstance(value, bool):
        return (0, 0, int(value))
    if _is_number(value):
        return (0, 0, value)
    if isinstance(value, date):
        return (0, 1, value.isoformat())
    return (0, 2, str(value))


def sort_views(views: Iterable[dict], order_by: Any) -> List[dict]:
    keys = parse_order_by(order_by)
    # ids ascending first so that later stable passes keep it as the tie breaker
    ordered = sorted(views, key=lambda v: str(v.get("id")))
    for path, descending in reversed(keys):
        present = [v for v in ordered if resolve_path(v, path, None) is not None]
        missing = [v for v in ordered if resolve_path(v, path, None) is None]
        present.sort(key=lambda v: _sort_key(v, path), reverse=descending)
        ordered = present + missing
    return ordered


def search_text(view: dict) -> str:
    entity = view.get("entity") or {}
    return f"{entity.get('title') or ''} {entity.get('body') or ''}".lower()
