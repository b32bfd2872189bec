"""Dotted field path resolution over entity views."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List

ROOTS = ("entity", "meta")
MISSING = object()


@dataclass
class FieldPathError(Exception):
    message: str
    path: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path!r})"


def split_path(path: str) -> List[str]:
    if not isinstance(path, str) or not path.strip():
        raise FieldPathError("Path must be a non-empty string", str(path))
    segments = [seg.strip() for seg in path.strip().split(".")]
    if any(seg == "" for seg in segments):
        raise FieldPathError("Empty path segment", path)
    return segments


def normalize_path(path: str) -> str:
    """Qualify a bare attribute name with the ``entity`` root.

    ``title`` -> ``entity.title``; ``meta.todo_details.priority`` is returned
    unchanged. A ``meta`` path must name both the schema and the field.
    """
    segments = split_path(path)
    if segments[0] not in ROOTS:
        if len(segments) != 1:
            raise FieldPathError("Unknown path root", path)
        return f"entity.{segments[0]}"
    if segments[0] == "entity" and len(segments) != 2:
        raise FieldPathError("entity paths take exactly one attribute", path)
    if segments[0] == "meta" and len(segments) != 3:
        raise FieldPathError("meta paths take a schema id and a field key", path)
    return ".".join(segments)


def resolve_path(doc: Any, path: str, default: Any = None) -> Any:
    """Walk ``doc`` along ``path`` and return ``default`` when any hop is missing."""
    try:
        segments = split_path(normalize_path(path))
    except FieldPathError:
        return default
    current = doc
    for segment in segments:
        if not isinstance(current, dict):
            return default
        current = current.get(segment, MISSING)
        if current is MISSING:
            return default
    return current


def path_label(path: str) -> str:
    return split_path(path)[-1]
