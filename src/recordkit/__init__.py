"""recordkit kernel utilities."""

from .field_path import FieldPathError, normalize_path, path_label, resolve_path, split_path

__all__ = [
    "FieldPathError",
    "normalize_path",
    "path_label",
    "resolve_path",
    "split_path",
]
