"""Temporary-file sink for export artifacts."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger("recordkit.export")


def _export_root() -> Path:
    root = (os.getenv("RECORDKIT_EXPORT_DIR") or "").strip()
    return Path(root) if root else Path(tempfile.gettempdir())


class TempFileHandle:
    def __init__(self, fileobj, path: Path) -> None:
        self._file = fileobj
        self._path = path

    def write(self, data: bytes) -> int:
        return self._file.write(data)

    def path(self) -> str:
        return str(self._path)

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> "TempFileHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class TempFileSink:
    """Hands out process-unique files under one root; callers delete them."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else _export_root()

    def open_for_write(self, suffix: str = ".tmp") -> TempFileHandle:
        self.root.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=f"recordkit-{os.getpid()}-", suffix=suffix, dir=self.root)
        logger.debug("export_file_opened path=%s", name)
        return TempFileHandle(os.fdopen(fd, "wb"), Path(name))

    def delete(self, path: str | Path) -> bool:
        target = Path(path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"refusing to delete outside export root: {path}")
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.debug("export_file_deleted path=%s", target)
        return True
