"""
Small on-disk state helpers.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def atomic_save(path: Path, data: bytes) -> None:
    """Write *data* to *path* atomically.

    Steps:
    1. Write to .tmp + fsync
    2. os.replace .tmp → target (atomic on POSIX)
    3. fsync directory (best-effort)
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")

    with open(tmp, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())

    os.replace(tmp, path)

    try:
        dir_fd = os.open(str(path.parent), os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError:
        pass


def load_json(path: Path) -> Optional[Any]:
    """Load a JSON document, returning None when missing or unreadable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring corrupt JSON file %s: %s", path, exc)
        return None


def save_json(path: Path, payload: Any) -> None:
    data = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    atomic_save(path, data.encode("utf-8"))


class JsonStateStore:
    """Tiny key/value store backed by one JSON file.

    Used by adapters for cursors that must survive restarts (Telegram update
    offset, Matrix sync token). ``path=None`` keeps everything in memory.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = path
        self._lock = threading.Lock()
        data = load_json(path) if path is not None else None
        self._data: Dict[str, Any] = data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if self._data.get(key) == value:
                return
            self._data[key] = value
            if self._path is not None:
                try:
                    save_json(self._path, self._data)
                except OSError as exc:
                    logger.warning("Failed to persist state %s: %s", self._path, exc)
