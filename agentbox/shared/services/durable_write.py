"""Crash-safe JSON file writes for the log and thread stores.

Every rewrite goes through a temp file in the same directory followed by
os.replace, so a reader sees either the old document or the new one,
never a torn write.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist rename metadata."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Some platforms/filesystems do not support directory fsync.
        pass


def _dumps(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def atomic_write_json(path: Path, data: Any) -> None:
    """Atomically replace *path* with the JSON encoding of *data*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = _dumps(data)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def create_json_exclusive(path: Path, data: Any) -> bool:
    """Write *path* only if it does not exist yet.

    Returns False when another writer already created it. The first write
    of a record is therefore also its uniqueness check.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(_dumps(data))
            f.flush()
            os.fsync(f.fileno())
    except FileExistsError:
        return False
    _fsync_dir(path.parent)
    return True


def read_json(path: Path) -> Any | None:
    """Decoded JSON document at *path*, or None when missing or unreadable."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unreadable JSON document %s: %s", path, exc)
        return None
