"""Crash-safe file helpers."""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, data: str) -> None:
    """Write `data` to a sibling temp file and rename it over `path`.

    Readers observe either the previous content or the new content, never a
    truncated file.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
    try:
        with open(tmp, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, dump_json(data))


def safe_read_json(path: Path) -> Any | None:
    """Return parsed JSON, or None when the file is missing or unreadable."""

    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable JSON file", extra={"path": str(path), "error": str(exc)})
        return None


def reserve_unique(directory: Path, stem: str, suffix: str = ".json") -> Path:
    """Exclusively create ``<stem><suffix>``, adding ``-1``, ``-2`` ... on collision."""

    directory.mkdir(parents=True, exist_ok=True)
    counter = 0
    while True:
        name = stem if counter == 0 else f"{stem}-{counter}"
        candidate = directory / f"{name}{suffix}"
        try:
            fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            counter += 1
            continue
        os.close(fd)
        return candidate


__all__ = ["atomic_write_json", "atomic_write_text", "dump_json", "reserve_unique", "safe_read_json"]
