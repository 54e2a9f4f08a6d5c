"""
Atomic file writing utilities.

Writes go to a temporary file in the target directory, are flushed and
fsynced, then moved over the target with ``os.replace``. Readers therefore
see either the old document or the new one, never a partial write.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Dict

import structlog

logger = structlog.get_logger(__name__)

STALE_TEMP_SECONDS = 3600


def remove_stale_temp_files(directory: Path, target_name: str = "*", max_age: float = STALE_TEMP_SECONDS) -> int:
    """
    Remove temp files left behind by interrupted writes.

    Returns the number of files removed.
    """
    removed = 0
    now = time.time()
    for temp_file in Path(directory).glob(f".{target_name}.*.tmp"):
        try:
            if temp_file.is_file() and now - temp_file.stat().st_mtime > max_age:
                temp_file.unlink()
                removed += 1
                logger.debug("Removed stale temp file", path=str(temp_file))
        except OSError as e:
            logger.debug("Could not remove temp file", path=str(temp_file), error=str(e))
    return removed


def atomic_write_text(target_path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Atomically write text content to a file.

    Raises:
        OSError: If the temporary file cannot be written or moved into place.
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file_path = None

    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=target_path.parent,
            prefix=f".{target_path.name}.",
            suffix=".tmp",
            delete=False,
            encoding=encoding,
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        try:
            os.replace(str(temp_file_path), str(target_path))
        except OSError as rename_error:
            logger.warning("Atomic rename failed, falling back to shutil.move", error=str(rename_error))
            shutil.move(str(temp_file_path), str(target_path))

    except Exception as e:
        if temp_file_path and temp_file_path.exists():
            try:
                temp_file_path.unlink()
            except OSError:
                logger.warning("Failed to clean up temporary file", temp_file=str(temp_file_path))
        if isinstance(e, OSError):
            raise
        raise OSError(f"Failed to atomically write {target_path}: {e}") from e


def atomic_write_json(target_path: Path, data: Dict[str, Any]) -> None:
    """
    Atomically write a JSON document.

    Raises:
        ValueError: If data cannot be serialized to JSON.
        OSError: If writing fails.
    """
    try:
        content = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e

    atomic_write_text(Path(target_path), content)
    logger.debug("Atomic write completed", target=str(target_path))
