"""
Atomic file writing utilities.

Configuration saves and stats exports go through a same-directory temporary
file followed by ``os.replace`` so readers never observe a half-written file.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Mapping

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_text(target_path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Atomically write text content to a file.

    Args:
        target_path: Target file path to write to
        content: Text content to write
        encoding: Text encoding to use (default: utf-8)

    Raises:
        OSError: If the temporary file cannot be written or moved into place
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file_path = None

    try:
        # Same directory as target so the rename stays on one filesystem
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

        logger.debug("Atomic write completed", target=str(target_path), bytes=len(content.encode(encoding)))

    except Exception as e:
        if temp_file_path and temp_file_path.exists():
            try:
                temp_file_path.unlink()
            except OSError:
                pass
        if isinstance(e, OSError):
            raise
        raise OSError(f"Failed to atomically write {target_path}: {e}") from e


def atomic_write_json(target_path: Path, data: Mapping[str, Any]) -> None:
    """
    Atomically write JSON data to a file.

    Raises:
        ValueError: If data cannot be serialized to JSON
        OSError: If writing fails
    """
    try:
        json_content = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e

    atomic_write_text(target_path, json_content)
