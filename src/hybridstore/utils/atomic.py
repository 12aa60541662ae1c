"""
Atomic file writing utilities.

Journal entries and backups are written to a temporary file in the target
directory, fsynced and then renamed over the target, so readers never observe
a half-written file.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_json(target_path: Path, data: Any) -> None:
    """
    Atomically write JSON data to a file.

    Args:
        target_path: Target file path to write to
        data: JSON-serialisable data

    Raises:
        OSError: If writing or renaming fails
        ValueError: If data cannot be serialized to JSON
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    # Serialize data first to catch JSON errors early
    try:
        json_content = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e), target=str(target_path))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e

    temp_file_path = None
    try:
        # Same directory as the target keeps the rename on one filesystem
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=target_path.parent,
            prefix=f".{target_path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(json_content)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        os.replace(str(temp_file_path), str(target_path))
        logger.debug("Atomic write completed", target=str(target_path))
    finally:
        if temp_file_path and temp_file_path.exists():
            temp_file_path.unlink(missing_ok=True)


async def atomic_json_dump(data: Any, path: Path) -> None:
    """Asynchronous wrapper running :func:`atomic_write_json` in a worker thread."""
    await asyncio.to_thread(atomic_write_json, Path(path), data)


def cleanup_temp_files(directory: Path) -> int:
    """Remove temporary files left behind by interrupted atomic writes."""
    removed = 0
    for temp_file in Path(directory).glob(".*.tmp"):
        try:
            temp_file.unlink()
            removed += 1
        except OSError as e:
            logger.debug("Could not remove orphaned temp file", temp_file=str(temp_file), error=str(e))
    if removed:
        logger.debug("Cleaned up orphaned temp files", directory=str(directory), removed=removed)
    return removed
