"""Segment path allocation and directory housekeeping."""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path

from stream_archive.models import StreamSpec

logger = logging.getLogger(__name__)


def segment_directory(root: str | Path, stream: StreamSpec, now: datetime) -> Path:
    """Return ``<root>/<stream>/<year>/<month>/<day>`` for ``now``."""
    return Path(root) / stream.name / str(now.year) / str(now.month) / str(now.day)


async def allocate_segment_path(
    root: str | Path,
    stream: StreamSpec,
    now: datetime | None = None,
) -> Path | None:
    """Create the day directory for ``stream`` and return the next segment path.

    Returns ``None`` if the directory could not be created.
    """
    now = now or datetime.now()
    directory = segment_directory(root, stream, now)
    try:
        await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Error while creating directory %s for stream %s: %s", directory, stream.name, e)
        return None
    return directory / f"{now:%H:%M:%S}.{stream.extension}"


def prune_empty_dirs(root: str | Path) -> int:
    """Remove empty directories below ``root``, keeping ``root`` itself."""
    root = Path(root)
    removed = 0
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        if Path(dirpath) == root:
            continue
        try:
            os.rmdir(dirpath)
        except OSError:
            # Not empty, or already gone
            continue
        removed += 1
        logger.debug("Removed empty directory %s", dirpath)
    return removed
