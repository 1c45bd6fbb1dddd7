"""Startup recovery of segments left on disk by a previous run."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Iterable

from stream_archive.models import StreamSpec
from stream_archive.retention.manager import RetentionManager
from stream_archive.storage.paths import prune_empty_dirs

logger = logging.getLogger(__name__)


def list_files(root: str | Path) -> list[Path]:
    """Recursively list every non-directory entry below ``root``.

    Directories that cannot be read are logged and skipped.
    """

    def _skip(error: OSError):
        logger.error("Cannot scan %s for old files: %s", error.filename, error)

    files = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_skip):
        files.extend(Path(dirpath) / name for name in filenames)
    return sorted(files)


def owning_stream(root: str | Path, path: Path, streams: Iterable[StreamSpec]) -> StreamSpec | None:
    """Find the stream a file belongs to from its first directory below ``root``."""
    parts = path.relative_to(root).parts
    if not parts:
        return None
    return next((s for s in streams if s.name == parts[0]), None)


async def reconcile(
    root: str | Path,
    streams: Iterable[StreamSpec],
    retention: RetentionManager,
) -> int:
    """Track the segments already under ``root``, sweep once and prune empty directories.

    Files that belong to no configured stream get a storage duration of 0 and
    are removed by the sweep. Returns the number of files tracked.
    """
    root = Path(root)
    streams = list(streams)
    if not root.is_dir():
        logger.info("Destination %s does not exist yet, nothing to reconcile", root)
        return 0

    files = await asyncio.to_thread(list_files, root)

    tracked = 0
    for path in files:
        stream = owning_stream(root, path, streams)
        if stream is None:
            logger.warning("%s belongs to no configured stream, scheduling removal", path)
        storage_duration = stream.storage_duration if stream else 0
        if await retention.add_file(path, storage_duration):
            tracked += 1
    logger.info("Reconciled %d existing files under %s", tracked, root)

    await retention.rotate()
    await asyncio.to_thread(prune_empty_dirs, root)
    return tracked
