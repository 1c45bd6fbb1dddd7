"""Retention manager deleting segments once their storage duration has passed."""

import asyncio
import logging
import os
import stat
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class TrackedFile:
    """A segment on disk waiting to expire."""

    path: str
    storage_duration: int
    creation_time: float
    delete_failures: int = 0

    def age(self, now: float) -> float:
        return now - self.creation_time

    def expired(self, now: float) -> bool:
        return self.age(now) > self.storage_duration


class RetentionManager:
    """Tracks segment files and removes the ones that outlived their retention window."""

    def __init__(self, max_delete_attempts: int = 5, clock: Callable[[], float] = time.time):
        self.max_delete_attempts = max_delete_attempts
        self.clock = clock
        self._files: dict[str, TrackedFile] = {}
        self._rotate_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, path) -> bool:
        return str(path) in self._files

    @property
    def files(self) -> list[TrackedFile]:
        """Snapshot of the tracked files."""
        return list(self._files.values())

    def get(self, path) -> TrackedFile | None:
        return self._files.get(str(path))

    def track(self, path, storage_duration: int, creation_time: float) -> TrackedFile:
        """Record a file without looking at the filesystem."""
        tracked = TrackedFile(str(path), storage_duration, creation_time)
        self._files[tracked.path] = tracked
        return tracked

    async def add_file(self, path, storage_duration: int = 0) -> bool:
        """Start monitoring ``path``.

        The creation time comes from the file itself, so files found after a
        restart expire on the same schedule as if they had been tracked from
        the start.
        """
        path = str(path)
        logger.debug("Adding file %s with storage duration %ss", path, storage_duration)
        try:
            st = await asyncio.to_thread(os.stat, path)
        except OSError as e:
            logger.error("Cannot track %s: %s", path, e)
            return False
        if not stat.S_ISREG(st.st_mode):
            logger.error("%s is not a file, ignoring it", path)
            return False

        # st_birthtime is missing on most Linux builds; mtime is never earlier than creation
        creation_time = getattr(st, "st_birthtime", None) or st.st_mtime
        self.track(path, storage_duration, creation_time)
        return True

    async def remove_file(self, path) -> bool:
        """Delete ``path`` from disk and stop tracking it.

        A failed delete leaves the file tracked so the next sweep retries it,
        up to ``max_delete_attempts`` times.
        """
        path = str(path)
        try:
            await asyncio.to_thread(os.unlink, path)
        except FileNotFoundError:
            logger.warning("File %s was already removed", path)
            self._files.pop(path, None)
            return True
        except OSError as e:
            tracked = self._files.get(path)
            if tracked is None:
                logger.error("Error while removing untracked file %s: %s", path, e)
                return False
            tracked.delete_failures += 1
            if tracked.delete_failures >= self.max_delete_attempts:
                logger.error(
                    "Giving up on %s after %d failed deletes: %s",
                    path,
                    tracked.delete_failures,
                    e,
                )
                self._files.pop(path, None)
            else:
                logger.error("Error while removing file %s: %s", path, e)
            return False

        self._files.pop(path, None)
        logger.info("Removed file %s", path)
        return True

    async def rotate(self) -> int:
        """Remove every tracked file older than its storage duration.

        Returns the number of files deleted.
        """
        removed = 0
        async with self._rotate_lock:
            for tracked in list(self._files.values()):
                # Another task may have dropped it while we were suspended
                if self._files.get(tracked.path) is not tracked:
                    continue
                now = self.clock()
                if not tracked.expired(now):
                    continue
                logger.info(
                    "Removing %s: age %.0fs exceeds storage duration %ss",
                    tracked.path,
                    tracked.age(now),
                    tracked.storage_duration,
                )
                if await self.remove_file(tracked.path):
                    removed += 1
        return removed
