"""Continuous segmented recording of every configured stream."""

import asyncio
import logging
from pathlib import Path

from stream_archive.config import Settings
from stream_archive.models import StreamSpec
from stream_archive.recording.manager import RecordingInstance, RecordingManager, RecordingResult
from stream_archive.retention.manager import RetentionManager
from stream_archive.storage.paths import allocate_segment_path, prune_empty_dirs
from stream_archive.storage.reconcile import reconcile

logger = logging.getLogger(__name__)

MIN_SEGMENT_SECONDS = 1.0


class Archiver:
    """Keeps one recording running per stream and hands finished segments to retention."""

    def __init__(
        self,
        settings: Settings,
        recorder: RecordingManager | None = None,
        retention: RetentionManager | None = None,
    ):
        self.settings = settings
        self.root = Path(settings.destination_directory)
        self.recorder = recorder or RecordingManager(
            ffmpeg_path=settings.ffmpeg_path,
            timeout_grace=settings.timeout_grace,
        )
        self.retention = retention or RetentionManager(
            max_delete_attempts=settings.max_delete_attempts,
        )
        self._closing = False
        self._sweeper: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def streams(self) -> list[StreamSpec]:
        return self.settings.streams

    async def start(self):
        """Recover old segments, then start recording every stream."""
        if self.settings.rotate_old_files:
            await reconcile(self.root, self.streams, self.retention)

        for stream in self.streams:
            if not await self._register(stream):
                self._spawn(self._restart_later(stream))
        await self.recorder.run()

        if self.settings.rotate_interval > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("Archiving %d streams to %s", len(self.streams), self.root)

    async def stop(self):
        """Stop all recordings without scheduling new segments."""
        self._closing = True
        if self._sweeper:
            self._sweeper.cancel()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*[t for t in (self._sweeper, *self._tasks) if t], return_exceptions=True)
        await self.recorder.stop_all()
        logger.info("Archiver stopped")

    async def split(self, name: str) -> bool:
        """Close the current segment of a stream; the next one starts right away."""
        return self.recorder.stop_single(name)

    async def rotate(self) -> int:
        removed = await self.retention.rotate()
        if removed:
            await asyncio.to_thread(prune_empty_dirs, self.root)
        return removed

    async def _register(self, stream: StreamSpec) -> bool:
        destination = await allocate_segment_path(self.root, stream)
        if destination is None or self._closing:
            return False
        instance = self.recorder.add_instance(
            stream,
            destination,
            on_start=self._on_segment_start,
            on_finish=self._on_segment_finish,
        )
        return instance is not None

    async def _next_segment(self, stream: StreamSpec):
        if self._closing:
            return
        registered = await self._register(stream)
        if self._closing:
            return
        if not registered:
            self._spawn(self._restart_later(stream))
            return
        await self.recorder.run_single(stream.name)

    async def _restart_later(self, stream: StreamSpec, delay: float | None = None):
        delay = self.settings.restart_delay if delay is None else delay
        logger.info("Restarting stream %s in %ss", stream.name, delay)
        await asyncio.sleep(delay)
        await self._next_segment(stream)

    def _on_segment_start(self, instance: RecordingInstance):
        self._spawn(self._track_segment(instance.stream, instance.destination))

    async def _track_segment(self, stream: StreamSpec, destination: str):
        # FFmpeg creates the output file only after it has connected to the source
        await asyncio.sleep(self.settings.segment_settle_delay)
        await self.retention.add_file(destination, stream.storage_duration)
        await self.rotate()

    async def _on_segment_finish(self, result: RecordingResult):
        if self._closing:
            return
        if result.failed:
            logger.warning("Stream %s segment failed: %s", result.stream.name, result.error)
            self._spawn(self._restart_later(result.stream))
        elif result.duration is not None and result.duration < MIN_SEGMENT_SECONDS:
            # Segment names have one-second resolution
            logger.warning("Stream %s segment ended after %.1fs", result.stream.name, result.duration)
            delay = max(self.settings.restart_delay, MIN_SEGMENT_SECONDS)
            self._spawn(self._restart_later(result.stream, delay))
        else:
            await self._next_segment(result.stream)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.rotate_interval)
            await self.rotate()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
