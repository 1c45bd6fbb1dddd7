"""Recording manager for supervising FFmpeg segment processes."""

import asyncio
import contextlib
import inspect
import logging
import shlex
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from stream_archive.models import StreamSpec
from stream_archive.recording.command import build_ffmpeg_command

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50


class RecordingState(str, Enum):
    """Lifecycle of a recording instance."""

    REGISTERED = "registered"
    STARTING = "starting"
    RUNNING = "running"
    ENDED = "ended"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordingResult:
    """Terminal outcome of one recording instance."""

    stream: StreamSpec
    destination: str
    state: RecordingState
    returncode: int | None = None
    error: str | None = None
    stderr_tail: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def failed(self) -> bool:
        return self.state is RecordingState.FAILED

    @property
    def duration(self) -> float | None:
        """Seconds between process start and the terminal transition."""
        if self.started_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


StartCallback = Callable[["RecordingInstance"], Awaitable[Any] | Any]
FinishCallback = Callable[[RecordingResult], Awaitable[Any] | Any]
CommandBuilder = Callable[[StreamSpec, str, str], list[str]]


@dataclass(eq=False)
class RecordingInstance:
    """A single FFmpeg run writing one segment of a stream."""

    stream: StreamSpec
    destination: str
    command: list[str]
    timeout: float | None = None
    on_start: StartCallback | None = None
    on_finish: FinishCallback | None = None
    state: RecordingState = RecordingState.REGISTERED
    process: asyncio.subprocess.Process | None = None
    started_at: datetime | None = None
    progress_seconds: float = 0.0
    stop_requested: bool = False
    result: RecordingResult | None = None
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def name(self) -> str:
        return self.stream.name

    async def wait(self) -> RecordingResult:
        """Wait for the instance to end or fail."""
        await self._done.wait()
        return self.result


class RecordingManager:
    """Manages the set of active recording processes, one per stream name."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        timeout_grace: int = 30,
        command_builder: CommandBuilder = build_ffmpeg_command,
    ):
        """Initialize the recording manager."""
        self.ffmpeg_path = ffmpeg_path
        self.timeout_grace = timeout_grace
        self._command_builder = command_builder
        self._instances: dict[str, RecordingInstance] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def instances(self) -> list[RecordingInstance]:
        """Snapshot of the active instances."""
        return list(self._instances.values())

    @property
    def active_count(self) -> int:
        """Get count of running instances."""
        return len([i for i in self._instances.values() if i.state is RecordingState.RUNNING])

    def get_instance(self, name: str) -> RecordingInstance | None:
        """Get an active instance by stream name."""
        return self._instances.get(name)

    def add_instance(
        self,
        stream: StreamSpec,
        destination: str | Path,
        on_start: StartCallback | None = None,
        on_finish: FinishCallback | None = None,
    ) -> RecordingInstance | None:
        """Register a new instance without starting it.

        Returns ``None`` if the stream already has an active instance; the
        existing one is left untouched.
        """
        if stream.name in self._instances:
            logger.warning(
                "Failed to add recording %s -> %s: an instance already exists",
                stream.name,
                destination,
            )
            return None

        destination = str(destination)
        timeout = None
        if stream.file_duration:
            # Extra time for connecting and buffering before the duration cap applies
            timeout = stream.file_duration + self.timeout_grace

        instance = RecordingInstance(
            stream=stream,
            destination=destination,
            command=self._command_builder(stream, destination, self.ffmpeg_path),
            timeout=timeout,
            on_start=on_start,
            on_finish=on_finish,
        )
        self._instances[stream.name] = instance
        logger.debug("Added recording %s -> %s", stream.name, destination)
        return instance

    async def run(self):
        """Start every registered instance that is not running yet."""
        for instance in list(self._instances.values()):
            if instance.state is RecordingState.REGISTERED:
                await self._launch(instance)

    async def run_single(self, name: str):
        """Start a single registered instance."""
        instance = self._instances.get(name)
        if instance is None or instance.state is not RecordingState.REGISTERED:
            logger.debug("No registered recording named %s to run", name)
            return
        await self._launch(instance)

    def stop(self):
        """Ask every running instance to terminate."""
        for instance in list(self._instances.values()):
            self._terminate(instance)

    def stop_single(self, name: str) -> bool:
        """Ask a single running instance to terminate."""
        instance = self._instances.get(name)
        if instance is None:
            return False
        return self._terminate(instance)

    async def stop_all(self):
        """Stop all instances and wait until every one has finished."""
        self.stop()
        for name, instance in list(self._instances.items()):
            if instance.state is RecordingState.REGISTERED:
                del self._instances[name]
                logger.debug("Discarded recording %s that never ran", name)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _terminate(self, instance: RecordingInstance) -> bool:
        if instance.state is not RecordingState.RUNNING or instance.process is None:
            return False
        instance.stop_requested = True
        if instance.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                instance.process.terminate()
            logger.info("Stopping recording %s", instance.name)
        return True

    async def _launch(self, instance: RecordingInstance):
        instance.state = RecordingState.STARTING
        logger.debug("Recording %s command: %s", instance.name, shlex.join(instance.command))
        try:
            process = await asyncio.create_subprocess_exec(
                *instance.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            await self._finish(instance, RecordingState.FAILED, error=f"failed to start: {e}")
            return

        instance.process = process
        instance.started_at = datetime.now()
        instance.state = RecordingState.RUNNING
        logger.info("Started recording %s -> %s (pid %s)", instance.name, instance.destination, process.pid)
        await self._notify(instance.on_start, instance)

        task = asyncio.create_task(self._supervise(instance))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _supervise(self, instance: RecordingInstance):
        """Wait for the process to exit, enforcing the supervision timeout.

        Always delivers exactly one terminal result, even if following the
        process output fails.
        """
        process = instance.process
        readers = asyncio.gather(
            self._read_progress(instance, process.stdout),
            self._read_stderr(instance, process.stderr),
            return_exceptions=True,
        )
        state, error = RecordingState.FAILED, "supervision aborted"
        try:
            timed_out = False
            try:
                await asyncio.wait_for(process.wait(), timeout=instance.timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.error(
                    "Recording %s did not finish within %ss, killing it",
                    instance.name,
                    instance.timeout,
                )
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

            for outcome in await readers:
                if isinstance(outcome, Exception):
                    logger.warning("Lost output of recording %s: %r", instance.name, outcome)

            if timed_out:
                error = f"timed out after {instance.timeout}s"
            elif process.returncode == 0 or instance.stop_requested:
                state, error = RecordingState.ENDED, None
            else:
                error = f"exited with code {process.returncode}"
        finally:
            readers.cancel()
            await self._finish(instance, state, returncode=process.returncode, error=error)

    @staticmethod
    async def _read_lines(stream: asyncio.StreamReader):
        """Yield output lines, skipping chunks longer than the reader limit."""
        while True:
            try:
                yield await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    yield e.partial
                return
            except asyncio.LimitOverrunError as e:
                await stream.readexactly(e.consumed)

    async def _read_progress(self, instance: RecordingInstance, stream: asyncio.StreamReader):
        async for raw in self._read_lines(stream):
            key, _, value = raw.decode(errors="replace").strip().partition("=")
            if key in ("out_time_us", "out_time_ms") and value.isdigit():
                # Both keys are in microseconds
                instance.progress_seconds = int(value) / 1_000_000
            elif key == "progress":
                logger.debug("Recording %s progress: %.1fs", instance.name, instance.progress_seconds)

    async def _read_stderr(self, instance: RecordingInstance, stream: asyncio.StreamReader):
        async for raw in self._read_lines(stream):
            line = raw.decode(errors="replace").rstrip()
            if line:
                instance.stderr_tail.append(line)

    async def _finish(
        self,
        instance: RecordingInstance,
        state: RecordingState,
        returncode: int | None = None,
        error: str | None = None,
    ):
        # Leave the slot free before notifying so the handler can register the next segment
        if self._instances.get(instance.name) is instance:
            del self._instances[instance.name]
        instance.state = state
        result = RecordingResult(
            stream=instance.stream,
            destination=instance.destination,
            state=state,
            returncode=returncode,
            error=error,
            stderr_tail=list(instance.stderr_tail),
            started_at=instance.started_at,
        )
        instance.result = result
        instance._done.set()

        if state is RecordingState.ENDED:
            logger.info("Recording %s has finished: %s", instance.name, instance.destination)
        else:
            logger.error(
                "Recording %s reported an error: %s\n%s",
                instance.name,
                error,
                "\n".join(result.stderr_tail),
            )
        await self._notify(instance.on_finish, result)

    @staticmethod
    async def _notify(callback: Callable | None, *args):
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Recording callback %r failed", callback)
