"""Shared pytest fixtures for the Stream Archive test suite."""

import asyncio
import sys

import pytest

from stream_archive.models import StreamSpec

# Stand-ins for FFmpeg: the stream source is a Python script, argv[1] is the destination
WRITE_AND_EXIT = (
    "import sys; open(sys.argv[1], 'wb').write(b'segment'); "
    "print('out_time_us=2000000'); print('progress=end')"
)
FAIL = "import sys; sys.stderr.write('Connection refused\\n'); sys.exit(1)"
HANG = "import time; time.sleep(30)"


def python_builder(stream, destination, ffmpeg_path):
    """Command builder running ``stream.source`` as a Python script."""
    return [sys.executable, "-c", stream.source, str(destination)]


def make_stream(name="cam1", source=WRITE_AND_EXIT, **kwargs) -> StreamSpec:
    return StreamSpec(name=name, source=source, **kwargs)


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeClock:
    """Settable time source for retention tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
