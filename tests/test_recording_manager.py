"""Tests for the recording instance manager."""

import asyncio

import pytest

from conftest import FAIL, HANG, WRITE_AND_EXIT, make_stream, python_builder, wait_until
from stream_archive.recording.manager import RecordingManager, RecordingState


@pytest.fixture
def recorder():
    return RecordingManager(command_builder=python_builder)


def record_events(events):
    def on_start(instance):
        events.append(("start", instance.name))

    def on_finish(result):
        events.append((result.state.value, result.stream.name))

    return on_start, on_finish


class TestAddInstance:
    """Registration and uniqueness."""

    def test_add_registers_instance(self, recorder, tmp_path):
        stream = make_stream()
        instance = recorder.add_instance(stream, tmp_path / "a.mp4")

        assert instance is not None
        assert instance.state is RecordingState.REGISTERED
        assert instance.destination == str(tmp_path / "a.mp4")
        assert recorder.get_instance("cam1") is instance

    def test_duplicate_name_is_rejected(self, recorder, tmp_path):
        first = recorder.add_instance(make_stream(), tmp_path / "a.mp4")
        second = recorder.add_instance(make_stream(source=HANG), tmp_path / "b.mp4")

        assert second is None
        assert recorder.instances == [first]
        assert recorder.get_instance("cam1").destination == str(tmp_path / "a.mp4")

    def test_timeout_armed_only_with_file_duration(self, tmp_path):
        recorder = RecordingManager(command_builder=python_builder, timeout_grace=30)

        bounded = recorder.add_instance(make_stream("a", file_duration=60), tmp_path / "a.mp4")
        unbounded = recorder.add_instance(make_stream("b"), tmp_path / "b.mp4")

        assert bounded.timeout == 90
        assert unbounded.timeout is None

    def test_default_builder_targets_ffmpeg(self, tmp_path):
        recorder = RecordingManager(ffmpeg_path="/usr/bin/ffmpeg")
        instance = recorder.add_instance(make_stream(source="rtsp://cam/1"), tmp_path / "a.mp4")

        assert instance.command[0] == "/usr/bin/ffmpeg"
        assert instance.command[-1] == str(tmp_path / "a.mp4")


class TestLifecycle:
    """Start, end and error transitions."""

    @pytest.mark.asyncio
    async def test_successful_run_delivers_start_then_end(self, recorder, tmp_path):
        events = []
        on_start, on_finish = record_events(events)
        destination = tmp_path / "a.mp4"
        instance = recorder.add_instance(make_stream(), destination, on_start, on_finish)

        await recorder.run()
        result = await asyncio.wait_for(instance.wait(), 10)

        assert events == [("start", "cam1"), ("ended", "cam1")]
        assert result.state is RecordingState.ENDED
        assert result.returncode == 0
        assert instance.progress_seconds == pytest.approx(2.0)
        assert destination.read_bytes() == b"segment"
        assert recorder.instances == []

    @pytest.mark.asyncio
    async def test_process_error_delivers_start_then_failed(self, recorder, tmp_path):
        events = []
        on_start, on_finish = record_events(events)
        instance = recorder.add_instance(make_stream(source=FAIL), tmp_path / "a.mp4", on_start, on_finish)

        await recorder.run_single("cam1")
        result = await asyncio.wait_for(instance.wait(), 10)

        assert events == [("start", "cam1"), ("failed", "cam1")]
        assert result.failed
        assert result.returncode == 1
        assert "Connection refused" in result.stderr_tail
        assert recorder.get_instance("cam1") is None

    @pytest.mark.asyncio
    async def test_oversized_output_line_still_delivers_result(self, recorder, tmp_path):
        events = []
        on_start, on_finish = record_events(events)
        script = (
            "import sys; sys.stderr.write('x' * 70000); sys.stderr.write('\\nlast words\\n'); "
            "print('y' * 70000); print('out_time_us=3000000')"
        )
        instance = recorder.add_instance(make_stream(source=script), tmp_path / "a.mp4", on_start, on_finish)

        await recorder.run()
        result = await asyncio.wait_for(instance.wait(), 10)

        assert events == [("start", "cam1"), ("ended", "cam1")]
        assert result.state is RecordingState.ENDED
        assert "last words" in result.stderr_tail
        assert instance.progress_seconds == pytest.approx(3.0)
        assert recorder.get_instance("cam1") is None

    @pytest.mark.asyncio
    async def test_result_records_segment_duration(self, recorder, tmp_path):
        instance = recorder.add_instance(make_stream(), tmp_path / "a.mp4")

        await recorder.run()
        result = await asyncio.wait_for(instance.wait(), 10)

        assert result.started_at is not None
        assert 0 <= result.duration < 10

    @pytest.mark.asyncio
    async def test_spawn_failure_fails_without_start(self, tmp_path):
        recorder = RecordingManager(command_builder=lambda s, d, f: ["/nonexistent/ffmpeg", d])
        events = []
        on_start, on_finish = record_events(events)
        instance = recorder.add_instance(make_stream(), tmp_path / "a.mp4", on_start, on_finish)

        await recorder.run()
        result = await asyncio.wait_for(instance.wait(), 10)

        assert events == [("failed", "cam1")]
        assert "failed to start" in result.error

    @pytest.mark.asyncio
    async def test_supervision_timeout_kills_stuck_process(self, tmp_path):
        recorder = RecordingManager(command_builder=python_builder, timeout_grace=0)
        instance = recorder.add_instance(make_stream(source=HANG, file_duration=1), tmp_path / "a.mp4")

        await recorder.run()
        result = await asyncio.wait_for(instance.wait(), 10)

        assert result.failed
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_stop_single_ends_instance(self, recorder, tmp_path):
        events = []
        on_start, on_finish = record_events(events)
        instance = recorder.add_instance(make_stream(source=HANG), tmp_path / "a.mp4", on_start, on_finish)
        await recorder.run()

        assert recorder.stop_single("cam1") is True
        result = await asyncio.wait_for(instance.wait(), 10)

        assert result.state is RecordingState.ENDED
        assert events == [("start", "cam1"), ("ended", "cam1")]

    @pytest.mark.asyncio
    async def test_stop_and_run_unknown_names_are_noops(self, recorder):
        assert recorder.stop_single("missing") is False
        await recorder.run_single("missing")
        assert recorder.instances == []

    @pytest.mark.asyncio
    async def test_run_skips_running_instances(self, recorder, tmp_path):
        instance = recorder.add_instance(make_stream(source=HANG), tmp_path / "a.mp4")
        await recorder.run()
        process = instance.process

        await recorder.run()

        assert instance.process is process
        await recorder.stop_all()

    @pytest.mark.asyncio
    async def test_finish_handler_can_register_next_segment(self, recorder, tmp_path):
        stream = make_stream()
        added = []

        def on_finish(result):
            added.append(recorder.add_instance(stream.model_copy(update={"source": HANG}), tmp_path / "b.mp4"))

        instance = recorder.add_instance(stream, tmp_path / "a.mp4", on_finish=on_finish)
        await recorder.run()
        await asyncio.wait_for(instance.wait(), 10)

        assert added[0] is not None
        assert recorder.get_instance("cam1") is added[0]

    @pytest.mark.asyncio
    async def test_async_callbacks_and_callback_errors(self, recorder, tmp_path):
        seen = []

        async def on_start(instance):
            raise RuntimeError("boom")

        async def on_finish(result):
            await asyncio.sleep(0)
            seen.append(result.state)

        instance = recorder.add_instance(make_stream(), tmp_path / "a.mp4", on_start, on_finish)
        await recorder.run()
        await asyncio.wait_for(instance.wait(), 10)
        await wait_until(lambda: seen)

        assert seen == [RecordingState.ENDED]

    @pytest.mark.asyncio
    async def test_stop_all_waits_and_discards_registered(self, recorder, tmp_path):
        running = recorder.add_instance(make_stream("a", source=HANG), tmp_path / "a.mp4")
        await recorder.run()
        recorder.add_instance(make_stream("b", source=WRITE_AND_EXIT), tmp_path / "b.mp4")

        await asyncio.wait_for(recorder.stop_all(), 10)

        assert running.result.state is RecordingState.ENDED
        assert recorder.instances == []
