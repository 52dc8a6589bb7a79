"""Unit tests for the ffmpeg transcoder/recorder supervisor."""

import asyncio
import logging

import pytest

from drone_relay.core.errors import InvalidStateError, ProcessError
from drone_relay.core.paths import MediaPaths
from drone_relay.core.state import BridgeState
from drone_relay.core.subscribers import SubscriberRegistry
from drone_relay.core.video_pipeline import (
    STREAM_INTENT,
    FixedDelayRestartPolicy,
    VideoPipelineSupervisor,
)
from tests.infrastructure.mocks.drone_mocks import MockSpawner, MockWebSocket, wait_until


@pytest.fixture
def media(data_dir):
    paths = MediaPaths(data_dir)
    paths.ensure()
    return paths


@pytest.fixture
def spawner():
    return MockSpawner()


@pytest.fixture
def pipeline(media, spawner):
    state = BridgeState()
    state.device.last_command = STREAM_INTENT
    registry = SubscriberRegistry()
    supervisor = VideoPipelineSupervisor(
        state,
        registry,
        media,
        restart_policy=FixedDelayRestartPolicy(delay=0.01),
        terminate_timeout=0.1,
        spawn=spawner,
    )
    return supervisor


class TestFixedDelayRestartPolicy:

    def test_unlimited_by_default(self):
        policy = FixedDelayRestartPolicy()
        for _ in range(100):
            policy.record_attempt()
        assert policy.unlimited
        assert policy.allow()

    def test_cap(self):
        policy = FixedDelayRestartPolicy(max_attempts=2)
        policy.record_attempt()
        assert policy.allow()
        policy.record_attempt()
        assert not policy.allow()
        policy.reset()
        assert policy.allow()


class TestTranscoder:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, pipeline, spawner):
        assert await pipeline.start_stream()
        assert not await pipeline.start_stream()

        assert len(spawner.processes) == 1
        assert pipeline.state.stream.active
        assert pipeline.state.stream.process is spawner.processes[0]
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_once(self, pipeline, spawner):
        await asyncio.gather(*(pipeline.start_stream() for _ in range(5)))
        assert len(spawner.processes) == 1
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_command_line(self, pipeline, spawner, media):
        await pipeline.start_stream()
        args = spawner.processes[0].args
        assert args[0] == "ffmpeg"
        assert "udp://0.0.0.0:11111?overrun_nonfatal=1&fifo_size=50000000" in args
        assert str(media.photos_dir / "current_frame.jpg") == args[-1]
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_chunks_reach_subscribers(self, pipeline, spawner):
        ws = MockWebSocket()
        pipeline.registry.add_stream_client(ws)
        await pipeline.start_stream()

        spawner.processes[0].emit(b"\x47" * 188)
        await wait_until(lambda: ws.received)

        assert b"".join(ws.received) == b"\x47" * 188
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_restarts_after_unexpected_exit(self, pipeline, spawner):
        await pipeline.start_stream()
        spawner.processes[0].exit(1)

        await wait_until(lambda: len(spawner.processes) == 2)
        assert pipeline.state.stream.process is spawner.processes[1]
        assert pipeline.state.stream.active
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_no_restart_after_streamoff(self, pipeline, spawner):
        await pipeline.start_stream()
        pipeline.state.device.last_command = "streamoff"
        spawner.processes[0].exit(0)

        await wait_until(lambda: pipeline.state.stream.process is None)
        await asyncio.sleep(0.05)

        assert len(spawner.processes) == 1
        assert not pipeline.state.stream.active
        assert not pipeline.restart_pending

    @pytest.mark.asyncio
    async def test_launch_failure_is_retried(self, pipeline, spawner):
        spawner.launch_error = FileNotFoundError("ffmpeg")
        assert not await pipeline.start_stream()
        assert pipeline.state.stream.process is None

        spawner.launch_error = None
        await wait_until(lambda: pipeline.state.stream.process is not None)
        assert pipeline.state.stream.active
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_restart_cap(self, pipeline, spawner):
        pipeline.restart_policy.max_attempts = 2
        spawner.launch_error = FileNotFoundError("ffmpeg")

        await pipeline.start_stream()
        await wait_until(lambda: spawner.calls == 3)
        await asyncio.sleep(0.05)

        assert spawner.calls == 3
        assert not pipeline.restart_pending

    @pytest.mark.asyncio
    async def test_stderr_noise_is_tolerated(self, pipeline, spawner):
        await pipeline.start_stream()
        process = spawner.processes[0]
        process.log("Last message repeated 3 times")
        process.log("udp://0.0.0.0:11111: Connection refused")
        await asyncio.sleep(0.01)
        assert pipeline.state.stream.active
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_stalled_subscriber_does_not_hold_back_others(self, pipeline, spawner):
        pipeline.registry.send_timeout = 0.05
        stalled, fast = MockWebSocket(stall=True), MockWebSocket()
        pipeline.registry.add_stream_client(stalled)
        pipeline.registry.add_stream_client(fast)
        await pipeline.start_stream()
        transcoder = spawner.transcoders[0]

        for chunk in (b"one", b"two", b"three"):
            transcoder.emit(chunk)
            await wait_until(lambda: b"".join(fast.received).endswith(chunk))

        assert b"".join(fast.received) == b"onetwothree"
        assert pipeline.registry.stream_client_id(stalled) is None
        await wait_until(lambda: stalled.closed)
        await pipeline.shutdown()


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_requires_active_stream(self, pipeline):
        with pytest.raises(InvalidStateError, match="Video stream not active"):
            await pipeline.capture_snapshot()

    @pytest.mark.asyncio
    async def test_copies_current_frame(self, pipeline, media):
        await pipeline.start_stream()
        pipeline.frame_path.write_bytes(b"\xff\xd8jpeg")

        result = await pipeline.capture_snapshot()

        assert result["fileName"] == f"photo_{result['timestamp']}.jpg"
        assert (media.photos_dir / result["fileName"]).read_bytes() == b"\xff\xd8jpeg"
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_missing_frame_is_an_error(self, pipeline):
        await pipeline.start_stream()
        with pytest.raises(Exception, match="Failed to capture photo"):
            await pipeline.capture_snapshot()
        await pipeline.shutdown()


class TestRecorder:

    @pytest.mark.asyncio
    async def test_requires_stream_process(self, pipeline, spawner):
        with pytest.raises(InvalidStateError, match="Video stream not active"):
            await pipeline.start_recording()
        assert not pipeline.state.recording.active
        assert spawner.recorders == []

    @pytest.mark.asyncio
    async def test_tees_chunks_into_recorder(self, pipeline, spawner, media):
        await pipeline.start_stream()
        path = await pipeline.start_recording()

        assert path.parent == media.recordings_dir
        assert path.name.startswith("video_") and path.name.endswith(".mp4")
        assert pipeline.state.recording.active

        recorder = spawner.recorders[0]
        spawner.transcoders[0].emit(b"frame-bytes")
        await wait_until(lambda: bytes(recorder.stdin.buffer) == b"frame-bytes")
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_start_twice(self, pipeline):
        await pipeline.start_stream()
        await pipeline.start_recording()
        with pytest.raises(InvalidStateError, match="Recording already in progress"):
            await pipeline.start_recording()
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_stop_returns_file_name(self, pipeline, spawner):
        await pipeline.start_stream()
        path = await pipeline.start_recording()
        recorder = spawner.recorders[0]

        assert await pipeline.stop_recording() == path.name
        assert recorder.stdin.closed
        assert recorder.terminated
        recording = pipeline.state.recording
        assert (recording.process, recording.active, recording.file_path) == (None, False, None)
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_stop_without_recording(self, pipeline):
        with pytest.raises(InvalidStateError, match="No active recording"):
            await pipeline.stop_recording()

    @pytest.mark.asyncio
    async def test_launch_failure(self, pipeline, spawner):
        await pipeline.start_stream()
        spawner.launch_error = OSError("no ffmpeg")
        with pytest.raises(ProcessError):
            await pipeline.start_recording()
        assert not pipeline.state.recording.active
        spawner.launch_error = None
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_write_failure_abandons_recording_only(self, pipeline, spawner):
        ws = MockWebSocket()
        pipeline.registry.add_stream_client(ws)
        await pipeline.start_stream()
        await pipeline.start_recording()
        spawner.recorders[0].stdin.write_error = BrokenPipeError()

        spawner.transcoders[0].emit(b"chunk")
        await wait_until(lambda: not pipeline.state.recording.active)

        assert pipeline.state.recording.process is None
        assert pipeline.state.stream.active
        assert ws.received == [b"chunk"]

        spawner.transcoders[0].emit(b"more")
        await wait_until(lambda: len(ws.received) == 2)
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_recorder_exit_clears_state(self, pipeline, spawner):
        await pipeline.start_stream()
        await pipeline.start_recording()

        spawner.recorders[0].exit(1)
        await wait_until(lambda: pipeline.state.recording.process is None)

        assert not pipeline.state.recording.active
        assert len(spawner.recorders) == 1
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_stalled_recorder_is_abandoned(self, pipeline, spawner):
        pipeline.write_timeout = 0.05
        ws = MockWebSocket()
        pipeline.registry.add_stream_client(ws)
        await pipeline.start_stream()
        await pipeline.start_recording()
        recorder = spawner.recorders[0]
        recorder.stdin.stalled = True

        spawner.transcoders[0].emit(b"chunk")
        await wait_until(lambda: not pipeline.state.recording.active)
        await wait_until(lambda: recorder.terminated)

        spawner.transcoders[0].emit(b"more")
        await wait_until(lambda: b"".join(ws.received) == b"chunkmore")
        assert pipeline.state.stream.active
        await pipeline.shutdown()

    @pytest.mark.asyncio
    async def test_carriage_return_progress_is_drained(self, pipeline, spawner, caplog):
        await pipeline.start_stream()
        await pipeline.start_recording()
        recorder = spawner.recorders[0]
        progress = b"".join(
            b"frame=%5d fps= 30 q=28.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s\r" % i
            for i in range(4000)
        )

        with caplog.at_level(logging.ERROR, logger="drone_relay"):
            recorder.log_raw(progress)
            recorder.log_raw(b"Conversion failed!\r")
            recorder.exit(1)
            await wait_until(lambda: pipeline.state.recording.process is None)
            await wait_until(lambda: any("Conversion failed!" in r.getMessage() for r in caplog.records))

        messages = [r.getMessage() for r in caplog.records]
        assert not any("frame=" in m for m in messages)
        assert not any("Unhandled exception" in m for m in messages)
        await pipeline.shutdown()


class TestShutdown:

    @pytest.mark.asyncio
    async def test_terminates_everything_and_is_repeatable(self, pipeline, spawner):
        await pipeline.start_stream()
        await pipeline.start_recording()

        await asyncio.gather(pipeline.shutdown(), pipeline.shutdown())
        await pipeline.shutdown()

        assert all(p.terminated for p in spawner.processes)
        assert pipeline.state.stream.process is None
        assert not pipeline.state.stream.active
        assert pipeline.state.recording.process is None
        assert not pipeline.state.recording.active

    @pytest.mark.asyncio
    async def test_no_restart_after_shutdown(self, pipeline, spawner):
        await pipeline.start_stream()
        await pipeline.shutdown()
        await asyncio.sleep(0.05)

        assert len(spawner.processes) == 1
        assert not await pipeline.start_stream()
