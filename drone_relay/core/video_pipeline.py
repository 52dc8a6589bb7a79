"""
Video Pipeline Supervisor - Owns the ffmpeg transcoder and recorder processes.

The transcoder reads the drone's raw H.264 from UDP and writes MPEG-TS to
stdout plus a JPEG still that is continuously overwritten. Every stdout
chunk is broadcast to the WebSocket subscribers and, while a recording is
active, written into the recorder's stdin.

Lifecycle rules:

- At most one transcoder and at most one recorder exist at a time. Start
  requests are serialized per process so the check-then-spawn sequence
  cannot interleave across the ``await`` on process creation.
- If the transcoder exits or fails to launch while the last intended
  command is ``streamon``, it is relaunched after a fixed delay
  (FixedDelayRestartPolicy). There is no backoff.
- The recorder is never restarted; its exit simply clears the recording
  state. A failed or stalled write into it abandons the recording without
  touching the live broadcast.
- A recording can only start while a transcoder exists.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .asyncio_utils import cancel_and_wait, create_logged_task
from .errors import BridgeError, InvalidStateError, ProcessError
from .ffmpeg import (
    CURRENT_FRAME_NAME,
    build_recorder_command,
    build_transcoder_command,
    is_recorder_error,
    is_transcoder_noise,
)
from .logging_utils import get_module_logger
from .paths import MediaPaths
from .state import BridgeState
from .subscribers import SubscriberRegistry


logger = get_module_logger("VideoPipeline")

STREAM_INTENT = "streamon"
STDERR_READ_SIZE = 4096

_LINE_BREAK = re.compile(rb"[\r\n]+")

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedDelayRestartPolicy:
    """Relaunch after ``delay`` seconds, forever unless ``max_attempts`` > 0.

    The attempt counter only resets when streaming is explicitly requested
    again, so a binary that dies right after launch still hits the cap.
    """

    def __init__(self, delay: float = 1.0, max_attempts: int = 0) -> None:
        self.delay = delay
        self.max_attempts = max_attempts
        self.attempts = 0

    @property
    def unlimited(self) -> bool:
        return self.max_attempts <= 0

    def allow(self) -> bool:
        return self.unlimited or self.attempts < self.max_attempts

    def record_attempt(self) -> None:
        self.attempts += 1

    def reset(self) -> None:
        self.attempts = 0


class VideoPipelineSupervisor:

    def __init__(
        self,
        state: BridgeState,
        registry: SubscriberRegistry,
        media: MediaPaths,
        *,
        video_port: int = 11111,
        ffmpeg_bin: str = "ffmpeg",
        still_fps: int = 2,
        restart_policy: Optional[FixedDelayRestartPolicy] = None,
        terminate_timeout: float = 2.0,
        write_timeout: Optional[float] = 5.0,
        read_size: int = 64 * 1024,
        spawn: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> None:
        self.state = state
        self.registry = registry
        self.media = media
        self.video_port = video_port
        self.ffmpeg_bin = ffmpeg_bin
        self.still_fps = still_fps
        self.restart_policy = restart_policy or FixedDelayRestartPolicy()
        self.terminate_timeout = terminate_timeout
        self.write_timeout = write_timeout
        self.read_size = read_size
        self._spawn = spawn

        self._stream_lock = asyncio.Lock()
        self._recording_lock = asyncio.Lock()
        self._restart_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def frame_path(self) -> Path:
        return self.media.photos_dir / CURRENT_FRAME_NAME

    @property
    def restart_pending(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def _streaming_intended(self) -> bool:
        return self.state.device.last_command == STREAM_INTENT

    def _track(self, coro: Awaitable[Any], context: str) -> asyncio.Task:
        return create_logged_task(coro, logger=logger, context=context, pending=self._tasks)

    # ------------------------------------------------------------------
    # Transcoder

    async def start_stream(self) -> bool:
        """Launch the transcoder unless one exists; returns True if launched."""
        self.restart_policy.reset()
        return await self._launch_transcoder()

    async def _launch_transcoder(self) -> bool:
        async with self._stream_lock:
            stream = self.state.stream
            if self._closed:
                return False
            if stream.process is not None:
                logger.info("FFmpeg process already running")
                stream.active = True
                return False

            logger.info("Starting FFmpeg process...")
            command = build_transcoder_command(
                self.video_port,
                self.frame_path,
                ffmpeg_bin=self.ffmpeg_bin,
                still_fps=self.still_fps,
            )
            try:
                process = await self._spawn(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except Exception as e:
                logger.error("FFmpeg process error: %s", ProcessError("transcoder", f"failed to launch: {e}"))
                self._schedule_restart()
                return False

            stream.process = process
            stream.active = True
            logger.info("FFmpeg transcoder started (pid %s)", process.pid)

        self._track(self._pump_stream(process), "transcoder-stdout")
        self._track(
            self._log_stderr(process, "FFmpeg error", lambda line: not is_transcoder_noise(line)),
            "transcoder-stderr",
        )
        return True

    async def _pump_stream(self, process: asyncio.subprocess.Process) -> None:
        returncode: Optional[int] = None
        try:
            while True:
                chunk = await process.stdout.read(self.read_size)
                if not chunk:
                    break
                await self._route_chunk(chunk)
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Transcoder output reader failed: %s", e, exc_info=True)
            await self._terminate(process, "transcoder")
            returncode = process.returncode
        self._on_stream_exit(process, returncode)

    async def _route_chunk(self, chunk: bytes) -> None:
        if not self.state.stream.active:
            return

        await self.registry.broadcast_chunk(chunk)

        recording = self.state.recording
        recorder = recording.process
        if not recording.active or recorder is None or not self._writable(recorder):
            return
        try:
            recorder.stdin.write(chunk)
            await asyncio.wait_for(recorder.stdin.drain(), self.write_timeout)
        except asyncio.TimeoutError:
            logger.error("MP4 process stopped reading input for %.1fs, abandoning recording", self.write_timeout)
            self._abandon_recorder(recorder)
            self._track(self._terminate(recorder, "recorder"), "recorder-abandon")
        except Exception as e:
            logger.error("Failed to write to MP4 stream: %s", e)
            self._abandon_recorder(recorder)

    def _on_stream_exit(self, process: asyncio.subprocess.Process, returncode: Optional[int]) -> None:
        if returncode:
            logger.error("%s", ProcessError("transcoder", f"exited with code {returncode}", returncode))
        else:
            logger.info("FFmpeg transcoder exited (code %s)", returncode)

        if self.state.stream.process is not process:
            return
        self.state.stream.clear()
        if self._streaming_intended():
            logger.info("FFmpeg process exited, attempting restart...")
            self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._closed or self.restart_pending or not self._streaming_intended():
            return
        if not self.restart_policy.allow():
            logger.error(
                "Transcoder restart limit reached (%d attempts); giving up",
                self.restart_policy.attempts,
            )
            return
        self.restart_policy.record_attempt()
        self._restart_task = self._track(self._restart_after_delay(), "transcoder-restart")

    async def _restart_after_delay(self) -> None:
        await asyncio.sleep(self.restart_policy.delay)
        self._restart_task = None
        if self._closed or not self._streaming_intended():
            logger.info("Streaming no longer intended, skipping transcoder restart")
            return
        await self._launch_transcoder()

    # ------------------------------------------------------------------
    # Snapshot

    async def capture_snapshot(self) -> Dict[str, Any]:
        """Copy the transcoder's current still into ``photo_<ms>.jpg``."""
        if not self.state.stream.active:
            raise InvalidStateError("Video stream not active")

        timestamp = _now_ms()
        file_name = f"photo_{timestamp}.jpg"
        target = self.media.photos_dir / file_name
        try:
            await asyncio.to_thread(shutil.copyfile, self.frame_path, target)
        except OSError as e:
            logger.error("Failed to capture photo: %s", e)
            raise BridgeError("Failed to capture photo") from e
        logger.info("Captured photo %s", file_name)
        return {"fileName": file_name, "timestamp": timestamp}

    # ------------------------------------------------------------------
    # Recorder

    async def start_recording(self) -> Path:
        """Ensure a writable recorder exists and mark the recording active."""
        async with self._recording_lock:
            recording = self.state.recording
            if recording.active:
                raise InvalidStateError("Recording already in progress")
            if self.state.stream.process is None:
                raise InvalidStateError("Video stream not active")

            if recording.process is None:
                await self._launch_recorder()

            if recording.process is None or not self._writable(recording.process):
                raise ProcessError("recorder", "Failed to initialize MP4 process")
            if self.state.stream.process is None:
                await self._discard_recorder()
                raise InvalidStateError("Video stream not active")

            recording.active = True
            logger.info("Recording started: %s", recording.file_name)
            return recording.file_path

    async def _launch_recorder(self) -> None:
        recording = self.state.recording
        output_path = self.media.recordings_dir / f"video_{_now_ms()}.mp4"
        logger.info("Starting MP4 process...")
        try:
            process = await self._spawn(
                *build_recorder_command(output_path, ffmpeg_bin=self.ffmpeg_bin),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except Exception as e:
            recording.clear()
            raise ProcessError("recorder", f"failed to launch: {e}") from e

        recording.process = process
        recording.file_path = output_path
        self._track(self._watch_recorder(process), "recorder-exit")
        self._track(self._log_stderr(process, "MP4 FFmpeg", is_recorder_error), "recorder-stderr")

    async def stop_recording(self) -> Optional[str]:
        """End and terminate the recorder; returns the recording's file name."""
        async with self._recording_lock:
            recording = self.state.recording
            if not recording.active:
                raise InvalidStateError("No active recording")

            file_name = recording.file_name
            process = recording.process
            recording.clear()

        if process is not None:
            await self._end_and_terminate(process, "recorder")
        logger.info("Recording stopped: %s", file_name)
        return file_name

    async def _watch_recorder(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if returncode:
            logger.error("%s", ProcessError("recorder", f"MP4 process exited with code {returncode}", returncode))
        if self.state.recording.process is process:
            self.state.recording.clear()

    def _abandon_recorder(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(Exception):
            process.stdin.close()
        if self.state.recording.process is process:
            self.state.recording.clear()

    async def _discard_recorder(self) -> None:
        process = self.state.recording.process
        self.state.recording.clear()
        if process is not None:
            await self._end_and_terminate(process, "recorder")

    # ------------------------------------------------------------------
    # Process helpers

    @staticmethod
    def _writable(process: asyncio.subprocess.Process) -> bool:
        stdin = process.stdin
        return process.returncode is None and stdin is not None and not stdin.is_closing()

    async def _log_stderr(
        self,
        process: asyncio.subprocess.Process,
        label: str,
        should_log: Callable[[str], bool],
    ) -> None:
        stream = process.stderr
        if stream is None:
            return
        # ffmpeg ends progress lines with a bare \r, so readline() could
        # overrun the reader limit; read raw chunks and split ourselves.
        partial = b""
        while True:
            chunk = await stream.read(STDERR_READ_SIZE)
            if not chunk:
                break
            *lines, partial = _LINE_BREAK.split(partial + chunk)
            if len(partial) > STDERR_READ_SIZE:
                lines.append(partial)
                partial = b""
            for line in lines:
                self._report_stderr(line, label, should_log)
        self._report_stderr(partial, label, should_log)

    @staticmethod
    def _report_stderr(line: bytes, label: str, should_log: Callable[[str], bool]) -> None:
        message = line.decode("utf-8", errors="replace").strip()
        if message and should_log(message):
            logger.error("%s: %s", label, message)

    async def _end_and_terminate(self, process: asyncio.subprocess.Process, name: str) -> None:
        if process.stdin is not None:
            with contextlib.suppress(Exception):
                process.stdin.close()
        await self._terminate(process, name)

    async def _terminate(self, process: asyncio.subprocess.Process, name: str) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not terminate, killing...", name)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    # ------------------------------------------------------------------
    # Teardown

    async def shutdown(self) -> None:
        """Terminate both processes and force both states empty. Safe to repeat."""
        self._closed = True
        await cancel_and_wait(self._restart_task)
        self._restart_task = None

        stream_process = self.state.stream.process
        self.state.stream.clear()
        if stream_process is not None:
            logger.info("Terminating FFmpeg transcoder (pid %s)", stream_process.pid)
            await self._terminate(stream_process, "transcoder")

        recorder = self.state.recording.process
        self.state.recording.clear()
        if recorder is not None:
            logger.info("Terminating MP4 recorder (pid %s)", recorder.pid)
            await self._end_and_terminate(recorder, "recorder")

        for task in list(self._tasks):
            await cancel_and_wait(task)


__all__ = ["VideoPipelineSupervisor", "FixedDelayRestartPolicy", "STREAM_INTENT"]
