"""FFmpeg command lines for the live transcoder and the MP4 recorder."""

from __future__ import annotations

from pathlib import Path
from typing import List

CURRENT_FRAME_NAME = "current_frame.jpg"

# Noise ffmpeg prints on every run even at -loglevel error.
_TRANSCODER_BENIGN = ("Last message repeated", "already exists", "Overwrite?")
_RECORDER_KEYWORDS = ("error", "failed")


def build_transcoder_command(
    video_port: int,
    frame_path: Path,
    *,
    ffmpeg_bin: str = "ffmpeg",
    still_fps: int = 2,
) -> List[str]:
    """Read the drone's raw H.264 from UDP and write two outputs.

    stdout carries MPEG-1 video in MPEG-TS for JSMpeg players; ``frame_path``
    is overwritten with a JPEG still ``still_fps`` times a second.
    """
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-y",

        "-fflags", "+genpts",
        "-i", f"udp://0.0.0.0:{video_port}?overrun_nonfatal=1&fifo_size=50000000",

        # Live output
        "-map", "0:v:0",
        "-c:v", "mpeg1video",
        "-b:v", "2000k",
        "-maxrate", "4000k",
        "-bufsize", "8000k",
        "-minrate", "1000k",
        "-an",
        "-f", "mpegts",
        "-s", "640x480",
        "-r", "30",
        "-q:v", "5",
        "-tune", "zerolatency",
        "-preset", "ultrafast",
        "-pix_fmt", "yuv420p",
        "-flush_packets", "1",
        "-reset_timestamps", "1",
        "pipe:1",

        # Still image output
        "-map", "0:v:0",
        "-c:v", "mjpeg",
        "-q:v", "2",
        "-vf", f"fps={still_fps}",
        "-update", "1",
        "-f", "image2",
        str(frame_path),
    ]


def build_recorder_command(output_path: Path, *, ffmpeg_bin: str = "ffmpeg") -> List[str]:
    """Re-encode MPEG-TS bytes arriving on stdin into a fast-start MP4."""
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-nostats",
        "-i", "pipe:0",
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
        "-crf", "23",
        "-movflags", "+faststart",
        "-y",
        str(output_path),
    ]


def is_transcoder_noise(line: str) -> bool:
    return not line or any(marker in line for marker in _TRANSCODER_BENIGN)


def is_recorder_error(line: str) -> bool:
    lowered = line.lower()
    return any(keyword in lowered for keyword in _RECORDER_KEYWORDS)


__all__ = [
    "CURRENT_FRAME_NAME",
    "build_transcoder_command",
    "build_recorder_command",
    "is_transcoder_noise",
    "is_recorder_error",
]
