"""Shared helpers for building ffmpeg, ffprobe and whisper-cli command lines."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Sequence

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_CHANNELS = 1
DEFAULT_CODEC = "pcm_s16le"


def format_seconds(value: float) -> str:
    """Render a seconds offset the way ffmpeg expects it (``7``, ``2.5``)."""

    if value <= 0:
        return "0"
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def capture_args(
    capture_api: str,
    device: str,
    output_file: os.PathLike[str] | str,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channels: int = DEFAULT_CHANNELS,
    codec: str = DEFAULT_CODEC,
) -> list[str]:
    """Return arguments for a single-device capture into an overwritten WAV.

    Options before ``-i`` apply to the input, so the capture API has to be
    given ahead of the device it opens.
    """

    return [
        "-y",
        "-f",
        capture_api,
        "-i",
        device,
        "-ac",
        str(channels),
        "-ar",
        str(sample_rate),
        "-acodec",
        codec,
        str(output_file),
    ]


def mixed_capture_args(
    capture_api: str,
    devices: Sequence[str],
    output_file: os.PathLike[str] | str,
    *,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channels: int = DEFAULT_CHANNELS,
    codec: str = DEFAULT_CODEC,
) -> list[str]:
    """Capture several devices at once and downmix them with ``amix``."""

    args = ["-y"]
    for device in devices:
        args.extend(["-f", capture_api, "-i", device])
    args.extend(
        [
            "-filter_complex",
            f"amix=inputs={len(devices)}:duration=longest",
            "-ac",
            str(channels),
            "-ar",
            str(sample_rate),
            "-acodec",
            codec,
            str(output_file),
        ]
    )
    return args


def probe_duration_args(input_file: os.PathLike[str] | str) -> list[str]:
    return [
        "-v",
        "quiet",
        "-show_entries",
        "format=duration",
        "-of",
        "csv=p=0",
        str(input_file),
    ]


def extract_args(
    input_file: os.PathLike[str] | str,
    output_file: os.PathLike[str] | str,
    start_seconds: float,
    duration_seconds: float,
) -> list[str]:
    # Stream copy: cutting a PCM WAV never needs a re-encode.
    return [
        "-y",
        "-i",
        str(input_file),
        "-ss",
        format_seconds(start_seconds),
        "-t",
        format_seconds(duration_seconds),
        "-acodec",
        "copy",
        str(output_file),
    ]


def whisper_args(
    model_path: os.PathLike[str] | str,
    input_file: os.PathLike[str] | str,
    *,
    language: str = "auto",
) -> list[str]:
    # whisper-cli treats the last positional argument as the input file.
    return [
        "--model",
        str(model_path),
        "--output-txt",
        "--no-prints",
        "--language",
        language,
        "--print-colors",
        "false",
        str(input_file),
    ]


def list_devices_args(capture_api: str) -> list[str]:
    return ["-hide_banner", "-f", capture_api, "-list_devices", "true", "-i", ""]


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


async def run_process(
    executable: str,
    args: Sequence[str],
    *,
    timeout: float | None = None,
) -> ProcessResult:
    """Run a short-lived tool to completion and collect its output.

    Spawn failures (``FileNotFoundError``, ``PermissionError``) propagate to
    the caller. On timeout the child is killed and ``asyncio.TimeoutError``
    is raised.
    """

    proc = await asyncio.create_subprocess_exec(
        executable,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        raise
    return ProcessResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
