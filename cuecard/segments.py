"""Cut windows out of a recording that is still being written."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shutil
from pathlib import Path

from cuecard.errors import ExtractionError
from cuecard.ffmpeg_io import extract_args, probe_duration_args, run_process

log = logging.getLogger("cuecard.segments")

PROBE_TIMEOUT_SEC = 10.0
EXTRACT_TIMEOUT_SEC = 30.0


def extraction_window(
    total_seconds: float,
    window_seconds: float,
    *,
    clamp_to_total: bool = False,
) -> tuple[float, float]:
    """Return ``(start, duration)`` for the most recent ``window_seconds``.

    The start never goes negative. With ``clamp_to_total`` the duration is
    also capped at the file length, which the final extraction relies on.
    """

    total = max(0.0, float(total_seconds))
    window = max(0.0, float(window_seconds))
    start = max(0.0, total - window)
    duration = min(window, total) if clamp_to_total else window
    return start, duration


async def probe_duration(ffprobe: str, input_file: os.PathLike[str] | str) -> float:
    try:
        result = await run_process(
            ffprobe, probe_duration_args(input_file), timeout=PROBE_TIMEOUT_SEC
        )
    except asyncio.TimeoutError as exc:
        raise ExtractionError(f"ffprobe timed out on {input_file}") from exc
    except OSError as exc:
        raise ExtractionError(f"ffprobe process error: {exc}") from exc
    if result.returncode != 0:
        raise ExtractionError(f"ffprobe failed with exit code {result.returncode}")
    raw = result.stdout.strip().splitlines()[0].strip() if result.stdout.strip() else ""
    try:
        duration = float(raw)
    except ValueError:
        raise ExtractionError(f"Invalid audio duration: {raw!r}") from None
    if math.isnan(duration) or duration <= 0:
        raise ExtractionError(f"Invalid audio duration: {raw!r}")
    return duration


async def extract_window(
    ffmpeg: str,
    input_file: os.PathLike[str] | str,
    output_file: os.PathLike[str] | str,
    start_seconds: float,
    duration_seconds: float,
) -> None:
    args = extract_args(input_file, output_file, start_seconds, duration_seconds)
    try:
        result = await run_process(ffmpeg, args, timeout=EXTRACT_TIMEOUT_SEC)
    except asyncio.TimeoutError as exc:
        raise ExtractionError(f"ffmpeg extraction timed out on {input_file}") from exc
    except OSError as exc:
        raise ExtractionError(f"ffmpeg process error: {exc}") from exc
    if result.stderr:
        log.debug("ffmpeg: %s", result.stderr.strip())
    if result.returncode != 0:
        raise ExtractionError(f"ffmpeg extraction failed with exit code {result.returncode}")


async def extract_tail(
    ffmpeg: str,
    ffprobe: str,
    input_file: os.PathLike[str] | str,
    output_file: os.PathLike[str] | str,
    window_seconds: float,
    *,
    final: bool = False,
) -> tuple[float, float]:
    """Copy the last ``window_seconds`` of ``input_file`` into ``output_file``.

    ``final`` clamps the window to the file length and requires a non-empty
    result, as used once the capture process has exited.
    """

    total = await probe_duration(ffprobe, input_file)
    start, duration = extraction_window(total, window_seconds, clamp_to_total=final)
    log.debug(
        "extracting %s: total=%.3fs start=%.3fs duration=%.3fs", input_file, total, start, duration
    )
    await extract_window(ffmpeg, input_file, output_file, start, duration)
    if final:
        path = Path(output_file)
        if not path.exists():
            raise ExtractionError("Final segment file was not created")
        if path.stat().st_size == 0:
            raise ExtractionError("Final segment file is empty")
    return start, duration


async def copy_snapshot(source: os.PathLike[str] | str, destination: os.PathLike[str] | str) -> int:
    """Copy a file that may still be growing; returns bytes copied."""

    def _copy() -> int:
        shutil.copyfile(source, destination)
        return Path(destination).stat().st_size

    return await asyncio.to_thread(_copy)


def remove_quietly(path: os.PathLike[str] | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        log.warning("failed to remove %s: %r", path, exc)
