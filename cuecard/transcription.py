#!/usr/bin/env python3
"""Speech-to-text helpers wrapping the whisper.cpp command line tool."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import sys
from pathlib import Path
from typing import Sequence

from cuecard.config import get_cfg, section
from cuecard.errors import ModelNotFoundError, TranscriptionError
from cuecard.ffmpeg_io import run_process, whisper_args

log = logging.getLogger("cuecard.transcription")

MIN_SEGMENT_BYTES = 1000
DEFAULT_TIMEOUT_SEC = 30.0

_CLEANUP_PATTERNS: tuple[re.Pattern[str], ...] = (
    # ANSI colours, escaped and with the ESC already stripped.
    re.compile(r"\x1b\[[0-9;]*m"),
    re.compile(r"\[\d+;\d+;\d+m"),
    re.compile(r"\[\d+m"),
    # [00:00:00.000 --> 00:00:02.000]
    re.compile(r"\[\d{2}:\d{2}:\d{2}\.\d{3}\s*-->\s*\d{2}:\d{2}:\d{2}\.\d{3}\]"),
    # 00:00:00.000 --> 00:00:02.000
    re.compile(r"\d{2}:\d{2}:\d{2}\.\d{3}\s*-->\s*\d{2}:\d{2}:\d{2}\.\d{3}"),
    # [00:00.000 --> 00:02.000]
    re.compile(r"\[\d{2}:\d{2}\.\d{3}\s*-->\s*\d{2}:\d{2}\.\d{3}\]"),
    # [0.00s -> 2.00s]
    re.compile(r"\[\d+\.\d+s\s*->\s*\d+\.\d+s\]"),
    re.compile(r"^\s*WEBVTT\s*", re.IGNORECASE),
    re.compile(r"\[?Speaker\s+\d+\]?\s*:?\s*", re.IGNORECASE),
    re.compile(r"\(confidence:\s*\d+\.\d+\)", re.IGNORECASE),
    re.compile(r"\[\d+\.\d+%\]"),
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_EDGE_QUOTES = re.compile(r"^[\"']+|[\"']+$")


def clean_transcript_text(text: str) -> str:
    """Strip engine decoration and return a single plain line of text."""

    cleaned = text
    for pattern in _CLEANUP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = _CONTROL_CHARS.sub(" ", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    cleaned = _EDGE_QUOTES.sub("", cleaned)
    return cleaned.strip()


def sidecar_paths(audio_path: Path) -> list[Path]:
    """Text files whisper-cli may leave next to the input."""

    primary = audio_path.with_suffix(".txt")
    secondary = audio_path.with_name(audio_path.name + ".txt")
    return [primary] if primary == secondary else [primary, secondary]


class WhisperTranscriber:
    def __init__(
        self,
        executable: str,
        model_path: str,
        *,
        language: str = "auto",
        min_bytes: int = MIN_SEGMENT_BYTES,
        timeout: float | None = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        self.executable = executable
        self.model_path = model_path
        self.language = language
        self.min_bytes = int(min_bytes)
        self.timeout = timeout

    async def transcribe(self, audio_file: os.PathLike[str] | str) -> str:
        """Return cleaned text for ``audio_file``; ``""`` when there is none.

        Only a spawn failure raises (``TranscriptionError``). Missing or tiny
        files, engine failures and timeouts all come back as an empty string.
        """

        path = Path(audio_file)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            log.warning("audio file not found: %s", path)
            return ""
        if size < self.min_bytes:
            log.debug("audio file too small (%d bytes), skipping: %s", size, path)
            return ""

        args = whisper_args(self.model_path, path, language=self.language)
        try:
            result = await run_process(self.executable, args, timeout=self.timeout)
        except asyncio.TimeoutError:
            log.error("whisper-cli timed out after %ss on %s", self.timeout, path)
            return ""
        except OSError as exc:
            raise TranscriptionError(f"Failed to start whisper-cli: {exc}") from exc

        sidecars = sidecar_paths(path)
        try:
            if result.returncode != 0:
                log.error(
                    "whisper-cli exited with code %s: %s", result.returncode, result.stderr.strip()
                )
                return ""
            text = result.stdout.strip()
            if not text:
                text = self._read_sidecar(sidecars)
        finally:
            for sidecar in sidecars:
                try:
                    sidecar.unlink(missing_ok=True)
                except OSError as exc:
                    log.warning("failed to remove transcript sidecar %s: %r", sidecar, exc)

        cleaned = clean_transcript_text(text) if text else ""
        if cleaned:
            log.info("transcribed %s: %r", path.name, cleaned[:80])
        else:
            log.debug("no speech found in %s", path.name)
        return cleaned

    @staticmethod
    def _read_sidecar(sidecars: Sequence[Path]) -> str:
        for sidecar in sidecars:
            if not sidecar.exists():
                continue
            try:
                return sidecar.read_text(encoding="utf-8", errors="replace").strip()
            except OSError as exc:
                log.warning("failed to read transcript sidecar %s: %r", sidecar, exc)
        return ""


def transcriber_from_config(tools, cfg: dict | None = None) -> WhisperTranscriber:
    transcription_cfg = section(cfg, "transcription")
    segmenter_cfg = section(cfg, "segmenter")
    timeout = transcription_cfg.get("timeout_sec")
    return WhisperTranscriber(
        tools.whisper,
        tools.model,
        language=str(transcription_cfg.get("language") or "auto"),
        min_bytes=int(segmenter_cfg.get("min_segment_bytes", MIN_SEGMENT_BYTES)),
        timeout=float(timeout) if timeout else None,
    )


def _parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transcribe a WAV file with whisper-cli")
    parser.add_argument("source", help="Path to the source WAV file")
    parser.add_argument("--language", default=None, help="Language code (default: config)")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    from cuecard.binaries import resolve_tool_paths

    args = _parse_cli_args(argv)
    cfg = get_cfg()
    try:
        tools = resolve_tool_paths(cfg)
    except ModelNotFoundError as exc:
        print(f"[transcription] ERROR: {exc}", flush=True)
        return 1
    transcriber = transcriber_from_config(tools, cfg)
    if args.language:
        transcriber.language = args.language
    try:
        text = asyncio.run(transcriber.transcribe(args.source))
    except TranscriptionError as exc:
        print(f"[transcription] ERROR: {exc}", flush=True)
        return 1
    print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
