"""Long-running capture that a UI can flush on demand.

The auto-recorder owns a single session on top of ``CaptureService``.
``force_flush`` snapshots everything captured so far, transcribes it in one
pass and returns the buffer; ``reset_after_flush`` clears the buffer once the
caller has consumed it, so the next flush only carries newer speech.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from cuecard.config import section
from cuecard.errors import ExtractionError, TranscriptionError
from cuecard.recording import AudioSource, Recording
from cuecard.segments import copy_snapshot, extract_tail, remove_quietly

if TYPE_CHECKING:
    from cuecard.capture import CaptureService

log = logging.getLogger("cuecard.auto_recorder")


@dataclass
class AutoRecorderState:
    active: bool = False
    session_id: Optional[str] = None
    source: AudioSource = AudioSource.SYSTEM


class AutoRecorderController:
    def __init__(self, service: "CaptureService", cfg: dict[str, Any] | None = None) -> None:
        segmenter_cfg = section(cfg, "segmenter")
        self.service = service
        self.state = AutoRecorderState()
        self.min_bytes = int(segmenter_cfg["min_segment_bytes"])
        self.flush_settle_sec = float(segmenter_cfg["flush_settle_sec"])
        self._flush_lock = asyncio.Lock()

    @property
    def is_active(self) -> bool:
        return self.state.active

    async def start(self, session_id: str, source: AudioSource | str = AudioSource.SYSTEM) -> None:
        source = AudioSource.parse(source)
        if self.state.active:
            log.warning(
                "Auto-recorder already running for %s; restarting for %s",
                self.state.session_id,
                session_id,
            )
            await self.stop()
        self.state = AutoRecorderState(active=True, session_id=session_id, source=source)
        try:
            await self.service.start_recording(source, session_id)
        except Exception:
            self.state = AutoRecorderState()
            raise
        log.info("Auto-recorder started for session %s (%s)", session_id, source.value)

    async def stop(self) -> Optional[str]:
        if not self.state.active or self.state.session_id is None:
            log.warning("Auto-recorder is not running")
            return None
        session_id = self.state.session_id
        try:
            transcript = await self.service.stop_recording(session_id)
        finally:
            self.state = AutoRecorderState()
        log.info("Auto-recorder stopped for session %s", session_id)
        return transcript

    def _recording(self) -> Recording | None:
        if not self.state.active or self.state.session_id is None:
            return None
        session_id = self.state.session_id
        recording = self.service.get_recording(session_id)
        if recording is None and not self.service.recovery.is_recovering(session_id):
            log.warning("Auto-recorder session %s was stopped elsewhere; clearing state", session_id)
            self.state = AutoRecorderState()
        return recording

    async def force_flush(self) -> str:
        """Transcribe all audio captured so far and return the buffer."""

        if not self.state.active:
            log.warning("force_flush called while the auto-recorder is inactive")
            return ""
        async with self._flush_lock:
            recording = self._recording()
            if recording is None or not recording.is_active:
                log.warning("No active recording behind the auto-recorder")
                return self.current_transcription()
            await self._transcribe_everything(recording)
        return self.current_transcription()

    async def _transcribe_everything(self, recording: Recording) -> None:
        source_file = recording.output_file
        if not source_file.exists():
            log.warning("No recording file yet for session %s", recording.session_id)
            return
        if source_file.stat().st_size < self.min_bytes:
            # ffmpeg may not have flushed its first buffer yet.
            await asyncio.sleep(self.flush_settle_sec)

        snapshot = self.service.segment_path("segment-flush", recording.session_id)
        try:
            try:
                copied = await copy_snapshot(source_file, snapshot)
            except OSError as exc:
                log.error("Snapshot copy failed (%r); extracting instead", exc)
                await extract_tail(
                    self.service.tools.ffmpeg,
                    self.service.tools.ffprobe,
                    source_file,
                    snapshot,
                    max(1.0, recording.elapsed_seconds()),
                )
                copied = snapshot.stat().st_size if snapshot.exists() else 0
            if copied < self.min_bytes:
                log.info("Flushed audio too small to transcribe (%d bytes)", copied)
                return
            text = await self.service.transcriber.transcribe(snapshot)
            if text:
                self.service.append_transcript(recording, snapshot.stem, text)
            else:
                log.info("Force flush produced no speech for %s", recording.session_id)
        except (ExtractionError, TranscriptionError) as exc:
            log.error("Force flush failed for %s: %s", recording.session_id, exc)
        finally:
            remove_quietly(snapshot)

    def reset_after_flush(self) -> bool:
        recording = self._recording()
        if recording is None:
            log.warning("reset_after_flush called without an active auto-recorder session")
            return False
        recording.reset_transcription()
        log.info("Auto-recorder buffer cleared for session %s", recording.session_id)
        return True

    def current_transcription(self) -> str:
        recording = self._recording()
        if recording is None:
            return ""
        return recording.accumulated_transcription.strip()

    def status(self) -> dict[str, Any]:
        transcription = self.current_transcription()
        return {
            "active": self.state.active,
            "sessionId": self.state.session_id,
            "source": self.state.source.value if self.state.active else None,
            "currentTranscription": transcription,
        }
