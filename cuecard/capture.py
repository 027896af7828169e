"""
CaptureService: continuous capture, periodic segment transcription.

One ffmpeg process per session writes a single growing WAV file. A scheduler
task carves the most recent window out of that file on a fixed interval and
hands it to the speech-to-text engine; results are appended to the session's
accumulation buffer. Stopping a session terminates ffmpeg, transcribes the
tail of the file one last time and returns the whole buffer.

Each tick re-derives "the last N seconds" from the file's current length, so
consecutive windows can overlap when ticks drift. Overlapping text is kept
as-is.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Coroutine, Optional

from cuecard.audio_devices import CaptureDevice, discover_capture_devices, has_loopback_device
from cuecard.binaries import ToolPaths, verify_tools
from cuecard.config import get_cfg, section
from cuecard.errors import (
    ExtractionError,
    ModelNotFoundError,
    ServiceNotInitializedError,
    TranscriptionError,
)
from cuecard.failures import (
    CaptureFailure,
    classify_exit,
    classify_os_error,
    describe,
    flush_capture_stderr,
    parse_capture_stderr,
)
from cuecard.ffmpeg_io import capture_args, mixed_capture_args
from cuecard.recording import (
    AudioSource,
    Recording,
    RecordingStore,
    Segment,
    TranscriptChannel,
    TranscriptEvent,
)
from cuecard.recovery import RecoveryController
from cuecard.segments import extract_tail, remove_quietly
from cuecard.transcription import WhisperTranscriber, transcriber_from_config

log = logging.getLogger("cuecard.capture")

STDERR_CHUNK_BYTES = 4096
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _file_token(session_id: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", session_id) or "session"


def _now_ms() -> int:
    return int(time.time() * 1000)


class CaptureService:
    def __init__(
        self,
        tools: ToolPaths,
        *,
        cfg: dict[str, Any] | None = None,
        store: RecordingStore | None = None,
        transcriber: WhisperTranscriber | None = None,
        recovery: RecoveryController | None = None,
        tmp_dir: str | Path | None = None,
    ) -> None:
        if cfg is None:
            cfg = get_cfg()
        self.tools = tools
        self.store = store if store is not None else RecordingStore()
        self.transcriber = transcriber or transcriber_from_config(tools, cfg)
        self.recovery = recovery if recovery is not None else RecoveryController(self, cfg)

        audio_cfg = section(cfg, "audio")
        segmenter_cfg = section(cfg, "segmenter")
        capture_cfg = section(cfg, "capture")
        self.capture_api = str(audio_cfg["capture_api"])
        self.system_device = str(audio_cfg["system_device"])
        self.mic_device = str(audio_cfg["mic_device"])
        self.both_mode = str(audio_cfg.get("both_mode") or "microphone").lower()
        self.sample_rate = int(audio_cfg["sample_rate"])
        self.channels = int(audio_cfg["channels"])
        self.codec = str(audio_cfg["codec"])

        self.segment_ms = max(1, int(segmenter_cfg["segment_ms"]))
        self.final_window_ms = max(1, int(segmenter_cfg["final_window_ms"]))
        self.segment_retention_sec = float(segmenter_cfg["segment_retention_sec"])
        self.stop_grace_sec = float(capture_cfg["stop_grace_sec"])
        self.max_recent_transcriptions = max(1, int(capture_cfg["max_recent_transcriptions"]))

        if tmp_dir is None:
            tmp_dir = section(cfg, "paths")["tmp_dir"]
        self.tmp_dir = Path(tmp_dir)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

        self._initialized = False
        self._background: set[asyncio.Task] = set()
        self._expiry_handles: dict[Path, asyncio.TimerHandle] = {}

    # --- Lifecycle ---
    async def initialize(self, *, verify: bool = True) -> None:
        """Check the model and tools; must complete before any recording."""

        if not Path(self.tools.model).is_file():
            raise ModelNotFoundError(f"Whisper model not found at {self.tools.model}")
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        if verify:
            await verify_tools(self.tools)
            await self.check_audio_devices()
        self._initialized = True
        log.info("Audio service initialized (tmp_dir=%s)", self.tmp_dir)

    def is_ready(self) -> bool:
        return self._initialized

    async def check_audio_devices(self) -> list[CaptureDevice]:
        devices = await asyncio.to_thread(
            discover_capture_devices, self.tools.ffmpeg, self.capture_api
        )
        for device in devices:
            log.info("audio device %s: %s", device.identifier, device.label)
        if self.capture_api in ("avfoundation", "dshow") and not has_loopback_device(devices):
            log.warning(
                "No loop-back audio driver detected (e.g. BlackHole); "
                "internal audio capture may not work"
            )
        return devices

    async def cleanup(self) -> None:
        await self.recovery.shutdown()
        for session_id in self.store.session_ids():
            await self.stop_recording(session_id)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        for handle in self._expiry_handles.values():
            handle.cancel()
        self._expiry_handles.clear()
        if self.tmp_dir.exists():
            for path in self.tmp_dir.iterdir():
                if path.is_file():
                    remove_quietly(path)
        log.info("Audio service cleaned up")

    # --- Capture ---
    def build_capture_args(self, source: AudioSource, output_file: Path) -> list[str]:
        options = {"sample_rate": self.sample_rate, "channels": self.channels, "codec": self.codec}
        if source.uses_loopback:
            return capture_args(self.capture_api, self.system_device, output_file, **options)
        if source is AudioSource.INTERVIEWEE:
            return capture_args(self.capture_api, self.mic_device, output_file, **options)
        if self.both_mode == "mix":
            return mixed_capture_args(
                self.capture_api, [self.system_device, self.mic_device], output_file, **options
            )
        log.warning("BOTH source is capturing the microphone only (audio.both_mode=microphone)")
        return capture_args(self.capture_api, self.mic_device, output_file, **options)

    def segment_path(self, kind: str, session_id: str) -> Path:
        return self.tmp_dir / f"{kind}-{_file_token(session_id)}-{_now_ms()}.wav"

    async def start_recording(
        self,
        source: AudioSource | str,
        session_id: str,
        *,
        seed_transcript: str = "",
        replace: bool = True,
    ) -> Recording:
        """Start capture for ``session_id``.

        An existing recording for the session is stopped first; with
        ``replace=False`` it is left alone and returned instead.
        """

        if not self._initialized:
            raise ServiceNotInitializedError("Audio service not initialized")
        source = AudioSource.parse(source)
        async with self.store.session_lock(session_id):
            existing = self.store.get(session_id)
            if existing is not None:
                if not replace:
                    log.info("Session %s already has a recording; keeping it", session_id)
                    return existing
                log.info("Stopping existing recording for session %s", session_id)
                await self._stop_locked(session_id)
            return await self._start_locked(source, session_id, seed_transcript)

    async def _start_locked(
        self, source: AudioSource, session_id: str, seed_transcript: str
    ) -> Recording:
        output_file = self.tmp_dir / f"{_file_token(session_id)}-{_now_ms()}.wav"
        recording = Recording(session_id=session_id, source=source, output_file=output_file)
        if seed_transcript.strip():
            recording.append_transcription(seed_transcript.strip())
        args = self.build_capture_args(source, output_file)
        recording.channel = TranscriptChannel(history_limit=self.max_recent_transcriptions)
        self.store.put(recording)

        log.info(
            "Starting audio recording for session %s from %s: %s %s",
            session_id,
            source.value,
            self.tools.ffmpeg,
            " ".join(args),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                self.tools.ffmpeg,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            log.error("Failed to launch capture process for session %s: %r", session_id, exc)
            self._report(recording, classify_os_error(exc))
            return recording

        recording.process = process
        if not self.store.is_current(recording):
            log.warning("Session %s was replaced during launch; discarding capture", session_id)
            recording.stopping = True
            await self._terminate(recording)
            return recording

        recording.is_active = True
        recording.stderr_task = asyncio.create_task(
            self._watch_stderr(recording), name=f"capture-stderr-{session_id}"
        )
        recording.exit_task = asyncio.create_task(
            self._watch_exit(recording), name=f"capture-exit-{session_id}"
        )
        recording.scheduler_task = asyncio.create_task(
            self._run_scheduler(recording), name=f"segment-scheduler-{session_id}"
        )
        log.info("Audio recording started for session %s (pid=%s)", session_id, process.pid)
        return recording

    async def stop_recording(self, session_id: str) -> Optional[str]:
        """Stop capture and return the trimmed transcript, or ``None``.

        Never raises; the session's entry is removed from the store no
        matter how the shutdown goes.
        """

        async with self.store.session_lock(session_id):
            return await self._stop_locked(session_id)

    async def _stop_locked(self, session_id: str) -> Optional[str]:
        recording = self.store.get(session_id)
        if recording is None:
            log.warning("No active recording found for session: %s", session_id)
            return None

        try:
            recording.stopping = True
            if recording.scheduler_task is not None:
                recording.scheduler_task.cancel()
            await self._terminate(recording)
            recording.is_active = False
            log.info("Recording stopped for session %s", session_id)

            await self._final_extraction(recording)

            transcript = recording.accumulated_transcription.strip()
            if transcript:
                log.info("Complete transcription for session %s: %r", session_id, transcript)
                return transcript
            log.warning("No accumulated transcription for session %s", session_id)
            return None
        except Exception:  # noqa: BLE001 - callers treat None as "no transcript"
            log.exception("Error stopping recording for session %s", session_id)
            return None
        finally:
            self.store.remove(session_id, recording)
            for task in recording.owned_tasks():
                if not task.done():
                    task.cancel()

    async def _terminate(self, recording: Recording) -> None:
        process = recording.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_grace_sec)
        except asyncio.TimeoutError:
            log.warning(
                "capture process for %s did not exit after SIGTERM; sending SIGKILL",
                recording.session_id,
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        log.debug("capture process for %s exited rc=%s", recording.session_id, process.returncode)

    async def _final_extraction(self, recording: Recording) -> None:
        if not recording.output_file.exists():
            log.warning("No output file for session %s", recording.session_id)
            return
        final_file = self.segment_path("final", recording.session_id)
        try:
            await extract_tail(
                self.tools.ffmpeg,
                self.tools.ffprobe,
                recording.output_file,
                final_file,
                self.final_window_ms / 1000.0,
                final=True,
            )
            text = await self.transcriber.transcribe(final_file)
            if text:
                self.append_transcript(recording, final_file.stem, text)
                log.info("Added final transcription for %s: %r", recording.session_id, text)
        except (ExtractionError, TranscriptionError) as exc:
            log.error("Error processing final audio segment for %s: %s", recording.session_id, exc)
        finally:
            remove_quietly(final_file)

    # --- Process observation ---
    async def _watch_stderr(self, recording: Recording) -> None:
        process = recording.process
        if process is None or process.stderr is None:
            return
        state = {"buffer": ""}
        while True:
            chunk = await process.stderr.read(STDERR_CHUNK_BYTES)
            if not chunk:
                break
            log.debug("ffmpeg[%s]: %s", recording.session_id, chunk.decode("utf-8", "replace").strip())
            for failure in parse_capture_stderr(chunk, state):
                self._on_failure(recording, failure)
        for failure in flush_capture_stderr(state):
            self._on_failure(recording, failure)

    async def _watch_exit(self, recording: Recording) -> None:
        process = recording.process
        if process is None:
            return
        returncode = await process.wait()
        was_active = recording.is_active
        recording.is_active = False
        log.info(
            "Recording process closed with code %s for session %s", returncode, recording.session_id
        )
        if recording.stopping or not was_active:
            return
        failure = classify_exit(returncode)
        if failure is not None:
            log.warning(
                "Recording process for %s exited unexpectedly with code %s",
                recording.session_id,
                returncode,
            )
            self._on_failure(recording, failure)

    def _on_failure(self, recording: Recording, failure: CaptureFailure) -> None:
        if recording.stopping:
            return
        log.error("capture failure for session %s: %s", recording.session_id, describe(failure))
        self._report(recording, failure)

    def _report(self, recording: Recording, failure: CaptureFailure) -> None:
        self.recovery.report(recording, failure)

    # --- Segment scheduling ---
    async def _run_scheduler(self, recording: Recording) -> None:
        interval = self.segment_ms / 1000.0
        while recording.is_active:
            await asyncio.sleep(interval)
            if not recording.is_active:
                break
            self._spawn(self._process_tick(recording))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _process_tick(self, recording: Recording) -> None:
        segment_file = self.segment_path("segment", recording.session_id)
        segment = Segment(
            id=segment_file.stem,
            file_path=segment_file,
            start_time=datetime.now(timezone.utc),
            duration_ms=self.segment_ms,
        )
        try:
            await extract_tail(
                self.tools.ffmpeg,
                self.tools.ffprobe,
                recording.output_file,
                segment_file,
                self.segment_ms / 1000.0,
            )
        except ExtractionError as exc:
            log.warning("Failed to extract audio segment for %s: %s", recording.session_id, exc)
            remove_quietly(segment_file)
            return
        except Exception:  # noqa: BLE001 - a bad tick must not surface anywhere
            log.exception("Unexpected error extracting segment for %s", recording.session_id)
            remove_quietly(segment_file)
            return

        recording.segments.append(segment)
        try:
            text = await self.transcriber.transcribe(segment_file)
        except TranscriptionError as exc:
            log.error("Failed to transcribe segment %s: %s", segment.id, exc)
            text = ""
        except Exception:  # noqa: BLE001 - a bad tick must not surface anywhere
            log.exception("Unexpected error transcribing segment %s", segment.id)
            text = ""
        finally:
            self._schedule_expiry(segment_file)

        if text:
            segment.transcription = text
            self.append_transcript(recording, segment.id, text)
        else:
            log.debug("No transcription result for segment %s", segment.id)

    def _schedule_expiry(self, path: Path) -> None:
        if self.segment_retention_sec <= 0:
            remove_quietly(path)
            return
        loop = asyncio.get_running_loop()
        self._expiry_handles[path] = loop.call_later(
            self.segment_retention_sec, self._expire_segment, path
        )

    def _expire_segment(self, path: Path) -> None:
        self._expiry_handles.pop(path, None)
        remove_quietly(path)

    # --- Accumulation buffer ---
    def append_transcript(self, recording: Recording, segment_id: str, text: str) -> bool:
        """Append ``text`` to a live recording; late writes to a gone session are dropped."""

        if not self.store.is_current(recording):
            log.debug(
                "Discarding transcript for %s: session is no longer registered",
                recording.session_id,
            )
            return False
        accumulated = recording.append_transcription(text)
        recording.channel.publish(
            TranscriptEvent(
                session_id=recording.session_id,
                segment_id=segment_id,
                text=text,
                timestamp=time.time(),
            )
        )
        log.info("Session %s: added %r", recording.session_id, text)
        log.debug("Session %s accumulated so far: %r", recording.session_id, accumulated)
        return True

    def get_recording(self, session_id: str) -> Recording | None:
        return self.store.get(session_id)

    def get_accumulated_transcription(self, session_id: str) -> str:
        recording = self.store.get(session_id)
        if recording is None:
            return ""
        return recording.accumulated_transcription

    def reset_transcription(self, session_id: str) -> bool:
        recording = self.store.get(session_id)
        if recording is None:
            return False
        recording.reset_transcription()
        return True

    def get_recent_transcriptions(self, session_id: str) -> list[dict[str, Any]]:
        recording = self.store.get(session_id)
        if recording is None:
            return []
        return [
            {"transcription": event.text, "segmentId": event.segment_id, "timestamp": event.timestamp}
            for event in recording.channel.drain()
        ]

    def subscribe(self, session_id: str) -> asyncio.Queue | None:
        recording = self.store.get(session_id)
        if recording is None:
            return None
        return recording.channel.subscribe()

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        recording = self.store.get(session_id)
        if recording is not None:
            recording.channel.unsubscribe(queue)

    def get_recording_status(self, session_id: str) -> dict[str, Any]:
        recording = self.store.get(session_id)
        if recording is None:
            return {"isRecording": False}
        return {
            "isRecording": recording.is_active,
            "source": recording.source.value,
            "startTime": recording.start_time.isoformat(),
        }

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "activeRecordings": len(self.store),
            "tempDir": str(self.tmp_dir),
            "recordings": [recording.summary() for recording in self.store],
        }
