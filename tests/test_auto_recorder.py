from __future__ import annotations

import pytest
import pytest_asyncio

from conftest import wait_for
from cuecard.auto_recorder import AutoRecorderController
from cuecard.capture import CaptureService
from cuecard.recording import AudioSource


@pytest_asyncio.fixture
async def service(fake_tools, pipeline_cfg):
    # Long segment interval: only flushes and the final cut produce text.
    pipeline_cfg["segmenter"]["segment_ms"] = 60000
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)
    await svc.initialize(verify=False)
    try:
        yield svc
    finally:
        await svc.cleanup()


@pytest.fixture
def auto_recorder(service, pipeline_cfg):
    return AutoRecorderController(service, pipeline_cfg)


async def _wait_for_capture_file(service, session_id: str) -> None:
    def _ready() -> bool:
        recording = service.get_recording(session_id)
        return (
            recording is not None
            and recording.output_file.exists()
            and recording.output_file.stat().st_size >= 1000
        )

    assert await wait_for(_ready)


@pytest.mark.asyncio
async def test_flush_transcribes_without_stopping(service, auto_recorder) -> None:
    await auto_recorder.start("auto-1")
    await _wait_for_capture_file(service, "auto-1")

    first = await auto_recorder.force_flush()
    second = await auto_recorder.force_flush()

    assert first == "hello world"
    assert second.startswith(first)
    assert len(second) > len(first)
    recording = service.get_recording("auto-1")
    assert recording is not None and recording.is_active
    assert not list(service.tmp_dir.glob("segment-flush-*"))


@pytest.mark.asyncio
async def test_reset_after_flush_clears_buffer(service, auto_recorder) -> None:
    await auto_recorder.start("auto-1", AudioSource.INTERVIEWEE)
    await _wait_for_capture_file(service, "auto-1")
    assert await auto_recorder.force_flush() == "hello world"

    assert auto_recorder.reset_after_flush() is True

    assert auto_recorder.current_transcription() == ""
    assert await auto_recorder.force_flush() == "hello world"


@pytest.mark.asyncio
async def test_stop_returns_transcript_and_clears_state(service, auto_recorder) -> None:
    await auto_recorder.start("auto-1")
    await _wait_for_capture_file(service, "auto-1")

    transcript = await auto_recorder.stop()

    assert transcript == "hello world"
    assert not auto_recorder.is_active
    assert auto_recorder.status() == {
        "active": False,
        "sessionId": None,
        "source": None,
        "currentTranscription": "",
    }
    assert service.get_recording("auto-1") is None


@pytest.mark.asyncio
async def test_session_stopped_elsewhere_clears_state(service, auto_recorder) -> None:
    await auto_recorder.start("auto-1")
    await service.stop_recording("auto-1")

    assert await auto_recorder.force_flush() == ""
    assert not auto_recorder.is_active
    assert auto_recorder.status()["active"] is False
    assert await auto_recorder.stop() is None


@pytest.mark.asyncio
async def test_state_survives_a_pending_restart(service, auto_recorder, monkeypatch) -> None:
    await auto_recorder.start("auto-1")
    monkeypatch.setattr(service.recovery, "is_recovering", lambda session_id: True)
    await service.stop_recording("auto-1")

    status = auto_recorder.status()

    assert status["active"] is True
    assert status["sessionId"] == "auto-1"
    assert auto_recorder.is_active


@pytest.mark.asyncio
async def test_inactive_controller_is_harmless(auto_recorder) -> None:
    assert await auto_recorder.force_flush() == ""
    assert auto_recorder.reset_after_flush() is False
    assert await auto_recorder.stop() is None


@pytest.mark.asyncio
async def test_starting_again_replaces_previous_session(service, auto_recorder) -> None:
    await auto_recorder.start("auto-1")
    await auto_recorder.start("auto-2", "microphone")

    assert service.get_recording("auto-1") is None
    assert service.get_recording("auto-2") is not None
    status = auto_recorder.status()
    assert status["sessionId"] == "auto-2"
    assert status["source"] == "microphone"


@pytest.mark.asyncio
async def test_silent_flush_returns_empty(service, auto_recorder, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_WHISPER_TEXT", "")
    await auto_recorder.start("auto-1")
    await _wait_for_capture_file(service, "auto-1")

    assert await auto_recorder.force_flush() == ""
