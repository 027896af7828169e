from __future__ import annotations

import asyncio
import dataclasses

import pytest
import pytest_asyncio

from conftest import wait_for
from cuecard.capture import CaptureService
from cuecard.errors import ModelNotFoundError, ServiceNotInitializedError
from cuecard.recording import AudioSource


@pytest_asyncio.fixture
async def service(fake_tools, pipeline_cfg):
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)
    await svc.initialize(verify=False)
    try:
        yield svc
    finally:
        await svc.cleanup()


@pytest.mark.asyncio
async def test_start_then_stop_returns_accumulated_text(service, tool_log) -> None:
    await service.start_recording("system", "s1")

    assert await wait_for(lambda: "hello world" in service.get_accumulated_transcription("s1"))
    status = service.get_recording_status("s1")
    assert status["isRecording"] is True
    assert status["source"] == "system"

    transcript = await service.stop_recording("s1")

    assert transcript is not None
    assert transcript.startswith("hello world")
    assert service.get_recording("s1") is None
    assert service.get_recording_status("s1") == {"isRecording": False}
    assert "-y -f pulse -i default.monitor -ac 1 -ar 16000 -acodec pcm_s16le" in tool_log.read_text()


@pytest.mark.asyncio
async def test_stop_unknown_session_returns_none(service) -> None:
    assert await service.stop_recording("never-started") is None


@pytest.mark.asyncio
async def test_silence_yields_no_transcript(service, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_WHISPER_TEXT", "")
    recording = await service.start_recording(AudioSource.SYSTEM, "quiet")

    assert await wait_for(lambda: len(recording.segments) >= 2)
    assert await service.stop_recording("quiet") is None


@pytest.mark.asyncio
async def test_start_requires_initialize(fake_tools, pipeline_cfg) -> None:
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)

    assert not svc.is_ready()
    with pytest.raises(ServiceNotInitializedError):
        await svc.start_recording("system", "s1")


@pytest.mark.asyncio
async def test_initialize_fails_without_model(fake_tools, pipeline_cfg, tmp_path) -> None:
    tools = dataclasses.replace(fake_tools, model=str(tmp_path / "missing.bin"))
    svc = CaptureService(tools, cfg=pipeline_cfg)

    with pytest.raises(ModelNotFoundError):
        await svc.initialize(verify=False)
    assert not svc.is_ready()


@pytest.mark.asyncio
async def test_initialize_runs_tool_checks(fake_tools, pipeline_cfg) -> None:
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)

    await svc.initialize()

    assert svc.is_ready()
    await svc.cleanup()


@pytest.mark.asyncio
async def test_restarting_a_session_stops_the_previous_process(service, tool_log) -> None:
    first = await service.start_recording("microphone", "s1")
    second = await service.start_recording("microphone", "s1")

    assert service.get_recording("s1") is second
    assert first.stopping
    assert first.process.returncode is not None
    assert second.is_active
    assert await wait_for(
        lambda: tool_log.exists() and "-f pulse -i default -ac 1" in tool_log.read_text()
    )


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_capture_process(fake_tools, pipeline_cfg) -> None:
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)
    await svc.initialize(verify=False)
    first, second = await asyncio.gather(
        svc.start_recording("system", "s1"),
        svc.start_recording("system", "s1"),
    )

    current = svc.get_recording("s1")
    assert current in (first, second)
    assert current.is_active
    stale = first if current is second else second
    assert stale.process is None or stale.process.returncode is not None
    assert len(svc.store) == 1

    await svc.cleanup()

    for recording in (first, second):
        assert recording.process is None or recording.process.returncode is not None
    assert svc.get_status()["activeRecordings"] == 0


@pytest.mark.asyncio
async def test_failed_ticks_keep_scheduling_and_stop_returns_none(service, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_PROBE_DURATION", "garbage")
    recording = await service.start_recording("system", "s1")

    await asyncio.sleep(0.5)

    assert recording.is_active
    assert recording.segments == []
    assert not recording.scheduler_task.done()
    assert await service.stop_recording("s1") is None
    assert service.get_recording("s1") is None


@pytest.mark.asyncio
async def test_late_transcripts_for_a_stopped_session_are_dropped(service) -> None:
    recording = await service.start_recording("system", "s1")
    await service.stop_recording("s1")

    assert service.append_transcript(recording, "late-segment", "late words") is False
    assert service.get_accumulated_transcription("s1") == ""


@pytest.mark.asyncio
async def test_subscribers_receive_segment_events(service) -> None:
    await service.start_recording("system", "s1")
    queue = service.subscribe("s1")

    event = await asyncio.wait_for(queue.get(), timeout=5.0)

    assert event.session_id == "s1"
    assert event.text == "hello world"
    recent = service.get_recent_transcriptions("s1")
    assert recent and recent[0]["transcription"] == "hello world"
    service.unsubscribe("s1", queue)


@pytest.mark.asyncio
async def test_status_lists_active_recordings(service) -> None:
    await service.start_recording("internal", "s1")

    status = service.get_status()

    assert status["initialized"] is True
    assert status["activeRecordings"] == 1
    assert status["recordings"][0]["sessionId"] == "s1"
    assert status["recordings"][0]["source"] == "internal"


@pytest.mark.asyncio
async def test_both_source_mixes_when_configured(fake_tools, pipeline_cfg, tool_log) -> None:
    pipeline_cfg["audio"]["both_mode"] = "mix"
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)
    await svc.initialize(verify=False)
    try:
        await svc.start_recording("both", "s1")
        await wait_for(lambda: tool_log.exists() and "amix" in tool_log.read_text())
    finally:
        await svc.cleanup()

    log_text = tool_log.read_text()
    assert "-f pulse -i default.monitor -f pulse -i default" in log_text
    assert "amix=inputs=2:duration=longest" in log_text


def test_both_source_defaults_to_microphone(fake_tools, pipeline_cfg, tmp_path) -> None:
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)

    args = svc.build_capture_args(AudioSource.BOTH, tmp_path / "out.wav")

    assert args[:5] == ["-y", "-f", "pulse", "-i", "default"]


@pytest.mark.asyncio
async def test_spawn_failure_is_routed_to_recovery(fake_tools, pipeline_cfg, tmp_path) -> None:
    tools = dataclasses.replace(fake_tools, ffmpeg=str(tmp_path / "missing-ffmpeg"))
    svc = CaptureService(tools, cfg=pipeline_cfg)
    await svc.initialize(verify=False)
    try:
        recording = await svc.start_recording("system", "s1")

        assert recording.is_active is False
        event = svc.recovery.history[-1]
        assert event.failure.errno_name == "ENOENT"
        assert event.action == "log"
    finally:
        await svc.cleanup()


@pytest.mark.asyncio
async def test_cleanup_stops_everything_and_empties_tmp(fake_tools, pipeline_cfg) -> None:
    svc = CaptureService(fake_tools, cfg=pipeline_cfg)
    await svc.initialize(verify=False)
    first = await svc.start_recording("system", "a")
    second = await svc.start_recording("microphone", "b")
    await wait_for(lambda: first.segments and second.segments)

    await svc.cleanup()

    assert svc.get_status()["activeRecordings"] == 0
    assert first.process.returncode is not None
    assert second.process.returncode is not None
    assert list(svc.tmp_dir.iterdir()) == []
