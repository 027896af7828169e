from __future__ import annotations

import asyncio
import stat
from pathlib import Path

import pytest

from cuecard import config as config_module
from cuecard.binaries import ToolPaths

FAKE_FFMPEG = """#!/bin/sh
# Stand-in for ffmpeg. "-ss" marks a segment extraction, "-version" a tool
# check; anything else is treated as a long-running capture.
[ -n "$FAKE_TOOL_LOG" ] && echo "ffmpeg $*" >> "$FAKE_TOOL_LOG"
last=""
mode="capture"
for arg in "$@"; do
  [ "$arg" = "-ss" ] && mode="extract"
  [ "$arg" = "-version" ] && mode="version"
  [ "$arg" = "-list_devices" ] && mode="list"
  last="$arg"
done
case "$mode" in
  version)
    echo "ffmpeg version fake"
    exit 0
    ;;
  list)
    exit 1
    ;;
  extract)
    head -c 4000 /dev/zero > "$last"
    exit 0
    ;;
esac
if [ -n "$FAKE_FFMPEG_FAIL_MARKER" ] && [ -f "$FAKE_FFMPEG_FAIL_MARKER" ]; then
  rm -f "$FAKE_FFMPEG_FAIL_MARKER"
  echo "[alsa @ 0x1] cannot open audio device default (Device or resource busy)" >&2
  exit 1
fi
head -c 8000 /dev/zero > "$last"
exec sleep 30
"""

FAKE_FFPROBE = """#!/bin/sh
echo "${FAKE_PROBE_DURATION:-12.0}"
"""

FAKE_WHISPER = """#!/bin/sh
last=""
for arg in "$@"; do
  [ "$arg" = "--help" ] && exit 0
  last="$arg"
done
if [ -n "$FAKE_WHISPER_SLEEP" ]; then
  sleep "$FAKE_WHISPER_SLEEP"
fi
if [ "$FAKE_WHISPER_SIDECAR" = "1" ]; then
  printf '%s\\n' "${FAKE_WHISPER_TEXT-hello world}" > "$last.txt"
  exit 0
fi
printf '%s\\n' "${FAKE_WHISPER_TEXT-hello world}"
exit "${FAKE_WHISPER_EXIT:-0}"
"""


def write_script(path: Path, body: str) -> str:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


async def wait_for(predicate, *, timeout: float = 5.0, interval: float = 0.02) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setenv("CUECARD_CONFIG", str(tmp_path / "absent-config.yaml"))
    for key in ("FAKE_WHISPER_TEXT", "FAKE_WHISPER_SIDECAR", "FAKE_WHISPER_SLEEP", "FAKE_WHISPER_EXIT"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def tool_log(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "tool-calls.log"
    monkeypatch.setenv("FAKE_TOOL_LOG", str(path))
    return path


@pytest.fixture
def fake_tools(tmp_path) -> ToolPaths:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    model = tmp_path / "ggml-base.en.bin"
    model.write_bytes(b"\x00" * 16)
    return ToolPaths(
        ffmpeg=write_script(bin_dir / "ffmpeg", FAKE_FFMPEG),
        ffprobe=write_script(bin_dir / "ffprobe", FAKE_FFPROBE),
        whisper=write_script(bin_dir / "whisper-cli", FAKE_WHISPER),
        model=str(model),
    )


@pytest.fixture
def pipeline_cfg(tmp_path) -> dict:
    cfg = config_module.default_config()
    cfg["audio"].update(
        {"capture_api": "pulse", "system_device": "default.monitor", "mic_device": "default"}
    )
    cfg["segmenter"].update(
        {
            "segment_ms": 100,
            "final_window_ms": 1000,
            "segment_retention_sec": 0,
            "flush_settle_sec": 0.01,
        }
    )
    cfg["capture"]["stop_grace_sec"] = 2.0
    cfg["recovery"].update(
        {
            "busy_delay_sec": 0.05,
            "busy_restart_delay_sec": 0.05,
            "exit_restart_delay_sec": 0.05,
            "error_restart_delay_sec": 0.05,
        }
    )
    cfg["transcription"]["timeout_sec"] = 5.0
    cfg["paths"]["tmp_dir"] = str(tmp_path / "audio")
    return cfg
