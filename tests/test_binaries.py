from __future__ import annotations

from pathlib import Path

import pytest

from cuecard import binaries
from cuecard.errors import ModelNotFoundError


@pytest.fixture
def no_platform_dirs(monkeypatch, tmp_path):
    monkeypatch.setattr(binaries, "PLATFORM_BIN_DIRS", (tmp_path / "no-such-bin",))
    monkeypatch.setattr(binaries, "user_data_dir", lambda: tmp_path / "no-user-data")
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


def test_pick_first_existing_prefers_real_paths(tmp_path) -> None:
    present = tmp_path / "ffmpeg"
    present.write_text("")

    assert binaries.pick_first_existing([str(tmp_path / "missing"), str(present)]) == str(present)
    assert binaries.pick_first_existing(["", "ffmpeg"]) == "ffmpeg"
    assert binaries.pick_first_existing([str(tmp_path / "missing")]) is None


def test_env_overrides_win(fake_tools, no_platform_dirs, tmp_path) -> None:
    env = {
        "FFMPEG_PATH": fake_tools.ffmpeg,
        "FFPROBE_PATH": fake_tools.ffprobe,
        "WHISPER_CLI_PATH": fake_tools.whisper,
        "WHISPER_MODEL_PATH": fake_tools.model,
    }

    tools = binaries.resolve_tool_paths({}, env=env, resources_dir=tmp_path / "resources")

    assert tools == fake_tools


def test_bundled_resources_are_used(no_platform_dirs, tmp_path) -> None:
    resources = tmp_path / "resources"
    (resources / "bin").mkdir(parents=True)
    (resources / "bin" / "ffmpeg").write_text("")
    (resources / "ffprobe").write_text("")
    model_dir = resources / "assets" / "models"
    model_dir.mkdir(parents=True)
    (model_dir / binaries.DEFAULT_MODEL_NAME).write_bytes(b"model")

    tools = binaries.resolve_tool_paths({}, env={}, resources_dir=resources)

    assert tools.ffmpeg == str(resources / "bin" / "ffmpeg")
    assert tools.ffprobe == str(resources / "ffprobe")
    assert tools.whisper == "whisper-cli"
    assert tools.model == str(model_dir / binaries.DEFAULT_MODEL_NAME)


def test_configured_paths_are_used(fake_tools, no_platform_dirs, tmp_path) -> None:
    cfg = {"binaries": {"ffmpeg": fake_tools.ffmpeg, "model": fake_tools.model}}

    tools = binaries.resolve_tool_paths(cfg, env={}, resources_dir=tmp_path / "resources")

    assert tools.ffmpeg == fake_tools.ffmpeg
    assert tools.ffprobe == "ffprobe"
    assert tools.model == fake_tools.model


def test_missing_model_is_fatal(no_platform_dirs, tmp_path) -> None:
    with pytest.raises(ModelNotFoundError) as excinfo:
        binaries.resolve_tool_paths({}, env={}, resources_dir=tmp_path / "resources")

    assert excinfo.value.code == "MODEL_NOT_FOUND"


@pytest.mark.asyncio
async def test_verify_tools_reports_without_raising(fake_tools, tmp_path) -> None:
    status = await binaries.verify_tools(fake_tools)
    assert status == {"ffmpeg": True, "whisper": True}

    broken = binaries.ToolPaths(
        ffmpeg=str(tmp_path / "missing-ffmpeg"),
        ffprobe=fake_tools.ffprobe,
        whisper=fake_tools.whisper,
        model=fake_tools.model,
    )
    status = await binaries.verify_tools(broken)
    assert status == {"ffmpeg": False, "whisper": True}


def test_frozen_bundle_resources_dir(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(binaries.sys, "_MEIPASS", str(tmp_path), raising=False)

    assert binaries.default_resources_dir() == Path(tmp_path)
