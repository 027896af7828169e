"""Locate the external tools the capture pipeline shells out to.

Resolution order for every tool: environment override, configured value,
platform install locations, the bundled resources directory and finally the
bare command name (looked up through ``PATH`` when spawned). Only the
acoustic model is mandatory; a missing model aborts initialization.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from cuecard.config import section
from cuecard.errors import ModelNotFoundError
from cuecard.ffmpeg_io import run_process

log = logging.getLogger("cuecard.binaries")

DEFAULT_MODEL_NAME = "ggml-base.en.bin"
WHISPER_NAMES = ("whisper-cli", "whisper")

ENV_OVERRIDES = {
    "ffmpeg": "FFMPEG_PATH",
    "ffprobe": "FFPROBE_PATH",
    "whisper": "WHISPER_CLI_PATH",
    "model": "WHISPER_MODEL_PATH",
}

PLATFORM_BIN_DIRS = (
    Path("/opt/homebrew/bin"),
    Path("/usr/local/bin"),
    Path("/usr/bin"),
)


@dataclass(frozen=True)
class ToolPaths:
    ffmpeg: str
    ffprobe: str
    whisper: str
    model: str

    def as_dict(self) -> dict[str, str]:
        return {
            "ffmpeg": self.ffmpeg,
            "ffprobe": self.ffprobe,
            "whisper": self.whisper,
            "model": self.model,
        }


def default_resources_dir() -> Path:
    # Frozen bundles unpack their payload under sys._MEIPASS.
    bundled = getattr(sys, "_MEIPASS", None)
    if bundled:
        return Path(bundled)
    return Path.cwd()


def user_data_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "cuecard"
    if sys.platform.startswith("win"):
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "cuecard"
    return Path.home() / ".local" / "share" / "cuecard"


def _has_separator(candidate: str) -> bool:
    return os.sep in candidate or (os.altsep is not None and os.altsep in candidate)


def pick_first_existing(candidates: Sequence[str]) -> str | None:
    """Return the first usable candidate.

    Paths must exist on disk; a bare command name is accepted as-is since the
    OS resolves it through ``PATH`` at spawn time.
    """

    for candidate in candidates:
        if not candidate:
            continue
        if _has_separator(candidate):
            if Path(candidate).expanduser().exists():
                return str(Path(candidate).expanduser())
            continue
        return candidate
    return None


def _override(name: str, env: Mapping[str, str], binaries_cfg: Mapping[str, Any]) -> list[str]:
    found: list[str] = []
    env_value = env.get(ENV_OVERRIDES[name], "").strip()
    if env_value:
        found.append(env_value)
    cfg_value = binaries_cfg.get(name)
    if isinstance(cfg_value, str) and cfg_value.strip():
        found.append(cfg_value.strip())
    return found


def _tool_candidates(
    name: str,
    env: Mapping[str, str],
    binaries_cfg: Mapping[str, Any],
    resources_dir: Path,
) -> list[str]:
    candidates = _override(name, env, binaries_cfg)
    candidates.extend(str(directory / name) for directory in PLATFORM_BIN_DIRS)
    candidates.append(str(resources_dir / name))
    candidates.append(str(resources_dir / "bin" / name))
    return candidates


def _whisper_candidates(
    env: Mapping[str, str],
    binaries_cfg: Mapping[str, Any],
    resources_dir: Path,
) -> list[str]:
    candidates = _override("whisper", env, binaries_cfg)
    for exe in WHISPER_NAMES:
        candidates.extend(str(directory / exe) for directory in PLATFORM_BIN_DIRS)
    candidates.append(str(resources_dir / "whisper-cli"))
    candidates.append(str(resources_dir / "bin" / "whisper-cli"))
    return candidates


def _model_candidates(
    env: Mapping[str, str],
    binaries_cfg: Mapping[str, Any],
    resources_dir: Path,
) -> list[str]:
    candidates = _override("model", env, binaries_cfg)
    candidates.extend(
        [
            str(resources_dir / "assets" / "models" / DEFAULT_MODEL_NAME),
            str(user_data_dir() / "models" / DEFAULT_MODEL_NAME),
            str(Path.home() / "tools" / DEFAULT_MODEL_NAME),
        ]
    )
    return candidates


def resolve_tool_paths(
    cfg: dict[str, Any] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    resources_dir: os.PathLike[str] | str | None = None,
) -> ToolPaths:
    """Resolve every tool once, before any recording starts."""

    if env is None:
        env = os.environ
    binaries_cfg = section(cfg, "binaries")
    if resources_dir is None:
        configured = binaries_cfg.get("resources_dir")
        if isinstance(configured, str) and configured.strip():
            resources_dir = configured.strip()
    base = Path(resources_dir) if resources_dir is not None else default_resources_dir()

    ffmpeg = pick_first_existing(_tool_candidates("ffmpeg", env, binaries_cfg, base)) or "ffmpeg"
    ffprobe = pick_first_existing(_tool_candidates("ffprobe", env, binaries_cfg, base)) or "ffprobe"
    whisper = pick_first_existing(_whisper_candidates(env, binaries_cfg, base)) or WHISPER_NAMES[0]

    model_candidates = _model_candidates(env, binaries_cfg, base)
    model = None
    for candidate in model_candidates:
        path = Path(candidate).expanduser()
        if path.is_file():
            model = str(path)
            break
    if model is None:
        raise ModelNotFoundError(
            "Whisper model not found in: "
            + ", ".join(model_candidates)
            + ". Set WHISPER_MODEL_PATH or place the model under assets/models"
        )

    tools = ToolPaths(ffmpeg=ffmpeg, ffprobe=ffprobe, whisper=whisper, model=model)
    for name, value in tools.as_dict().items():
        log.info("Using %s at %s", name, value)
    return tools


async def verify_tools(tools: ToolPaths, *, timeout: float = 10.0) -> dict[str, bool]:
    """Check the binaries actually run; failures are reported, not raised."""

    checks = {
        "ffmpeg": (tools.ffmpeg, ["-version"]),
        "whisper": (tools.whisper, ["--help"]),
    }
    status: dict[str, bool] = {}
    for name, (exe, args) in checks.items():
        try:
            result = await run_process(exe, args, timeout=timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            log.warning("%s check failed (%s): %r", name, exe, exc)
            status[name] = False
            continue
        status[name] = result.returncode == 0
        if not status[name]:
            log.warning("%s check exited with code %s (%s)", name, result.returncode, exe)
    return status
