#!/usr/bin/env python3
"""
Unified configuration loader for cuecard.

Load order (first found wins):
  1) CUECARD_CONFIG (env, absolute or relative to CWD)
  2) ~/.config/cuecard/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict

import yaml


def _platform_audio_defaults(platform: str) -> Dict[str, str]:
    if platform == "darwin":
        # BlackHole is usually the first avfoundation audio device; the
        # built-in microphone index varies per machine.
        return {"capture_api": "avfoundation", "system_device": ":0", "mic_device": ":6"}
    if platform.startswith("win"):
        return {
            "capture_api": "dshow",
            "system_device": "audio=Stereo Mix",
            "mic_device": "audio=Microphone",
        }
    return {"capture_api": "pulse", "system_device": "default.monitor", "mic_device": "default"}


_DEFAULTS: Dict[str, Any] = {
    "audio": {
        **_platform_audio_defaults(sys.platform),
        "sample_rate": 16000,
        "channels": 1,
        "codec": "pcm_s16le",
        "both_mode": "microphone",
    },
    "segmenter": {
        "segment_ms": 5000,
        "final_window_ms": 10000,
        "min_segment_bytes": 1000,
        "segment_retention_sec": 60.0,
        "flush_settle_sec": 0.5,
    },
    "capture": {
        "stop_grace_sec": 1.0,
        "max_recent_transcriptions": 10,
    },
    "recovery": {
        "busy_delay_sec": 2.0,
        "busy_restart_delay_sec": 1.0,
        "exit_restart_delay_sec": 3.0,
        "error_restart_delay_sec": 2.0,
        "recoverable_exit_codes": [1, 255],
        "recoverable_errnos": ["EAGAIN", "EBUSY", "EINTR"],
    },
    "binaries": {
        "ffmpeg": "",
        "ffprobe": "",
        "whisper": "",
        "model": "",
        "resources_dir": "",
    },
    "transcription": {
        "language": "auto",
        "timeout_sec": 30.0,
    },
    "paths": {
        "tmp_dir": str(Path(tempfile.gettempdir()) / "interview-assistant-audio"),
    },
    "control": {
        "host": "127.0.0.1",
        "port": 8765,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def default_config() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc!r}", flush=True)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CUECARD_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path.home() / ".config" / "cuecard" / "config.yaml",
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    if "TMP_DIR" in os.environ:
        value = os.environ["TMP_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["tmp_dir"] = value

    audio_env = {
        "AUDIO_CAPTURE_API": "capture_api",
        "AUDIO_SYSTEM_DEVICE": "system_device",
        "AUDIO_MIC_DEVICE": "mic_device",
        "AUDIO_BOTH_MODE": "both_mode",
    }
    for env_key, key in audio_env.items():
        if env_key in os.environ:
            value = os.environ[env_key].strip()
            if value:
                cfg.setdefault("audio", {})[key] = value

    env_map = {
        "SEGMENT_MS": ("segmenter", "segment_ms", int),
        "SEGMENT_RETENTION_SEC": ("segmenter", "segment_retention_sec", float),
        "TRANSCRIPTION_LANGUAGE": ("transcription", "language", str),
        "TRANSCRIPTION_TIMEOUT_SEC": ("transcription", "timeout_sec", float),
        "CONTROL_HOST": ("control", "host", str),
        "CONTROL_PORT": ("control", "port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key].strip())
            except ValueError:
                print(
                    f"[config] WARNING: ignoring invalid {env_key}={os.environ[env_key]!r}",
                    flush=True,
                )


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = default_config()

    # cuecard/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def section(cfg: Dict[str, Any] | None, name: str) -> Dict[str, Any]:
    """Return ``cfg[name]`` merged over the defaults for that section."""

    defaults = copy.deepcopy(_DEFAULTS.get(name, {}))
    if cfg is None:
        cfg = get_cfg()
    raw = cfg.get(name)
    if isinstance(raw, dict):
        return _deep_merge(defaults, raw)
    return defaults
