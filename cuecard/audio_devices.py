"""Enumerate audio capture devices through ffmpeg's device listing."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from typing import Iterable, List

from cuecard.ffmpeg_io import list_devices_args

# [AVFoundation indev @ 0x7f8b] [0] BlackHole 2ch
_AVFOUNDATION_LINE = re.compile(r"\]\s*\[(?P<index>\d+)\]\s*(?P<name>.+?)\s*$")
# [dshow @ 000001] "Microphone (Realtek Audio)" (audio)
_DSHOW_LINE = re.compile(r"\"(?P<name>[^\"]+)\"\s*\((?P<kind>audio|video)\)", re.IGNORECASE)

LOOPBACK_MARKERS = ("blackhole", "soundflower", "loopback", "stereo mix", "monitor")


@dataclass(frozen=True)
class CaptureDevice:
    identifier: str
    label: str
    index: int

    @property
    def is_loopback(self) -> bool:
        lowered = self.label.lower()
        return any(marker in lowered for marker in LOOPBACK_MARKERS)


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except FileNotFoundError:
        return ""
    except subprocess.SubprocessError:
        return ""

    # ffmpeg prints the listing on stderr and then fails on the empty input.
    output = (result.stderr or "").strip()
    if not output:
        output = (result.stdout or "").strip()
    return output


def _parse_avfoundation(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    in_audio = False
    for line in output.splitlines():
        lowered = line.lower()
        if "audio devices" in lowered:
            in_audio = True
            continue
        if "video devices" in lowered:
            in_audio = False
            continue
        if not in_audio:
            continue
        match = _AVFOUNDATION_LINE.search(line)
        if not match:
            continue
        index = int(match.group("index"))
        devices.append(
            CaptureDevice(identifier=f":{index}", label=match.group("name"), index=index)
        )
    return devices


def _parse_dshow(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    for line in output.splitlines():
        match = _DSHOW_LINE.search(line)
        if not match or match.group("kind").lower() != "audio":
            continue
        name = match.group("name").strip()
        devices.append(
            CaptureDevice(identifier=f"audio={name}", label=name, index=len(devices))
        )
    return devices


def parse_device_listing(capture_api: str, output: str) -> List[CaptureDevice]:
    if not output:
        return []
    if capture_api == "avfoundation":
        return _parse_avfoundation(output)
    if capture_api == "dshow":
        return _parse_dshow(output)
    return []


def discover_capture_devices(ffmpeg: str, capture_api: str) -> List[CaptureDevice]:
    """Return audio input devices ffmpeg can open with ``capture_api``."""

    output = _run_listing([ffmpeg, *list_devices_args(capture_api)])
    return parse_device_listing(capture_api, output)


def has_loopback_device(devices: Iterable[CaptureDevice]) -> bool:
    return any(device.is_loopback for device in devices)


__all__ = [
    "CaptureDevice",
    "discover_capture_devices",
    "has_loopback_device",
    "parse_device_listing",
]
