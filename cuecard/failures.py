"""Capture-process failure classes and the rules that recognise them.

ffmpeg reports device trouble as free text on stderr. The text is matched
here, at the process boundary, and turned into one of a small closed set of
failure records; everything downstream works on those records only.
"""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Callable, Union


@dataclass(frozen=True)
class DeviceBusy:
    detail: str = ""


@dataclass(frozen=True)
class DeviceNotFound:
    detail: str = ""


@dataclass(frozen=True)
class InvalidInput:
    detail: str = ""


@dataclass(frozen=True)
class UnexpectedExit:
    code: int


@dataclass(frozen=True)
class ProcessError:
    errno_name: str
    message: str = ""


CaptureFailure = Union[DeviceBusy, DeviceNotFound, InvalidInput, UnexpectedExit, ProcessError]

# (lower-cased needle, factory). First match wins for a given line.
_STDERR_RULES: tuple[tuple[str, Callable[[str], CaptureFailure]], ...] = (
    ("device or resource busy", DeviceBusy),
    ("device busy", DeviceBusy),
    ("no such device", DeviceNotFound),
    ("invalid data found", InvalidInput),
)

_PROGRESS_MARKERS = ("size=", "time=")


def classify_stderr_line(line: str) -> CaptureFailure | None:
    text = line.strip()
    if not text:
        return None
    lowered = text.lower()
    if any(marker in lowered for marker in _PROGRESS_MARKERS) and "error" not in lowered:
        return None
    for needle, factory in _STDERR_RULES:
        if needle in lowered:
            return factory(text)
    return None


def parse_capture_stderr(chunk: bytes, state: dict[str, str]) -> list[CaptureFailure]:
    """Feed a raw stderr chunk; return failures found on completed lines.

    ``state["buffer"]`` carries a trailing partial line between calls. ffmpeg
    ends progress lines with ``\\r``, so both line endings split.
    """

    text = state.get("buffer", "") + chunk.decode("utf-8", errors="replace")
    text = text.replace("\r", "\n")
    lines = text.split("\n")
    state["buffer"] = lines.pop()
    failures: list[CaptureFailure] = []
    for line in lines:
        failure = classify_stderr_line(line)
        if failure is not None:
            failures.append(failure)
    return failures


def flush_capture_stderr(state: dict[str, str]) -> list[CaptureFailure]:
    """Classify whatever partial line is left once the stream hits EOF."""

    pending = state.get("buffer", "")
    state["buffer"] = ""
    failure = classify_stderr_line(pending)
    return [failure] if failure is not None else []


def classify_exit(returncode: int | None) -> UnexpectedExit | None:
    if returncode is None or returncode == 0:
        return None
    return UnexpectedExit(code=returncode)


def classify_os_error(exc: BaseException) -> ProcessError:
    code = getattr(exc, "errno", None)
    if isinstance(code, int) and code in errno.errorcode:
        name = errno.errorcode[code]
    else:
        name = type(exc).__name__
    return ProcessError(errno_name=name, message=str(exc))


def describe(failure: CaptureFailure) -> str:
    if isinstance(failure, UnexpectedExit):
        return f"unexpected exit (code {failure.code})"
    if isinstance(failure, ProcessError):
        return f"process error {failure.errno_name}: {failure.message}"
    label = {
        DeviceBusy: "device busy",
        DeviceNotFound: "device not found",
        InvalidInput: "invalid input data",
    }[type(failure)]
    return f"{label}: {failure.detail}" if failure.detail else label
