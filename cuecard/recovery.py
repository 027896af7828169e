"""Recovery decisions for failed capture processes.

Every failure the capture layer observes lands in ``RecoveryController.report``.
Busy devices and recoverable exits/errors get a delayed restart of the same
session with the transcript so far carried over; missing devices trigger a
rescan; anything else is logged for an operator.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Coroutine, Deque

from cuecard.audio_devices import discover_capture_devices
from cuecard.config import section
from cuecard.failures import (
    CaptureFailure,
    DeviceBusy,
    DeviceNotFound,
    InvalidInput,
    ProcessError,
    UnexpectedExit,
    describe,
)

if TYPE_CHECKING:
    from cuecard.capture import CaptureService
    from cuecard.recording import Recording

log = logging.getLogger("cuecard.recovery")

ACTION_RESTART = "restart"
ACTION_RESCAN = "rescan"
ACTION_LOG = "log"
ACTION_IGNORED = "ignored"


@dataclass(frozen=True)
class RecoveryEvent:
    session_id: str
    failure: CaptureFailure
    action: str
    timestamp: float


class RecoveryController:
    def __init__(self, service: "CaptureService", cfg: dict[str, Any] | None = None) -> None:
        recovery_cfg = section(cfg, "recovery")
        self.service = service
        self.busy_delay_sec = float(recovery_cfg["busy_delay_sec"])
        self.busy_restart_delay_sec = float(recovery_cfg["busy_restart_delay_sec"])
        self.exit_restart_delay_sec = float(recovery_cfg["exit_restart_delay_sec"])
        self.error_restart_delay_sec = float(recovery_cfg["error_restart_delay_sec"])
        self.recoverable_exit_codes = frozenset(
            int(code) for code in recovery_cfg["recoverable_exit_codes"]
        )
        self.recoverable_errnos = frozenset(
            str(name).upper() for name in recovery_cfg["recoverable_errnos"]
        )
        self.history: Deque[RecoveryEvent] = deque(maxlen=50)
        self._tasks: set[asyncio.Task] = set()
        self._restarting: set[str] = set()

    def report(self, recording: "Recording", failure: CaptureFailure) -> str:
        """Decide what to do about ``failure`` and schedule it; returns the action."""

        action = self._dispatch(recording, failure)
        self.history.append(
            RecoveryEvent(
                session_id=recording.session_id,
                failure=failure,
                action=action,
                timestamp=time.time(),
            )
        )
        log.info(
            "recovery for %s: %s -> %s", recording.session_id, describe(failure), action
        )
        return action

    def _dispatch(self, recording: "Recording", failure: CaptureFailure) -> str:
        if not self.service.store.is_current(recording):
            return ACTION_IGNORED

        if isinstance(failure, DeviceBusy):
            if recording.recovering:
                return ACTION_IGNORED
            recording.recovering = True
            self._spawn_restart(recording, self._recover_busy_device(recording))
            return ACTION_RESTART

        if isinstance(failure, DeviceNotFound):
            self._spawn(self._rescan_devices(recording))
            return ACTION_RESCAN

        if isinstance(failure, InvalidInput):
            log.warning(
                "Invalid input data for session %s; check the audio device configuration (%s)",
                recording.session_id,
                failure.detail,
            )
            return ACTION_LOG

        if isinstance(failure, UnexpectedExit):
            if failure.code not in self.recoverable_exit_codes:
                log.error(
                    "capture for %s exited with code %s; not restarting",
                    recording.session_id,
                    failure.code,
                )
                return ACTION_LOG
            if recording.recovering:
                return ACTION_IGNORED
            recording.recovering = True
            self._spawn_restart(recording, self._restart(recording, self.exit_restart_delay_sec))
            return ACTION_RESTART

        if isinstance(failure, ProcessError):
            if failure.errno_name.upper() not in self.recoverable_errnos:
                log.error(
                    "capture for %s failed (%s); manual intervention required",
                    recording.session_id,
                    describe(failure),
                )
                return ACTION_LOG
            if recording.recovering:
                return ACTION_IGNORED
            recording.recovering = True
            self._spawn_restart(recording, self._restart(recording, self.error_restart_delay_sec))
            return ACTION_RESTART

        log.error("unhandled capture failure for %s: %r", recording.session_id, failure)
        return ACTION_LOG

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _spawn_restart(self, recording: "Recording", coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        session_id = recording.session_id
        self._restarting.add(session_id)
        task = self._spawn(coro)
        task.add_done_callback(lambda _task: self._restarting.discard(session_id))
        return task

    def is_recovering(self, session_id: str) -> bool:
        """True while a restart of ``session_id`` is scheduled or running."""

        return session_id in self._restarting

    async def _recover_busy_device(self, recording: "Recording") -> None:
        log.warning(
            "Audio device busy for session %s; retrying in %.1fs",
            recording.session_id,
            self.busy_delay_sec,
        )
        await asyncio.sleep(self.busy_delay_sec)
        await self._cycle(recording, self.busy_restart_delay_sec)

    async def _restart(self, recording: "Recording", delay: float) -> None:
        log.warning("Restarting capture for session %s in %.1fs", recording.session_id, delay)
        await asyncio.sleep(delay)
        await self._cycle(recording, 0.0)

    async def _cycle(self, recording: "Recording", gap: float) -> None:
        session_id = recording.session_id
        if not self.service.store.is_current(recording):
            log.info("Session %s was stopped before recovery; not restarting", session_id)
            return
        try:
            carried = await self.service.stop_recording(session_id) or ""
            if gap > 0:
                await asyncio.sleep(gap)
            if self.service.store.get(session_id) is not None:
                log.info("Session %s was restarted elsewhere; skipping recovery", session_id)
                return
            await self.service.start_recording(
                recording.source, session_id, seed_transcript=carried, replace=False
            )
            log.info("Recovered capture for session %s", session_id)
        except Exception:  # noqa: BLE001 - recovery must never take the service down
            log.exception("Failed to recover capture for session %s", session_id)

    async def _rescan_devices(self, recording: "Recording") -> None:
        log.warning("Audio device not found for session %s; rescanning", recording.session_id)
        try:
            devices = await asyncio.to_thread(
                discover_capture_devices, self.service.tools.ffmpeg, self.service.capture_api
            )
        except Exception:  # noqa: BLE001 - diagnostics only
            log.exception("Device rescan failed")
            return
        if not devices:
            log.warning("No audio capture devices reported by ffmpeg")
        for device in devices:
            log.info("available audio device %s: %s", device.identifier, device.label)

    async def wait_idle(self) -> None:
        """Wait for every scheduled recovery to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._restarting.clear()
