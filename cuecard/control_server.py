#!/usr/bin/env python3
"""
Local control API for the capture pipeline.

The hotkey / IPC layer drives recording through these endpoints:

  GET    /api/status                          -> service + auto-recorder status
  POST   /api/sessions/{id}/recording         -> start capture ({"source": ...})
  GET    /api/sessions/{id}/recording         -> recording status + buffer
  DELETE /api/sessions/{id}/recording         -> stop, return transcript
  GET    /api/sessions/{id}/transcriptions    -> drain recent transcript events
  GET    /api/auto-recorder                   -> auto-recorder status
  POST   /api/auto-recorder/start             -> start ({"sessionId", "source"})
  POST   /api/auto-recorder/flush             -> force transcription, keep capturing
  POST   /api/auto-recorder/reset             -> clear the buffer after a flush
  POST   /api/auto-recorder/stop              -> stop, return transcript
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from aiohttp import web
from aiohttp.web import AppKey

from cuecard.auto_recorder import AutoRecorderController
from cuecard.binaries import resolve_tool_paths
from cuecard.capture import CaptureService
from cuecard.config import reload_cfg, section
from cuecard.errors import AudioServiceError, ModelNotFoundError, ServiceNotInitializedError
from cuecard.recording import AudioSource

NO_SPEECH_MESSAGE = "no speech detected"

SERVICE_KEY: AppKey[Any] = web.AppKey("capture_service", object)
AUTO_RECORDER_KEY: AppKey[Any] = web.AppKey("auto_recorder", object)

log = logging.getLogger("cuecard.control_server")


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": f"Invalid JSON body: {exc}"}),
            content_type="application/json",
        ) from exc
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return payload


def _parse_source(payload: dict[str, Any]) -> AudioSource:
    try:
        return AudioSource.parse(payload.get("source") or AudioSource.SYSTEM.value)
    except ValueError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": str(exc)}),
            content_type="application/json",
        ) from exc


def _stop_payload(session_id: str | None, transcript: str | None) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "transcript": transcript,
        "message": None if transcript else NO_SPEECH_MESSAGE,
    }


def _error_response(exc: AudioServiceError, status: int) -> web.Response:
    return web.json_response({"error": str(exc), "code": exc.code}, status=status)


def build_app(
    service: CaptureService,
    auto_recorder: AutoRecorderController,
    *,
    owns_service: bool = False,
) -> web.Application:
    """Create the control application.

    With ``owns_service`` the app tears the service down on shutdown.
    """

    app = web.Application()
    app[SERVICE_KEY] = service
    app[AUTO_RECORDER_KEY] = auto_recorder

    async def status(request: web.Request) -> web.Response:
        payload = dict(service.get_status())
        payload["autoRecorder"] = auto_recorder.status()
        return web.json_response(payload)

    async def start_recording(request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        source = _parse_source(await _read_json(request))
        try:
            await service.start_recording(source, session_id)
        except ServiceNotInitializedError as exc:
            return _error_response(exc, 503)
        payload = {"sessionId": session_id, **service.get_recording_status(session_id)}
        return web.json_response(payload, status=201)

    async def recording_status(request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        payload = {"sessionId": session_id, **service.get_recording_status(session_id)}
        payload["transcription"] = service.get_accumulated_transcription(session_id)
        return web.json_response(payload)

    async def stop_recording(request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        transcript = await service.stop_recording(session_id)
        return web.json_response(_stop_payload(session_id, transcript))

    async def recent_transcriptions(request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        items = service.get_recent_transcriptions(session_id)
        return web.json_response({"sessionId": session_id, "items": items, "total": len(items)})

    async def auto_status(request: web.Request) -> web.Response:
        return web.json_response(auto_recorder.status())

    async def auto_start(request: web.Request) -> web.Response:
        payload = await _read_json(request)
        source = _parse_source(payload)
        session_id = str(payload.get("sessionId") or "auto-recorder")
        try:
            await auto_recorder.start(session_id, source)
        except ServiceNotInitializedError as exc:
            return _error_response(exc, 503)
        return web.json_response(auto_recorder.status(), status=201)

    async def auto_flush(request: web.Request) -> web.Response:
        if not auto_recorder.is_active:
            return web.json_response({"error": "Auto-recorder is not running"}, status=409)
        transcript = await auto_recorder.force_flush()
        return web.json_response(
            {
                "sessionId": auto_recorder.state.session_id,
                "transcript": transcript,
                "message": None if transcript else NO_SPEECH_MESSAGE,
            }
        )

    async def auto_reset(request: web.Request) -> web.Response:
        if not auto_recorder.is_active:
            return web.json_response({"error": "Auto-recorder is not running"}, status=409)
        cleared = auto_recorder.reset_after_flush()
        return web.json_response({"cleared": cleared})

    async def auto_stop(request: web.Request) -> web.Response:
        session_id = auto_recorder.state.session_id
        transcript = await auto_recorder.stop()
        return web.json_response(_stop_payload(session_id, transcript))

    app.router.add_get("/api/status", status)
    app.router.add_post("/api/sessions/{session_id}/recording", start_recording)
    app.router.add_get("/api/sessions/{session_id}/recording", recording_status)
    app.router.add_delete("/api/sessions/{session_id}/recording", stop_recording)
    app.router.add_get("/api/sessions/{session_id}/transcriptions", recent_transcriptions)
    app.router.add_get("/api/auto-recorder", auto_status)
    app.router.add_post("/api/auto-recorder/start", auto_start)
    app.router.add_post("/api/auto-recorder/flush", auto_flush)
    app.router.add_post("/api/auto-recorder/reset", auto_reset)
    app.router.add_post("/api/auto-recorder/stop", auto_stop)

    if owns_service:

        async def _cleanup_service(_: web.Application) -> None:
            if auto_recorder.is_active:
                await auto_recorder.stop()
            await service.cleanup()

        app.on_cleanup.append(_cleanup_service)

    return app


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="cuecard capture control API.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument(
        "--skip-tool-check",
        action="store_true",
        help="Skip the ffmpeg/whisper-cli/device checks at startup.",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    cfg = reload_cfg()
    try:
        tools = resolve_tool_paths(cfg)
    except ModelNotFoundError as exc:
        log.error("Unable to start control server: %s", exc)
        return 1

    service = CaptureService(tools, cfg=cfg)
    auto_recorder = AutoRecorderController(service, cfg)
    app = build_app(service, auto_recorder, owns_service=True)

    async def _initialize_service(_: web.Application) -> None:
        await service.initialize(verify=not args.skip_tool_check)

    app.on_startup.append(_initialize_service)

    control_cfg = section(cfg, "control")
    bind_host = args.host or str(control_cfg["host"])
    bind_port = args.port or int(control_cfg["port"])
    log.info(
        "Starting control server on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )
    try:
        web.run_app(
            app,
            host=bind_host,
            port=bind_port,
            access_log=log if args.access_log else None,
            print=None,
        )
    except AudioServiceError as exc:
        log.error("Control server stopped: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
