#!/usr/bin/env python3
"""
Development launcher for cuecard.

- Starts the auto-recorder on the configured loop-back device
- Ctrl-F forces a transcription, prints it and clears the buffer
- Ctrl-C stops capture, prints the final transcript and exits
"""

import argparse
import asyncio
import logging
import os
import sys
import termios
import tty

from cuecard.auto_recorder import AutoRecorderController
from cuecard.binaries import resolve_tool_paths
from cuecard.capture import CaptureService
from cuecard.config import get_cfg
from cuecard.errors import AudioServiceError

FLUSH_KEY = b"\x06"  # Ctrl-F


class KeyReader:
    """Puts the terminal in cbreak mode and feeds keypresses into a queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        self.keys: asyncio.Queue = asyncio.Queue()

    def __enter__(self):
        tty.setcbreak(self.fd)
        self.loop.add_reader(self.fd, self._on_readable)
        return self

    def __exit__(self, *exc_info):
        self.loop.remove_reader(self.fd)
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)
        return False

    def _on_readable(self):
        ch = os.read(self.fd, 1)
        if ch:
            self.keys.put_nowait(ch)


async def run(session_id: str, source: str) -> int:
    cfg = get_cfg()
    try:
        tools = resolve_tool_paths(cfg)
        service = CaptureService(tools, cfg=cfg)
        await service.initialize()
    except AudioServiceError as exc:
        print(f"[dev] ERROR: {exc}", flush=True)
        return 1

    auto_recorder = AutoRecorderController(service, cfg)
    try:
        await auto_recorder.start(session_id, source)
    except (AudioServiceError, ValueError) as exc:
        print(f"[dev] ERROR: {exc}", flush=True)
        await service.cleanup()
        return 1
    print(f"[dev] Recording session {session_id} from {source} (Ctrl-F to flush, Ctrl-C to exit)")

    try:
        with KeyReader(asyncio.get_running_loop()) as reader:
            while True:
                ch = await reader.keys.get()
                if ch != FLUSH_KEY:
                    continue
                text = await auto_recorder.force_flush()
                if text:
                    print(f"[dev] >>> {text}", flush=True)
                    auto_recorder.reset_after_flush()
                else:
                    print("[dev] (no speech detected)", flush=True)
    finally:
        print("[dev] Stopping capture ...")
        final = await auto_recorder.stop()
        print(f"[dev] Final transcript: {final}" if final else "[dev] no speech detected")
        await service.cleanup()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run the capture pipeline in the foreground.")
    parser.add_argument("--session", default="dev", help="Session id (default: dev).")
    parser.add_argument("--source", default="system", help="internal, microphone, both or system.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        return asyncio.run(run(args.session, args.source))
    except KeyboardInterrupt:
        print("[dev] Exiting dev mode")
        return 0


if __name__ == "__main__":
    sys.exit(main())
