"""Session-scoped recording state and the registry that owns it."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Iterator, Optional, Set


class AudioSource(str, Enum):
    INTERVIEWER = "internal"
    INTERVIEWEE = "microphone"
    BOTH = "both"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: "AudioSource | str") -> "AudioSource":
        if isinstance(value, cls):
            return value
        token = str(value).strip().lower()
        for member in cls:
            if token in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unsupported audio source: {value!r}")

    @property
    def uses_loopback(self) -> bool:
        return self in (AudioSource.SYSTEM, AudioSource.INTERVIEWER)


@dataclass
class Segment:
    id: str
    file_path: Path
    start_time: datetime
    duration_ms: int
    transcription: Optional[str] = None


@dataclass(frozen=True)
class TranscriptEvent:
    session_id: str
    segment_id: str
    text: str
    timestamp: float


class TranscriptChannel:
    """Per-session fan-out of transcript events.

    Keeps a short history for pollers and pushes each event to any asyncio
    subscriber queues without ever blocking the publisher.
    """

    def __init__(self, *, history_limit: int = 10, max_queue_size: int = 64) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._history: Deque[TranscriptEvent] = deque(maxlen=history_limit)
        self._subscribers: Set[asyncio.Queue] = set()
        self._max_queue_size = max_queue_size
        self._lock = threading.Lock()

    def publish(self, event: TranscriptEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        for queue in subscribers:
            self._enqueue_nowait(queue, event)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def drain(self) -> list[TranscriptEvent]:
        with self._lock:
            events = list(self._history)
            self._history.clear()
        return events

    def pending(self) -> int:
        with self._lock:
            return len(self._history)

    @staticmethod
    def _enqueue_nowait(queue: asyncio.Queue, event: TranscriptEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer; drop newest event for this subscriber.
                pass


@dataclass
class Recording:
    session_id: str
    source: AudioSource
    output_file: Path
    process: Optional[asyncio.subprocess.Process] = None
    is_active: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    segments: list[Segment] = field(default_factory=list)
    channel: TranscriptChannel = field(default_factory=TranscriptChannel)
    stopping: bool = False
    recovering: bool = False
    scheduler_task: Optional[asyncio.Task] = None
    stderr_task: Optional[asyncio.Task] = None
    exit_task: Optional[asyncio.Task] = None
    _accumulated: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def accumulated_transcription(self) -> str:
        with self._lock:
            return self._accumulated

    def append_transcription(self, text: str) -> str:
        """Space-join ``text`` onto the buffer and return the new contents."""

        with self._lock:
            if self._accumulated:
                self._accumulated += " "
            self._accumulated += text
            return self._accumulated

    def reset_transcription(self) -> None:
        with self._lock:
            self._accumulated = ""

    def elapsed_seconds(self) -> float:
        return max(0.0, time.monotonic() - self.started_monotonic)

    def owned_tasks(self) -> list[asyncio.Task]:
        return [
            task
            for task in (self.scheduler_task, self.stderr_task, self.exit_task)
            if task is not None
        ]

    def summary(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "source": self.source.value,
            "isActive": self.is_active,
            "startTime": self.start_time.isoformat(),
            "segmentCount": len(self.segments),
            "hasRecentTranscriptions": self.channel.pending() > 0,
        }


class RecordingStore:
    """Thread-safe table of live recordings keyed by session id."""

    def __init__(self) -> None:
        self._recordings: dict[str, Recording] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing start/stop of one session."""

        with self._lock:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = self._session_locks[session_id] = asyncio.Lock()
            return lock

    def get(self, session_id: str) -> Recording | None:
        with self._lock:
            return self._recordings.get(session_id)

    def put(self, recording: Recording) -> None:
        with self._lock:
            self._recordings[recording.session_id] = recording

    def remove(self, session_id: str, recording: Recording | None = None) -> Recording | None:
        """Drop the entry; with ``recording`` given, only if it is still current."""

        with self._lock:
            current = self._recordings.get(session_id)
            if current is None:
                return None
            if recording is not None and current is not recording:
                return None
            return self._recordings.pop(session_id)

    def is_current(self, recording: Recording) -> bool:
        with self._lock:
            return self._recordings.get(recording.session_id) is recording

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._recordings)

    def snapshot(self) -> list[Recording]:
        with self._lock:
            return list(self._recordings.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._recordings)

    def __iter__(self) -> Iterator[Recording]:
        return iter(self.snapshot())
