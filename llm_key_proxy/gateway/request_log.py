from __future__ import annotations

import json
import time
from collections import deque
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock, Thread
from typing import Any


class RequestLogBuffer:
    """Most recent request events, newest last."""

    def __init__(self, max_events: int = 200) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max(1, int(max_events)))
        self._lock = Lock()

    def append(self, event: dict[str, Any]) -> None:
        with self._lock:
            self._events.append(dict(event))

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._events)
        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        return events


class JsonlRequestLogger:
    """Appends request events to a JSONL file from a background writer thread.

    ``log`` never blocks the event loop. When the queue is full the event is
    dropped and counted; the next batch the writer flushes carries a
    ``request_log_dropped_records`` line with that count.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
        max_batch_size: int = 256,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self.max_batch_size = max(1, int(max_batch_size))
        self._pending: Queue[str | None] | None = None
        self._writer: Thread | None = None
        self._dropped = 0
        self._dropped_lock = Lock()
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._pending = Queue(maxsize=max_queue_size)
        self._writer = Thread(
            target=self._run_writer, name="request-log-writer", daemon=True
        )
        self._writer.start()

    def log(self, event: dict[str, Any]) -> None:
        pending = self._pending
        if pending is None:
            return
        try:
            pending.put_nowait(_encode({"ts": int(time.time()), **event}))
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def close(self) -> None:
        pending, writer = self._pending, self._writer
        if pending is None or writer is None:
            return
        self._pending = None
        pending.put(None)
        writer.join(timeout=2.0)

    def _run_writer(self) -> None:
        pending = self._pending
        if pending is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            stopping = False
            while not stopping:
                batch, stopping = self._next_batch(pending)
                batch.extend(self._dropped_notice())
                if batch:
                    handle.writelines(line + "\n" for line in batch)
                    handle.flush()

    def _next_batch(self, pending: Queue[str | None]) -> tuple[list[str], bool]:
        # Block for the first line, then take whatever else is already queued.
        batch: list[str] = []
        item = pending.get()
        while item is not None:
            batch.append(item)
            if len(batch) >= self.max_batch_size:
                return batch, False
            try:
                item = pending.get_nowait()
            except Empty:
                return batch, False
        return batch, True

    def _dropped_notice(self) -> list[str]:
        with self._dropped_lock:
            dropped, self._dropped = self._dropped, 0
        if not dropped:
            return []
        return [
            _encode(
                {
                    "ts": int(time.time()),
                    "event": "request_log_dropped_records",
                    "dropped_count": dropped,
                }
            )
        ]


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
