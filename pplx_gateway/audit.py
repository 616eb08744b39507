from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

from pplx_gateway.sessions import abbreviate_identity

SECRET_FIELDS = {"identity", "session_key", "cookie", "authorization"}


def sanitize_event(event: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of `event` with raw credentials abbreviated."""
    sanitized: dict[str, Any] = {}
    for key, value in event.items():
        if key.lower() in SECRET_FIELDS and isinstance(value, str):
            sanitized[key] = abbreviate_identity(value)
        elif isinstance(value, dict):
            sanitized[key] = sanitize_event(value)
        else:
            sanitized[key] = value
    return sanitized


class JsonlAuditLogger:
    """Appends gateway events to a JSONL file from a background thread."""

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="gateway-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return

        record = {"ts": round(time.time(), 3), **sanitize_event(event)}
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    json.dumps(
                        {
                            "ts": round(time.time(), 3),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        },
                        ensure_ascii=True,
                        separators=(",", ":"),
                    )
                    + "\n"
                )
                handle.flush()
