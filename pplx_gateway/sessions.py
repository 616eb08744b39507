from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from threading import Lock
from typing import Any

Clock = Callable[[], float]


class SessionPoolError(RuntimeError):
    """Base class for session pool failures."""


class EmptySessionPoolError(SessionPoolError, ValueError):
    """Raised when a pool is built without any session identities."""


class SessionIndexError(SessionPoolError, IndexError):
    """Raised when a lookup falls outside the pool."""


def abbreviate_identity(identity: str, keep: int = 8) -> str:
    if len(identity) <= keep:
        return identity
    return f"{identity[:keep]}..."


class SessionRecord:
    """Rate-limit state for one upstream account session.

    `rate_limited` and `cooldown_until` are only ever read or written together
    under the record lock. `cooldown_until` is meaningless while the record is
    not rate limited.
    """

    __slots__ = ("identity", "_clock", "_lock", "_rate_limited", "_cooldown_until")

    def __init__(self, identity: str, *, clock: Clock = time.time) -> None:
        self.identity = identity
        self._clock = clock
        self._lock = Lock()
        self._rate_limited = False
        self._cooldown_until = 0.0

    @property
    def label(self) -> str:
        return abbreviate_identity(self.identity)

    def mark_rate_limited(self, cooldown_seconds: float) -> float:
        """Start a cooldown of `cooldown_seconds`, replacing any earlier one.

        Returns the resulting expiry as an epoch timestamp.
        """
        with self._lock:
            until = self._clock() + max(0.0, float(cooldown_seconds))
            self._rate_limited = True
            self._cooldown_until = until
            return until

    def check_available(self) -> bool:
        available, _ = self.cooldown_status()
        return available

    def cooldown_status(self) -> tuple[bool, float]:
        """Return `(available, remaining_seconds)` read under one lock.

        An expired cooldown is cleared here, so `remaining_seconds` is always
        positive when the record is unavailable.
        """
        with self._lock:
            if not self._rate_limited:
                return True, 0.0
            remaining = self._cooldown_until - self._clock()
            if remaining <= 0:
                self._rate_limited = False
                return True, 0.0
            return False, remaining

    def cooldown_remaining(self) -> float:
        with self._lock:
            if not self._rate_limited:
                return 0.0
            return max(0.0, self._cooldown_until - self._clock())

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            rate_limited = self._rate_limited
            until = self._cooldown_until
            now = self._clock()
        remaining = max(0.0, until - now) if rate_limited else 0.0
        return {
            "session": self.label,
            "rate_limited": rate_limited and remaining > 0,
            "cooldown_remaining_seconds": round(remaining, 3),
            "cooldown_until_epoch": round(until, 3) if rate_limited else None,
        }

    def __repr__(self) -> str:
        return f"SessionRecord(identity={self.label!r})"


class SessionPool:
    """Fixed, ordered set of session records plus a shared rotation cursor."""

    def __init__(self, records: list[SessionRecord]) -> None:
        if not records:
            raise EmptySessionPoolError("Session pool requires at least one session.")
        self._records = list(records)
        self._cursor = 0
        self._cursor_lock = Lock()

    @classmethod
    def from_identities(
        cls,
        identities: Iterable[str],
        *,
        clock: Clock = time.time,
    ) -> SessionPool:
        return cls([SessionRecord(identity, clock=clock) for identity in identities])

    @property
    def size(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def cursor(self) -> int:
        with self._cursor_lock:
            return self._cursor

    def next_start_index(self) -> int:
        with self._cursor_lock:
            current = self._cursor
            self._cursor = (current + 1) % len(self._records)
            return current

    def record_at(self, index: int) -> SessionRecord:
        size = len(self._records)
        if size == 0:
            raise SessionIndexError("Session pool is empty.")
        if index < 0 or index >= size:
            raise SessionIndexError(
                f"Session index {index} out of range for pool of size {size}."
            )
        return self._records[index]

    def identities(self) -> list[str]:
        return [record.identity for record in self._records]

    def min_cooldown_remaining(self) -> float | None:
        remaining = [
            value
            for value in (record.cooldown_remaining() for record in self._records)
            if value > 0
        ]
        if not remaining:
            return None
        return min(remaining)

    def snapshot(self) -> dict[str, Any]:
        sessions = []
        for index, record in enumerate(self._records):
            item = record.snapshot()
            item["index"] = index
            sessions.append(item)
        return {
            "size": len(self._records),
            "cursor": self.cursor,
            "available": sum(1 for item in sessions if not item["rate_limited"]),
            "sessions": sessions,
        }
