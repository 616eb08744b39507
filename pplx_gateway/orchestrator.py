from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from pplx_gateway.cooldown import CooldownTracker
from pplx_gateway.sessions import SessionIndexError, SessionPool, SessionRecord
from pplx_gateway.upstream import (
    UpstreamFailure,
    UpstreamOutcome,
    UpstreamRateLimited,
    UpstreamSuccess,
)

logger = logging.getLogger("uvicorn.error")

UpstreamCall = Callable[[SessionRecord], Awaitable[UpstreamOutcome]]


class ExhaustionReason(str, Enum):
    ALL_COOLING_DOWN = "all_cooling_down"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_FAILED = "upstream_failed"


@dataclass(slots=True)
class RetryAttemptState:
    request_id: str
    start_index: int
    retry_budget: int
    attempts: int = 0
    upstream_calls: int = 0
    skipped_cooling_down: int = 0
    rate_limited: int = 0
    upstream_failures: int = 0
    lookup_errors: int = 0
    attempted_sessions: list[str] = field(default_factory=list)
    failure_reasons: list[str] = field(default_factory=list)

    @property
    def exhaustion_reason(self) -> ExhaustionReason:
        if self.upstream_failures or self.lookup_errors:
            return ExhaustionReason.UPSTREAM_FAILED
        if self.upstream_calls == 0:
            return ExhaustionReason.ALL_COOLING_DOWN
        return ExhaustionReason.RATE_LIMITED

    def counters(self) -> dict[str, Any]:
        return {
            "retry_budget": self.retry_budget,
            "attempts": self.attempts,
            "upstream_calls": self.upstream_calls,
            "skipped_cooling_down": self.skipped_cooling_down,
            "rate_limited": self.rate_limited,
            "upstream_failures": self.upstream_failures,
            "lookup_errors": self.lookup_errors,
        }


class SessionsExhaustedError(RuntimeError):
    def __init__(
        self,
        state: RetryAttemptState,
        *,
        retry_after_seconds: float | None = None,
    ) -> None:
        self.state = state
        self.reason = state.exhaustion_reason
        self.retry_after_seconds = retry_after_seconds
        if self.reason == ExhaustionReason.ALL_COOLING_DOWN:
            message = "All sessions are cooling down."
        elif self.reason == ExhaustionReason.RATE_LIMITED:
            message = "All sessions are rate limited."
        else:
            message = "All sessions failed."
        super().__init__(message)

    @property
    def all_sessions_cooling_down(self) -> bool:
        return self.reason == ExhaustionReason.ALL_COOLING_DOWN


@dataclass(slots=True)
class SessionCallResult:
    record: SessionRecord
    response: httpx.Response
    state: RetryAttemptState


class RetryOrchestrator:
    def __init__(
        self,
        *,
        pool: SessionPool,
        cooldown_tracker: CooldownTracker,
        retry_budget: int | None = None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.pool = pool
        self.cooldown_tracker = cooldown_tracker
        self.retry_budget = self._effective_retry_budget(retry_budget, pool.size)
        self._audit_hook = audit_hook

    @staticmethod
    def _effective_retry_budget(retry_budget: int | None, pool_size: int) -> int:
        if retry_budget is None:
            return pool_size
        # one attempt per session per request
        return max(1, min(int(retry_budget), pool_size))

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def execute(
        self,
        call: UpstreamCall,
        *,
        request_id: str = "-",
    ) -> SessionCallResult:
        """Run `call` against sessions in rotation order until one succeeds.

        Raises `SessionsExhaustedError` once the retry budget is spent.
        """
        state = RetryAttemptState(
            request_id=request_id,
            start_index=self.pool.next_start_index(),
            retry_budget=self.retry_budget,
        )
        for attempt in range(state.retry_budget):
            state.attempts = attempt + 1
            index = (state.start_index + attempt) % self.pool.size
            record = self._lookup(index, state)
            if record is None:
                continue
            if self._skip_cooling_down(record, index, state):
                continue

            self._record_attempt(record, index, state)
            outcome = await call(record)
            if isinstance(outcome, UpstreamSuccess):
                return SessionCallResult(
                    record=record,
                    response=outcome.response,
                    state=state,
                )
            if isinstance(outcome, UpstreamRateLimited):
                self._handle_rate_limited(record, outcome, state)
                continue
            self._handle_failure(record, outcome, state)

        raise self._exhausted(state)

    def _lookup(self, index: int, state: RetryAttemptState) -> SessionRecord | None:
        try:
            return self.pool.record_at(index)
        except SessionIndexError as exc:
            state.lookup_errors += 1
            state.failure_reasons.append(f"lookup:{index}")
            logger.error(
                "session_lookup_failed request_id=%s index=%d error=%s",
                state.request_id,
                index,
                exc,
            )
            return None

    def _skip_cooling_down(
        self,
        record: SessionRecord,
        index: int,
        state: RetryAttemptState,
    ) -> bool:
        available, remaining = record.cooldown_status()
        if available:
            return False

        state.skipped_cooling_down += 1
        state.failure_reasons.append(f"cooldown:{record.label}")
        logger.info(
            "session_skipped_cooldown request_id=%s session=%s index=%d remaining_seconds=%.1f",
            state.request_id,
            record.label,
            index,
            remaining,
        )
        self._audit(
            "session_skipped_cooldown",
            request_id=state.request_id,
            session=record.label,
            index=index,
            remaining_seconds=round(remaining, 3),
        )
        return True

    def _record_attempt(
        self,
        record: SessionRecord,
        index: int,
        state: RetryAttemptState,
    ) -> None:
        state.upstream_calls += 1
        state.attempted_sessions.append(record.label)
        logger.info(
            "session_attempt request_id=%s attempt=%d/%d session=%s index=%d",
            state.request_id,
            state.attempts,
            state.retry_budget,
            record.label,
            index,
        )
        self._audit(
            "session_attempt",
            request_id=state.request_id,
            attempt=state.attempts,
            retry_budget=state.retry_budget,
            session=record.label,
            index=index,
        )

    def _handle_rate_limited(
        self,
        record: SessionRecord,
        outcome: UpstreamRateLimited,
        state: RetryAttemptState,
    ) -> None:
        state.rate_limited += 1
        state.failure_reasons.append(f"rate_limited:{record.label}")
        self.cooldown_tracker.apply(
            record,
            outcome.headers,
            request_id=state.request_id,
            status_code=outcome.status_code,
        )

    def _handle_failure(
        self,
        record: SessionRecord,
        outcome: UpstreamFailure,
        state: RetryAttemptState,
    ) -> None:
        state.upstream_failures += 1
        state.failure_reasons.append(
            f"{outcome.error_type}:{record.label}:{outcome.status_code or '-'}"
        )
        logger.warning(
            (
                "session_upstream_failure request_id=%s session=%s "
                "error_type=%s status_code=%s error=%s"
            ),
            state.request_id,
            record.label,
            outcome.error_type,
            outcome.status_code,
            outcome.error,
        )
        self._audit(
            "session_upstream_failure",
            request_id=state.request_id,
            session=record.label,
            error_type=outcome.error_type,
            status_code=outcome.status_code,
            is_timeout=outcome.is_timeout,
            error=outcome.error,
        )

    def _exhausted(self, state: RetryAttemptState) -> SessionsExhaustedError:
        error = SessionsExhaustedError(
            state,
            retry_after_seconds=self.pool.min_cooldown_remaining(),
        )
        logger.error(
            (
                "sessions_exhausted request_id=%s reason=%s attempted_sessions=%s "
                "skipped_cooling_down=%d rate_limited=%d upstream_failures=%d"
            ),
            state.request_id,
            error.reason.value,
            ",".join(state.attempted_sessions),
            state.skipped_cooling_down,
            state.rate_limited,
            state.upstream_failures,
        )
        self._audit(
            "sessions_exhausted",
            request_id=state.request_id,
            reason=error.reason.value,
            attempted_sessions=state.attempted_sessions,
            failure_reasons=state.failure_reasons,
            retry_after_seconds=error.retry_after_seconds,
            **state.counters(),
        )
        return error
