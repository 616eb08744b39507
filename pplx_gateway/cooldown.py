from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from pplx_gateway.sessions import SessionRecord

RETRY_AFTER_HEADER = "retry-after"
DEFAULT_COOLDOWN_SECONDS = 60.0
# longer delay hints are not representable as a cooldown and fall back to the default
MAX_DELAY_DIGITS = 18

logger = logging.getLogger("uvicorn.error")


def _parse_delay_seconds(value: str) -> int | None:
    digits = value[1:] if value[:1] == "+" else value
    if not digits.isascii() or not digits.isdigit():
        return None
    if len(digits.lstrip("0")) > MAX_DELAY_DIGITS:
        return None
    return int(digits)


def _parse_http_date_seconds(value: str, now: float) -> float | None:
    try:
        retry_dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    return max(0.0, retry_dt.timestamp() - now)


def resolve_cooldown(
    headers: httpx.Headers | Mapping[str, str] | None,
    default_cooldown: float,
    *,
    now: float | None = None,
) -> float:
    """Return the cooldown in seconds hinted by a 429 response.

    `Retry-After` is read first as a non-negative integer count of seconds,
    then as an HTTP-date. An absent, empty or unparseable header yields
    `default_cooldown`, as does a delay too long to represent.
    """
    if not headers:
        return default_cooldown
    raw = httpx.Headers(headers).get(RETRY_AFTER_HEADER)
    if raw is None:
        return default_cooldown
    value = raw.strip()
    if not value:
        return default_cooldown

    seconds = _parse_delay_seconds(value)
    if seconds is not None:
        return float(seconds)

    delta = _parse_http_date_seconds(value, time.time() if now is None else now)
    if delta is not None:
        return delta
    return default_cooldown


class CooldownTracker:
    def __init__(
        self,
        *,
        default_cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        audit_emitter: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        self.default_cooldown_seconds = max(0.0, float(default_cooldown_seconds))
        self._audit_emitter = audit_emitter

    def apply(
        self,
        record: SessionRecord,
        headers: httpx.Headers | Mapping[str, str] | None,
        *,
        request_id: str | None = None,
        status_code: int | None = None,
    ) -> float:
        cooldown_seconds = resolve_cooldown(headers, self.default_cooldown_seconds)
        until = record.mark_rate_limited(cooldown_seconds)
        logger.info(
            (
                "session_cooldown_applied request_id=%s session=%s "
                "cooldown_seconds=%.1f until_epoch=%.3f"
            ),
            request_id,
            record.label,
            cooldown_seconds,
            until,
        )
        fields: dict[str, Any] = {
            "session": record.label,
            "cooldown_seconds": cooldown_seconds,
            "until_epoch": round(until, 3),
        }
        if request_id:
            fields["request_id"] = request_id
        if status_code is not None:
            fields["status"] = status_code
        self._emit("session_cooldown_applied", fields)
        return cooldown_seconds

    def _emit(self, event: str, fields: dict[str, Any]) -> None:
        if self._audit_emitter is None:
            return
        try:
            self._audit_emitter(event, fields)
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)
