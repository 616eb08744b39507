from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import httpx

from pplx_gateway.models import ModelRoute
from pplx_gateway.sessions import abbreviate_identity

ASK_PATH = "/rest/sse/perplexity_ask"
SESSION_COOKIE_NAME = "__Secure-next-auth.session-token"
API_VERSION = "2.18"
ERROR_EXCERPT_CHARS = 300

DEFAULT_HEADERS = {
    "accept": "text/event-stream",
    "accept-language": "en-US,en;q=0.9",
    "content-type": "application/json",
    "user-agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
}

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class UpstreamSuccess:
    response: httpx.Response


@dataclass(slots=True)
class UpstreamRateLimited:
    headers: httpx.Headers
    status_code: int = 429


@dataclass(slots=True)
class UpstreamFailure:
    error: str
    error_type: str
    status_code: int | None = None
    is_timeout: bool = False


UpstreamOutcome = UpstreamSuccess | UpstreamRateLimited | UpstreamFailure


def _request_error_failure(exc: httpx.RequestError) -> UpstreamFailure:
    error_message = str(exc).strip() or repr(exc)
    return UpstreamFailure(
        error=error_message,
        error_type=exc.__class__.__name__ or "RequestError",
        is_timeout=isinstance(exc, httpx.TimeoutException),
    )


def build_ask_payload(
    *,
    query: str,
    route: ModelRoute,
    is_incognito: bool,
) -> dict[str, Any]:
    frontend_uuid = str(uuid4())
    return {
        "params": {
            "attachments": [],
            "language": "en-US",
            "timezone": "UTC",
            "search_focus": "internet" if route.search else "writing",
            "sources": ["web"] if route.search else [],
            "search_recency_filter": None,
            "frontend_uuid": frontend_uuid,
            "frontend_context_uuid": str(uuid4()),
            "mode": route.mode,
            "model_preference": route.model_preference,
            "is_related_query": False,
            "is_sponsored": False,
            "is_incognito": is_incognito,
            "prompt_source": "user",
            "query_source": "home",
            "local_search_enabled": False,
            "use_schematized_api": True,
            "send_back_text_in_streaming_api": False,
            "version": API_VERSION,
        },
        "query_str": query,
    }


class PerplexityClient:
    def __init__(
        self,
        *,
        base_url: str,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 120.0,
        proxy: str | None = None,
        is_incognito: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.is_incognito = is_incognito
        connect_timeout = max(0.1, float(connect_timeout_seconds))
        read_timeout = max(0.1, float(read_timeout_seconds))
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=read_timeout,
                write=read_timeout,
                pool=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            proxy=proxy or None,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _headers(self, identity: str) -> dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        headers["cookie"] = f"{SESSION_COOKIE_NAME}={identity}"
        headers["origin"] = self.base_url
        headers["referer"] = f"{self.base_url}/"
        return headers

    async def ask(
        self,
        identity: str,
        *,
        query: str,
        route: ModelRoute,
        request_id: str | None = None,
    ) -> UpstreamOutcome:
        """Send one query on behalf of `identity` and classify the response.

        A successful response is returned still open so the caller can stream
        it; every other response is closed here.
        """
        started = time.perf_counter()
        try:
            request = self.client.build_request(
                method="POST",
                url=f"{self.base_url}{ASK_PATH}",
                json=build_ask_payload(
                    query=query,
                    route=route,
                    is_incognito=self.is_incognito,
                ),
                headers=self._headers(identity),
            )
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            return _request_error_failure(exc)

        logger.info(
            "upstream_connected request_id=%s session=%s connect_ms=%.2f status=%d",
            request_id,
            abbreviate_identity(identity),
            (time.perf_counter() - started) * 1000.0,
            upstream.status_code,
        )
        if upstream.status_code == httpx.codes.OK:
            return UpstreamSuccess(response=upstream)
        if upstream.status_code == httpx.codes.TOO_MANY_REQUESTS:
            await upstream.aclose()
            return UpstreamRateLimited(
                headers=upstream.headers,
                status_code=upstream.status_code,
            )

        try:
            body = await upstream.aread()
        except httpx.RequestError as exc:
            body = b""
            logger.debug(
                "upstream_error_body_unreadable request_id=%s error=%s",
                request_id,
                exc,
            )
        finally:
            await upstream.aclose()
        excerpt = body.decode("utf-8", errors="replace").strip()[:ERROR_EXCERPT_CHARS]
        return UpstreamFailure(
            error=excerpt or upstream.reason_phrase or "upstream error",
            error_type="upstream_status",
            status_code=upstream.status_code,
        )


async def iter_sse_events(upstream: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    try:
        async for line in upstream.aiter_lines():
            if not line or not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if not payload or payload == "[DONE]":
                continue
            try:
                parsed = json.loads(payload)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                yield parsed
    except httpx.RequestError as exc:
        upstream_url = "<unknown>"
        try:
            upstream_url = str(upstream.request.url)
        except RuntimeError:
            pass
        logger.warning(
            "upstream_stream_error url=%s error=%s",
            upstream_url,
            exc,
        )
