from __future__ import annotations

import logging
import math
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from pplx_gateway.audit import JsonlAuditLogger
from pplx_gateway.auth import Authenticator
from pplx_gateway.completions import collect_chat_completion, stream_chat_completion
from pplx_gateway.cooldown import CooldownTracker
from pplx_gateway.models import (
    UnknownModelError,
    build_models_response,
    resolve_model,
)
from pplx_gateway.orchestrator import (
    ExhaustionReason,
    RetryOrchestrator,
    SessionsExhaustedError,
)
from pplx_gateway.prompting import InvalidMessagesError, build_query
from pplx_gateway.session_store import SessionFileStore
from pplx_gateway.sessions import EmptySessionPoolError, SessionPool, SessionRecord
from pplx_gateway.settings import Settings, get_settings
from pplx_gateway.upstream import PerplexityClient, UpstreamOutcome

app = FastAPI(
    title="pplx-gateway",
    description="OpenAI-compatible chat completions over a rotating pool of upstream sessions.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def _error_response(
    status_code: int,
    error_type: str,
    message: str,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={"error": {"type": error_type, "message": message, **extra}},
    )


def load_session_identities(settings: Settings) -> list[str]:
    identities = list(settings.sessions_list)
    if settings.sessions_path:
        for identity in SessionFileStore(settings.sessions_path).load():
            if identity not in identities:
                identities.append(identity)
    return identities


def _exhausted_response(exc: SessionsExhaustedError, request_id: str) -> JSONResponse:
    headers = {"x-gateway-request-id": request_id}
    if exc.reason == ExhaustionReason.UPSTREAM_FAILED:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        error_type = "sessions_unavailable"
    else:
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
        error_type = "sessions_rate_limited"
        if exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_seconds)))
    return _error_response(
        status_code,
        error_type,
        str(exc),
        headers=headers,
        reason=exc.reason.value,
        retry_after_seconds=exc.retry_after_seconds,
        **exc.state.counters(),
    )


def _audit(event: str, **fields: Any) -> None:
    audit_hook: Callable[[dict[str, Any]], None] | None = getattr(
        app.state, "audit_event_hook", None
    )
    if audit_hook is None:
        return
    try:
        audit_hook({"event": event, **fields})
    except Exception as exc:
        logger.debug("audit_write_failed event=%s error=%s", event, exc)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    identities = load_session_identities(settings)
    if not identities:
        raise EmptySessionPoolError(
            "No sessions configured. Set SESSIONS or SESSIONS_PATH."
        )
    pool = SessionPool.from_identities(identities)
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )

    def audit_event_hook(event: dict[str, Any]) -> None:
        audit_logger.log(event)

    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.audit_logger = audit_logger
    app.state.audit_event_hook = audit_event_hook
    app.state.session_pool = pool
    app.state.upstream_client = PerplexityClient(
        base_url=settings.upstream_base_url,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        proxy=settings.upstream_proxy,
        is_incognito=settings.is_incognito,
    )
    app.state.orchestrator = RetryOrchestrator(
        pool=pool,
        cooldown_tracker=CooldownTracker(
            default_cooldown_seconds=settings.default_cooldown_seconds,
            audit_emitter=lambda event, fields: _audit(event, **fields),
        ),
        retry_budget=settings.retry_count,
        audit_hook=audit_event_hook,
    )
    logger.info(
        (
            "startup complete sessions=%d retry_budget=%d default_cooldown_seconds=%.1f "
            "auth_required=%s audit_log_enabled=%s audit_log_path=%s"
        ),
        pool.size,
        app.state.orchestrator.retry_budget,
        settings.default_cooldown_seconds,
        settings.auth_required,
        settings.audit_log_enabled,
        settings.audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    upstream_client: PerplexityClient | None = getattr(
        app.state, "upstream_client", None
    )
    if upstream_client is not None:
        await upstream_client.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return build_models_response()


@app.get("/v1/router/sessions")
async def router_sessions() -> dict[str, Any]:
    pool: SessionPool = app.state.session_pool
    orchestrator: RetryOrchestrator = app.state.orchestrator
    snapshot = pool.snapshot()
    snapshot["retry_budget"] = orchestrator.retry_budget
    return snapshot


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError as exc:
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            f"Expected JSON body: {exc}",
        )
    if not isinstance(payload, dict):
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            "Expected a JSON object request body.",
        )

    settings: Settings = app.state.settings
    try:
        route = resolve_model(payload.get("model"))
    except UnknownModelError as exc:
        return _error_response(status.HTTP_400_BAD_REQUEST, "model_not_found", str(exc))
    try:
        query = build_query(
            payload.get("messages"),
            no_role_prefix=settings.no_role_prefix,
            max_chat_history_length=settings.max_chat_history_length,
        )
    except InvalidMessagesError as exc:
        return _error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_request_error", str(exc)
        )

    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    is_stream = bool(payload.get("stream"))
    upstream_client: PerplexityClient = app.state.upstream_client
    orchestrator: RetryOrchestrator = app.state.orchestrator

    async def call_upstream(record: SessionRecord) -> UpstreamOutcome:
        return await upstream_client.ask(
            record.identity,
            query=query,
            route=route,
            request_id=request_id,
        )

    request_started = time.perf_counter()
    try:
        result = await orchestrator.execute(call_upstream, request_id=request_id)
    except SessionsExhaustedError as exc:
        return _exhausted_response(exc, request_id)

    response_headers = {
        "x-gateway-request-id": request_id,
        "x-gateway-session": result.record.label,
        "x-gateway-attempts": str(result.state.attempts),
    }
    completion_id = f"chatcmpl-{request_id}"
    _audit(
        "chat_completion_response",
        request_id=request_id,
        model=route.model,
        session=result.record.label,
        stream=is_stream,
        attempts=result.state.attempts,
        upstream_calls=result.state.upstream_calls,
        connect_latency_ms=round((time.perf_counter() - request_started) * 1000.0, 3),
    )
    if is_stream:
        return StreamingResponse(
            content=stream_chat_completion(
                result.response,
                model=route.model,
                completion_id=completion_id,
                ignore_search_result=settings.ignore_search_result,
                search_result_compatible=settings.search_result_compatible,
            ),
            headers=response_headers,
            media_type="text/event-stream",
        )

    body = await collect_chat_completion(
        result.response,
        model=route.model,
        completion_id=completion_id,
        ignore_search_result=settings.ignore_search_result,
        search_result_compatible=settings.search_result_compatible,
    )
    return JSONResponse(content=body, headers=response_headers)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("pplx_gateway.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
