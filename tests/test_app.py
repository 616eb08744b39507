from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from pplx_gateway.main import app, startup
from pplx_gateway.sessions import EmptySessionPoolError
from pplx_gateway.settings import get_settings
from tests.client_test_utils import (
    build_test_client,
    install_upstream,
    set_default_test_env,
    sse_body,
)

ANSWER_EVENT = json.dumps({"blocks": [{"markdown_block": {"answer": "Hello!"}}]})
CHAT_REQUEST = {
    "model": "claude-3.7-sonnet",
    "messages": [{"role": "user", "content": "Say hello."}],
}


def _cookie_token(request: httpx.Request) -> str:
    return request.headers["cookie"].partition("=")[2]


def test_health_and_models(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        assert client.get("/health").json() == {"status": "ok"}
        ids = [item["id"] for item in client.get("/v1/models").json()["data"]]
        assert "claude-3.7-sonnet" in ids


def test_startup_fails_without_sessions(monkeypatch: Any, tmp_path: Path) -> None:
    set_default_test_env(monkeypatch, tmp_path)
    monkeypatch.setenv("SESSIONS", "")
    get_settings.cache_clear()
    with pytest.raises(EmptySessionPoolError):
        asyncio.run(startup())


def test_sessions_file_extends_env_sessions(monkeypatch: Any, tmp_path: Path) -> None:
    sessions_path = tmp_path / "sessions.yaml"
    sessions_path.write_text(
        "sessions:\n  - session-token-1\n  - file-token-9\n", encoding="utf-8"
    )
    with build_test_client(
        monkeypatch, tmp_path, SESSIONS_PATH=str(sessions_path)
    ) as client:
        body = client.get("/v1/router/sessions").json()
        assert body["size"] == 4
        assert body["retry_budget"] == 4
        assert app.state.session_pool.identities()[-1] == "file-token-9"


def test_api_key_required_when_configured(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, API_KEYS="gateway-key") as client:
        assert client.get("/v1/models").status_code == 401
        wrong = client.get("/v1/models", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401
        ok = client.get("/v1/models", headers={"Authorization": "Bearer gateway-key"})
        assert ok.status_code == 200
        assert client.get("/health").status_code == 200


def test_chat_completion_rotates_past_rate_limited_session(
    monkeypatch: Any, tmp_path: Path
) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = _cookie_token(request)
        calls.append(token)
        if token == "session-token-0":
            return httpx.Response(429, headers={"Retry-After": "5"})
        return httpx.Response(200, content=sse_body(ANSWER_EVENT))

    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, handler)
        response = client.post(
            "/v1/chat/completions",
            json=CHAT_REQUEST,
            headers={"x-request-id": "req-b"},
        )
        sessions = client.get("/v1/router/sessions").json()["sessions"]

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "Hello!"
    assert response.headers["x-gateway-request-id"] == "req-b"
    assert response.headers["x-gateway-session"] == "session-..."
    assert response.headers["x-gateway-attempts"] == "2"
    assert calls == ["session-token-0", "session-token-1"]
    assert sessions[0]["rate_limited"] is True
    assert sessions[0]["cooldown_remaining_seconds"] == pytest.approx(5.0, abs=0.5)
    assert sessions[1]["rate_limited"] is False


def test_install_upstream_closes_startup_client(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        startup_client = app.state.upstream_client.client
        install_upstream(client, lambda request: httpx.Response(200))
        assert startup_client.is_closed
        assert app.state.upstream_client.client is not startup_client


def test_audit_failures_during_cooldown_do_not_break_rotation(
    monkeypatch: Any, tmp_path: Path
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if _cookie_token(request) == "session-token-0":
            return httpx.Response(429, headers={"Retry-After": "5"})
        return httpx.Response(200, content=sse_body(ANSWER_EVENT))

    def broken_hook(event: dict[str, Any]) -> None:
        raise RuntimeError("disk full")

    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, handler)
        monkeypatch.setattr(app.state, "audit_event_hook", broken_hook)
        response = client.post("/v1/chat/completions", json=CHAT_REQUEST)

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "Hello!"
    assert sessions[2]["rate_limited"] is False


def test_chat_completion_streams_chunks(monkeypatch: Any, tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_body(ANSWER_EVENT))

    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, handler)
        response = client.post(
            "/v1/chat/completions", json={**CHAT_REQUEST, "stream": True}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [line for line in response.text.split("\n\n") if line]
    assert frames[-1] == "data: [DONE]"
    contents = [
        json.loads(frame[len("data: ") :])["choices"][0]["delta"].get("content")
        for frame in frames[:-1]
    ]
    assert "Hello!" in contents


def test_all_sessions_cooling_down_returns_429(
    monkeypatch: Any, tmp_path: Path
) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(_cookie_token(request))
        return httpx.Response(200, content=sse_body(ANSWER_EVENT))

    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, handler)
        pool = app.state.session_pool
        for index in range(pool.size):
            pool.record_at(index).mark_rate_limited(30.0)
        pool.record_at(2).mark_rate_limited(2.2)
        response = client.post("/v1/chat/completions", json=CHAT_REQUEST)

    assert calls == []
    assert response.status_code == 429
    assert response.headers["retry-after"] == "3"
    error = response.json()["error"]
    assert error["type"] == "sessions_rate_limited"
    assert error["reason"] == "all_cooling_down"
    assert error["skipped_cooling_down"] == 3
    assert error["upstream_calls"] == 0


def test_upstream_failures_return_503(monkeypatch: Any, tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, content=b"boom")

    with build_test_client(monkeypatch, tmp_path) as client:
        install_upstream(client, handler)
        response = client.post("/v1/chat/completions", json=CHAT_REQUEST)
        sessions = client.get("/v1/router/sessions").json()

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["type"] == "sessions_unavailable"
    assert error["reason"] == "upstream_failed"
    assert error["upstream_failures"] == 3
    assert sessions["available"] == 3


@pytest.mark.parametrize(
    ("body", "expected_type"),
    [
        ({"model": "nope", "messages": [{"role": "user", "content": "hi"}]}, "model_not_found"),
        ({"model": "gpt-4o", "messages": []}, "invalid_request_error"),
        ([1, 2, 3], "invalid_request_error"),
    ],
)
def test_invalid_requests_return_400(
    monkeypatch: Any, tmp_path: Path, body: Any, expected_type: str
) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.post("/v1/chat/completions", json=body)
    assert response.status_code == 400
    assert response.json()["error"]["type"] == expected_type


def test_malformed_json_returns_400(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.post(
            "/v1/chat/completions",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
    assert response.status_code == 400


def test_settings_read_legacy_env_names(monkeypatch: Any) -> None:
    monkeypatch.setenv("SESSIONS", " a , b ,a,, c ")
    monkeypatch.setenv("APIKEY", "k1,k2")
    monkeypatch.setenv("RATE_LIMIT_COOLDOWN", "-3")
    monkeypatch.delenv("API_KEYS", raising=False)
    monkeypatch.delenv("RATE_LIMIT_COOLDOWN_SECONDS", raising=False)
    get_settings.cache_clear()
    settings = get_settings()
    get_settings.cache_clear()

    assert settings.sessions_list == ["a", "b", "c"]
    assert settings.api_keys_list == ["k1", "k2"]
    assert settings.auth_required is True
    assert settings.default_cooldown_seconds == 0.0
