from __future__ import annotations

import pytest

from pplx_gateway.prompting import (
    InvalidMessagesError,
    build_query,
    extract_text_content,
    fit_history,
    normalize_messages,
    render_prompt,
)


def test_render_prompt_with_role_prefixes() -> None:
    messages = normalize_messages(
        [
            {"role": "system", "content": "Be concise."},
            {"role": "user", "content": "Say hello."},
            {"role": "assistant", "content": "Hello."},
        ]
    )
    assert render_prompt(messages) == (
        "System: Be concise.\n\nHuman: Say hello.\n\nAssistant: Hello."
    )


def test_render_prompt_without_role_prefixes() -> None:
    messages = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]
    assert render_prompt(messages, no_role_prefix=True) == "a\n\nb"


def test_extract_text_content_keeps_text_parts_only() -> None:
    content = [
        {"type": "text", "text": "look at"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        {"type": "text", "text": "this"},
    ]
    assert extract_text_content(content) == "look at\nthis"


def test_normalize_messages_rejects_empty_input() -> None:
    with pytest.raises(InvalidMessagesError):
        normalize_messages([])
    with pytest.raises(InvalidMessagesError):
        normalize_messages("hello")
    with pytest.raises(InvalidMessagesError):
        normalize_messages([{"role": "user", "content": "   "}])


def test_fit_history_drops_oldest_non_system_messages() -> None:
    messages = [
        {"role": "system", "content": "rules"},
        {"role": "user", "content": "x" * 50},
        {"role": "assistant", "content": "y" * 50},
        {"role": "user", "content": "latest"},
    ]
    fitted = fit_history(messages, max_length=40)
    assert fitted == [
        {"role": "system", "content": "rules"},
        {"role": "user", "content": "latest"},
    ]


def test_fit_history_keeps_last_message_even_when_too_long() -> None:
    messages = [{"role": "user", "content": "z" * 100}]
    assert fit_history(messages, max_length=10) == messages


def test_build_query_without_limit_keeps_everything() -> None:
    query = build_query(
        [{"role": "user", "content": "one"}, {"role": "user", "content": "two"}],
    )
    assert query == "Human: one\n\nHuman: two"
