from __future__ import annotations

from typing import Any

ROLE_PREFIXES = {
    "system": "System",
    "developer": "System",
    "user": "Human",
    "assistant": "Assistant",
    "tool": "Tool",
}


class InvalidMessagesError(ValueError):
    """Raised when a chat request carries no usable messages."""


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return str(value)


def extract_text_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return _coerce_text(content)
    parts: list[str] = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
            continue
        if not isinstance(part, dict):
            continue
        # image parts need an upload the gateway does not perform
        if part.get("type") in {"text", "input_text"}:
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "\n".join(parts)


def normalize_messages(messages: Any) -> list[dict[str, str]]:
    if not isinstance(messages, list) or not messages:
        raise InvalidMessagesError("'messages' must be a non-empty list.")
    normalized: list[dict[str, str]] = []
    for item in messages:
        if not isinstance(item, dict):
            continue
        role = _coerce_text(item.get("role")).strip().lower() or "user"
        text = extract_text_content(item.get("content")).strip()
        if not text:
            continue
        normalized.append({"role": role, "content": text})
    if not normalized:
        raise InvalidMessagesError("'messages' contains no text content.")
    return normalized


def render_prompt(messages: list[dict[str, str]], *, no_role_prefix: bool = False) -> str:
    blocks: list[str] = []
    for message in messages:
        if no_role_prefix:
            blocks.append(message["content"])
            continue
        prefix = ROLE_PREFIXES.get(message["role"], message["role"].title())
        blocks.append(f"{prefix}: {message['content']}")
    return "\n\n".join(blocks)


def fit_history(
    messages: list[dict[str, str]],
    *,
    max_length: int,
    no_role_prefix: bool = False,
) -> list[dict[str, str]]:
    """Drop the oldest non-system messages until the prompt fits `max_length`.

    The final message is always kept. A `max_length` of zero or less disables
    trimming.
    """
    if max_length <= 0:
        return list(messages)
    kept = list(messages)
    while len(render_prompt(kept, no_role_prefix=no_role_prefix)) > max_length:
        droppable = [
            index
            for index, message in enumerate(kept[:-1])
            if message["role"] not in {"system", "developer"}
        ]
        if not droppable:
            break
        kept.pop(droppable[0])
    return kept


def build_query(
    messages: Any,
    *,
    no_role_prefix: bool = False,
    max_chat_history_length: int = 0,
) -> str:
    normalized = normalize_messages(messages)
    fitted = fit_history(
        normalized,
        max_length=max_chat_history_length,
        no_role_prefix=no_role_prefix,
    )
    return render_prompt(fitted, no_role_prefix=no_role_prefix)
