from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from pplx_gateway.upstream import iter_sse_events


@dataclass(slots=True)
class AnswerState:
    text: str = ""
    web_results: list[dict[str, str]] = field(default_factory=list)

    def consume(self, event: dict[str, Any]) -> str:
        """Fold one upstream event into the state and return the new text."""
        blocks = event.get("blocks")
        if not isinstance(blocks, list):
            return ""
        delta = ""
        for block in blocks:
            if not isinstance(block, dict):
                continue
            markdown = block.get("markdown_block")
            if isinstance(markdown, dict):
                delta += self._consume_markdown(markdown)
            web_block = block.get("web_result_block")
            if isinstance(web_block, dict):
                self._consume_web_results(web_block.get("web_results"))
        return delta

    def _consume_markdown(self, markdown: dict[str, Any]) -> str:
        answer = markdown.get("answer")
        if isinstance(answer, str):
            full_text = answer
        else:
            chunks = markdown.get("chunks")
            if not isinstance(chunks, list):
                return ""
            joined = "".join(chunk for chunk in chunks if isinstance(chunk, str))
            offset = markdown.get("chunk_starting_offset")
            if isinstance(offset, int) and 0 <= offset <= len(self.text):
                full_text = self.text[:offset] + joined
            else:
                full_text = joined

        if full_text.startswith(self.text):
            delta = full_text[len(self.text) :]
            self.text = full_text
            return delta
        # upstream rewrote earlier text; keep what was already sent
        return ""

    def _consume_web_results(self, results: Any) -> None:
        if not isinstance(results, list):
            return
        seen = {item["url"] for item in self.web_results}
        for item in results:
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not isinstance(url, str):
                continue
            url = url.strip()
            if not url or url in seen:
                continue
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                name = url
            seen.add(url)
            self.web_results.append({"url": url, "name": name.strip()})


def format_search_results(
    web_results: list[dict[str, str]],
    *,
    compatible: bool,
) -> str:
    if not web_results:
        return ""
    lines = [
        f"{index}. [{item['name']}]({item['url']})"
        for index, item in enumerate(web_results, start=1)
    ]
    if compatible:
        return "\n\nSources:\n" + "\n".join(lines)
    return (
        "\n\n<details>\n<summary>Search results</summary>\n\n"
        + "\n".join(lines)
        + "\n\n</details>"
    )


def chat_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> bytes:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }
    return f"data: {json.dumps(chunk, separators=(',', ':'))}\n\n".encode("utf-8")


async def stream_chat_completion(
    upstream: httpx.Response,
    *,
    model: str,
    completion_id: str,
    ignore_search_result: bool = False,
    search_result_compatible: bool = False,
) -> AsyncIterator[bytes]:
    created = int(time.time())
    state = AnswerState()
    try:
        yield chat_completion_chunk(completion_id, created, model, {"role": "assistant"})
        async for event in iter_sse_events(upstream):
            delta = state.consume(event)
            if delta:
                yield chat_completion_chunk(
                    completion_id, created, model, {"content": delta}
                )
        if not ignore_search_result:
            suffix = format_search_results(
                state.web_results, compatible=search_result_compatible
            )
            if suffix:
                yield chat_completion_chunk(
                    completion_id, created, model, {"content": suffix}
                )
        yield chat_completion_chunk(
            completion_id, created, model, {}, finish_reason="stop"
        )
        yield b"data: [DONE]\n\n"
    finally:
        await upstream.aclose()


async def collect_chat_completion(
    upstream: httpx.Response,
    *,
    model: str,
    completion_id: str,
    ignore_search_result: bool = False,
    search_result_compatible: bool = False,
) -> dict[str, Any]:
    state = AnswerState()
    try:
        async for event in iter_sse_events(upstream):
            state.consume(event)
    finally:
        await upstream.aclose()

    content = state.text
    if not ignore_search_result:
        content += format_search_results(
            state.web_results, compatible=search_result_compatible
        )
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }
