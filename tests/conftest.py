"""Shared fixtures: settings, SSE builders and a scripted model backend."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
import pytest_asyncio

from quill.api.client import ModelClient
from quill.api.engine import ConversationEngine
from quill.api.tools import ToolRegistry
from quill.config import Settings
from quill.permissions.engine import PermissionEngine
from quill.permissions.schemas import ToolPermissionContext

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings with zero backoff so retry paths run instantly."""
    values: dict[str, Any] = {
        "anthropic_api_key": "sk-ant-test-key",
        "anthropic_auth_token": "",
        "api_base_url": "https://api.test",
        "session_id": "sess-1",
        "network_backoff_base": 0.0,
        "tool_retry_base_delay": 0.0,
        "tool_retry_jitter": 0.0,
        "tool_timeout": 5.0,
        "permission_mode": "allow",
        "permission_ask_timeout": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# SSE builders
# ---------------------------------------------------------------------------


def sse(payload: dict[str, Any]) -> str:
    return f"event: {payload.get('type', 'message')}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def sse_body(events: list[dict[str, Any]]) -> bytes:
    return "".join(sse(e) for e in events).encode()


def message_start(input_tokens: int = 10) -> dict[str, Any]:
    return {
        "type": "message_start",
        "message": {
            "id": "msg_1",
            "role": "assistant",
            "usage": {"input_tokens": input_tokens, "output_tokens": 1},
        },
    }


def message_end(stop_reason: str = "end_turn", output_tokens: int = 5) -> list[dict[str, Any]]:
    return [
        {
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason},
            "usage": {"output_tokens": output_tokens},
        },
        {"type": "message_stop"},
    ]


def text_block(index: int, text: str) -> list[dict[str, Any]]:
    return [
        {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop", "index": index},
    ]


def tool_block(index: int, tool_id: str, name: str, tool_input: dict[str, Any]) -> list[dict[str, Any]]:
    raw = json.dumps(tool_input)
    middle = len(raw) // 2
    return [
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
        },
        {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": raw[:middle]}},
        {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": raw[middle:]}},
        {"type": "content_block_stop", "index": index},
    ]


def text_reply(text: str, input_tokens: int = 10, output_tokens: int = 5) -> list[dict[str, Any]]:
    return [message_start(input_tokens), *text_block(0, text), *message_end("end_turn", output_tokens)]


def tool_reply(
    calls: list[tuple[str, str, dict[str, Any]]],
    text: str = "",
) -> list[dict[str, Any]]:
    events = [message_start()]
    index = 0
    if text:
        events += text_block(0, text)
        index = 1
    for offset, (tool_id, name, tool_input) in enumerate(calls):
        events += tool_block(index + offset, tool_id, name, tool_input)
    return events + message_end("tool_use")


# ---------------------------------------------------------------------------
# Scripted backend
# ---------------------------------------------------------------------------


class HangingStream(httpx.AsyncByteStream):
    """Yields its chunks, then stalls forever like a stuck connection."""

    def __init__(self, *chunks: bytes) -> None:
        self._chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        await asyncio.Event().wait()


class ScriptedBackend:
    """httpx handler that replays one scripted response per request.

    Each script entry is a list of SSE payload dicts (sent as a 200
    stream), an httpx.Response, or an exception instance to raise.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.requests: list[dict[str, Any]] = []
        self.headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(request.headers)
        if not self.script:
            raise AssertionError("Unexpected model request")
        entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, httpx.Response):
            return entry
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body(entry),
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_engine(
    backend: ScriptedBackend,
    settings: Settings | None = None,
    registry: ToolRegistry | None = None,
    mode: str = "allow",
    **kwargs: Any,
) -> ConversationEngine:
    settings = settings or make_settings()
    return ConversationEngine(
        settings,
        client=ModelClient(settings, transport=backend.transport),
        registry=registry or ToolRegistry(),
        permissions=PermissionEngine(ToolPermissionContext(mode=mode)),
        **kwargs,
    )


@pytest_asyncio.fixture
async def client_factory():
    """Build started ModelClients over a scripted backend; closes them afterwards."""
    clients: list[ModelClient] = []

    async def _factory(backend: ScriptedBackend, **overrides: Any) -> ModelClient:
        client = ModelClient(make_settings(**overrides), transport=backend.transport)
        await client.start()
        clients.append(client)
        return client

    yield _factory
    for client in clients:
        await client.close()
