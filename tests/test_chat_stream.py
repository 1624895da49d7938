from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from patchstream.models.chat_stream import (
    ChatDelta,
    OpenAIChatStreamClient,
    SseDecoder,
    StreamFrame,
    decode_frame,
)
from patchstream.models.llm_client import ChatRequest, LLMTransportError

API_URL = "http://localhost:1234/v1/chat/completions"


def _sse(*payloads: str) -> bytes:
    return "".join(f"data: {payload}\n\n" for payload in payloads).encode("utf-8")


def _delta(**fields: Any) -> str:
    return json.dumps({"choices": [{"delta": fields}]})


def _collect(client: OpenAIChatStreamClient, request: ChatRequest) -> List[StreamFrame]:
    async def _run() -> List[StreamFrame]:
        return [frame async for frame in client.stream_chat(request)]

    return asyncio.run(_run())


def _request() -> ChatRequest:
    return ChatRequest(messages=[{"role": "user", "content": "hi"}])


def test_streams_sse_deltas_until_done() -> None:
    captured: Dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                _delta(content="Hel"),
                _delta(reasoning_content="hmm"),
                _delta(content="lo"),
                "[DONE]",
                _delta(content="ignored"),
            ),
        )

    client = OpenAIChatStreamClient(api_url=API_URL, model="m", transport=httpx.MockTransport(handler))

    frames = _collect(client, _request())

    assert captured["body"] == {"model": "m", "messages": [{"role": "user", "content": "hi"}], "stream": True}
    assert frames[-1].done
    assert "".join(frame.delta.content or "" for frame in frames if frame.delta) == "Hello"
    assert [frame.delta.reasoning_content for frame in frames if frame.delta][1] == "hmm"
    assert all(frame.wire_line.startswith("data:") for frame in frames)


def test_json_body_becomes_single_frame() -> None:
    body = {"choices": [{"message": {"content": "full reply", "reasoning_content": "why"}}]}
    client = OpenAIChatStreamClient(
        api_url=API_URL,
        model="m",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
    )

    frames = _collect(client, _request())

    assert len(frames) == 1
    assert frames[0].done
    assert frames[0].delta is not None
    assert frames[0].delta.content == "full reply"
    assert frames[0].delta.reasoning_content == "why"


def test_http_error_status_raises_transport_error() -> None:
    client = OpenAIChatStreamClient(
        api_url=API_URL,
        model="m",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="overloaded")),
    )

    with pytest.raises(LLMTransportError) as error:
        _collect(client, _request())

    assert str(error.value) == "API Error: 500 Internal Server Error"
    assert error.value.details["status"] == 500
    assert error.value.details["body"] == "overloaded"


def test_connection_failure_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = OpenAIChatStreamClient(api_url=API_URL, model="m", transport=httpx.MockTransport(handler))

    with pytest.raises(LLMTransportError, match="Failed to reach chat endpoint"):
        _collect(client, _request())


def test_timeout_environment_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATCHSTREAM_TIMEOUT", "7")

    assert OpenAIChatStreamClient(api_url=API_URL, model="m", timeout=60).timeout == 7.0

    monkeypatch.setenv("PATCHSTREAM_TIMEOUT", "soon")

    assert OpenAIChatStreamClient(api_url=API_URL, model="m", timeout=60).timeout == 60


def test_sse_decoder_buffers_partial_events() -> None:
    decoder = SseDecoder()

    assert decoder.feed('data: {"a"') == []
    assert decoder.feed(":1}\r\n\r\n: keep-alive\n\ndata: tail") == ['data: {"a":1}']
    assert decoder.flush() == ["data: tail"]
    assert decoder.flush() == []


def test_decode_frame_shapes() -> None:
    assert decode_frame("not json") is None
    assert decode_frame("[1, 2]") is None
    message = decode_frame(json.dumps({"choices": [{"message": {"content": "x"}}]}))
    assert message is not None and message.content == "x"


def test_tool_text_prefers_tool_calls() -> None:
    delta = ChatDelta.model_validate(
        {"tool_calls": [{"function": {"arguments": "ab"}}, {"arguments": "cd"}], "function_call": {"arguments": "zz"}}
    )
    legacy = ChatDelta.model_validate({"function_call": {"name": "edit", "arguments": "zz"}})

    assert delta.tool_text() == "abcd"
    assert legacy.tool_text() == "zz"
    assert ChatDelta().tool_text() == ""


def test_request_payload_only_sends_set_knobs() -> None:
    request = ChatRequest(messages=[{"role": "user", "content": "hi"}], temperature=0.2, top_k=40)

    payload = request.to_payload("default-model")

    assert payload["model"] == "default-model"
    assert payload["temperature"] == 0.2
    assert payload["top_k"] == 40
    assert "top_p" not in payload
