"""Streaming client for OpenAI-compatible chat-completion servers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .llm_client import ChatClient, ChatRequest, LLMResponseFormatError, LLMTransportError

__all__ = [
    "ChatDelta",
    "OpenAIChatStreamClient",
    "SseDecoder",
    "StreamFrame",
    "ToolCallDelta",
    "decode_frame",
]

LOGGER = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class ToolFunctionDelta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallDelta(BaseModel):
    """One entry of ``delta.tool_calls``; some servers put ``arguments`` at the top level."""

    model_config = ConfigDict(extra="ignore")

    function: Optional[ToolFunctionDelta] = None
    arguments: Optional[str] = None

    def argument_text(self) -> str:
        if self.function is not None and isinstance(self.function.arguments, str):
            return self.function.arguments
        return self.arguments or ""


class ChatDelta(BaseModel):
    """The ``choices[0].delta`` object of a streamed chat-completion frame."""

    model_config = ConfigDict(extra="ignore")

    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    reasoning: Optional[str] = None
    tool_calls: Optional[list[ToolCallDelta]] = None
    function_call: Optional[ToolFunctionDelta] = None

    def tool_text(self) -> str:
        """Concatenate tool-call argument fragments, falling back to ``function_call``."""
        text = "".join(call.argument_text() for call in self.tool_calls or [])
        if not text and self.function_call is not None and isinstance(self.function_call.arguments, str):
            text = self.function_call.arguments
        return text


@dataclass(slots=True)
class StreamFrame:
    """One decoded server event: an optional delta plus the raw ``data:`` line."""

    delta: Optional[ChatDelta] = None
    wire_line: str = ""
    done: bool = False


class SseDecoder:
    """Incremental server-sent-events splitter.

    Events are separated by blank lines; only ``data:`` lines are returned and
    an incomplete trailing event stays buffered until more text arrives.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        events = self._buffer.split("\n\n")
        self._buffer = events.pop()
        return self._data_lines(events)

    def flush(self) -> list[str]:
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return self._data_lines([remainder])

    @staticmethod
    def _data_lines(events: list[str]) -> list[str]:
        lines: list[str] = []
        for event in events:
            for line in event.split("\n"):
                trimmed = line.strip()
                if trimmed.startswith("data:"):
                    lines.append(trimmed)
        return lines


def decode_frame(payload: str) -> Optional[ChatDelta]:
    """Decode one ``data:`` payload; undecodable frames yield ``None``."""
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        LOGGER.debug("Skipping undecodable stream frame: %.120s", payload)
        return None
    if not isinstance(parsed, dict):
        return None
    choices = parsed.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
    delta = choice.get("delta")
    try:
        if isinstance(delta, dict):
            return ChatDelta.model_validate(delta)
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return ChatDelta(content=message["content"])
    except ValidationError as error:
        LOGGER.debug("Skipping stream frame with unexpected shape: %s", error)
    return None


class OpenAIChatStreamClient(ChatClient):
    """Thin adapter that streams ``/v1/chat/completions`` over httpx."""

    def __init__(
        self,
        *,
        api_url: str,
        model: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(model=model)
        self._api_url = api_url
        timeout_override = os.getenv("PATCHSTREAM_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                pass
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json", **(headers or {})}

    @property
    def api_url(self) -> str:
        return self._api_url

    @property
    def timeout(self) -> float:
        return self._timeout

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamFrame]:
        payload = request.to_payload(self._model)
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                async with client.stream("POST", self._api_url, json=payload, headers=self._headers) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="ignore")
                        raise LLMTransportError(
                            f"API Error: {response.status_code} {response.reason_phrase}",
                            details={"url": self._api_url, "status": response.status_code, "body": body[:500]},
                        )
                    content_type = response.headers.get("content-type", "")
                    if "event-stream" not in content_type and "json" in content_type:
                        yield self._complete_message(await response.aread())
                        return
                    decoder = SseDecoder()
                    async for chunk in response.aiter_text():
                        for line in decoder.feed(chunk):
                            frame = self._frame_from_line(line)
                            yield frame
                            if frame.done:
                                return
                    for line in decoder.flush():
                        frame = self._frame_from_line(line)
                        yield frame
                        if frame.done:
                            return
        except httpx.TimeoutException as error:
            raise LLMTransportError(
                "Chat completion request timed out.", details={"url": self._api_url, "timeout": self._timeout}
            ) from error
        except httpx.HTTPError as error:
            raise LLMTransportError(
                f"Failed to reach chat endpoint: {error}", details={"url": self._api_url}
            ) from error

    @staticmethod
    def _frame_from_line(line: str) -> StreamFrame:
        payload = line[len("data:") :].strip()
        if payload == DONE_SENTINEL:
            return StreamFrame(wire_line=line, done=True)
        return StreamFrame(delta=decode_frame(payload), wire_line=line)

    @staticmethod
    def _complete_message(raw: bytes) -> StreamFrame:
        """Turn a non-streaming JSON body into a single frame."""
        try:
            data: Any = json.loads(raw.decode("utf-8", errors="ignore"))
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError("Chat completion body was not valid JSON.") from error
        choices = data.get("choices") if isinstance(data, dict) else None
        message = None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
        if not isinstance(message, dict):
            raise LLMResponseFormatError("Chat completion body did not contain a message.")
        content = message.get("content")
        reasoning = message.get("reasoning_content")
        return StreamFrame(
            delta=ChatDelta(
                content=content if isinstance(content, str) else "",
                reasoning_content=reasoning if isinstance(reasoning, str) else None,
            ),
            done=True,
        )
