"""Client base class and error taxonomy shared by chat-completion integrations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .chat_stream import StreamFrame

__all__ = [
    "ChatClient",
    "ChatRequest",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "ModelProfileError",
]


class LLMClientError(RuntimeError):
    """Base error raised for model client failures."""

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the server returns a body that cannot be used."""


class ModelProfileError(LLMClientError):
    """Raised when the model size is unknown and no tier preference was chosen."""


@dataclass(slots=True)
class ChatRequest:
    """Chat-completion request sent to an OpenAI-compatible server."""

    messages: list[Dict[str, str]]
    model: Optional[str] = None
    stream: bool = True
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render the JSON body; sampling knobs are only sent when set."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "messages": [dict(message) for message in self.messages],
            "stream": self.stream,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        if self.top_k is not None:
            payload["top_k"] = self.top_k
        return payload


class ChatClient:
    """Streaming chat client interface. Subclasses implement :meth:`stream_chat`."""

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def stream_chat(self, request: ChatRequest) -> AsyncIterator["StreamFrame"]:
        """Yield decoded frames for ``request`` until the server finishes."""
        raise NotImplementedError("Subclasses must implement stream_chat().")
