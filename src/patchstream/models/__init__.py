"""Convenience exports for chat-completion clients and the model registry."""

from .chat_stream import ChatDelta, OpenAIChatStreamClient, StreamFrame
from .llm_client import (
    ChatClient,
    ChatRequest,
    LLMClientError,
    LLMResponseFormatError,
    LLMTransportError,
    ModelProfileError,
)
from .registry import HintCache, LookupMode, ModelProfile, ModelRegistry, ModelTier, TierPreference

__all__ = [
    "ChatClient",
    "ChatDelta",
    "ChatRequest",
    "HintCache",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "LookupMode",
    "ModelProfile",
    "ModelProfileError",
    "ModelRegistry",
    "ModelTier",
    "OpenAIChatStreamClient",
    "StreamFrame",
    "TierPreference",
]
