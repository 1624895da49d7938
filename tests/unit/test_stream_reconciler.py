from __future__ import annotations

import asyncio
from typing import AsyncIterator, Dict, List

import pytest

from patchstream.models.chat_stream import ChatDelta, StreamFrame
from patchstream.models.llm_client import ChatClient, ChatRequest, ModelProfileError
from patchstream.models.registry import LookupMode, ModelRegistry
from patchstream.protocol.parser import StreamUpdate
from patchstream.protocol.stream import StreamReconciler, build_chat_request, generate_edits
from patchstream.settings import GenerationSettings, ProviderFamily, SamplingProfile

TITLE_PATCH = "<!-- patch: App.tsx -->\n<replace><find>Tailwind v3</find><with>Hello</with></replace>"


class ScriptedClient(ChatClient):
    """Replays one list of content chunks per request."""

    def __init__(self, responses: List[List[str]], model: str = "qwen2.5-coder-7b") -> None:
        super().__init__(model)
        self._responses = responses
        self.requests: List[ChatRequest] = []

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamFrame]:
        self.requests.append(request)
        for chunk in self._responses[len(self.requests) - 1]:
            yield StreamFrame(delta=ChatDelta(content=chunk), wire_line=f"data: {chunk}")


def _settings(**overrides: object) -> GenerationSettings:
    settings = GenerationSettings(model="qwen2.5-coder-7b", lookup_mode=LookupMode.OFF)
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _generate(client: ScriptedClient, files: Dict[str, str], updates: List[StreamUpdate], **overrides: object):
    settings = _settings(**overrides)
    return asyncio.run(
        generate_edits(
            client,
            "change the title",
            [],
            files,
            updates.append,
            settings=settings,
            registry=ModelRegistry(lookup_mode=LookupMode.OFF),
        )
    )


def test_snapshots_follow_time_and_size_cadence(starter_files: Dict[str, str]) -> None:
    now = [0.0]
    updates: List[StreamUpdate] = []
    reconciler = StreamReconciler(starter_files, on_update=updates.append, cadence_ms=120, clock=lambda: now[0])

    assert reconciler.feed(ChatDelta(content="a")) is not None
    now[0] = 0.05
    assert reconciler.feed(ChatDelta(content="b")) is None
    now[0] = 0.06
    burst = reconciler.feed(ChatDelta(content="x" * 80))
    now[0] = 0.3
    assert reconciler.feed(ChatDelta(content="c")) is not None
    assert reconciler.feed(ChatDelta()) is None

    assert burst is not None
    assert burst.delta_raw == "b" + "x" * 80
    assert len(updates) == 3
    assert all(not update.is_final for update in updates)


def test_cadence_has_a_floor(starter_files: Dict[str, str]) -> None:
    assert StreamReconciler(starter_files, cadence_ms=0).cadence_ms == 40


def test_reasoning_is_kept_out_of_model_text(starter_files: Dict[str, str]) -> None:
    reconciler = StreamReconciler(starter_files, wire_debug=True)

    reconciler.feed(ChatDelta(reasoning_content="thinking"))
    reconciler.record_wire("data: {}")

    assert reconciler.model_text == ""
    stats = reconciler.channel_stats()
    assert stats["reasoning_chars"] == len("thinking")
    assert stats["wire_chars"] == len("data: {}\n")


def test_generate_edits_returns_final_update(starter_files: Dict[str, str]) -> None:
    client = ScriptedClient([[TITLE_PATCH[:30], TITLE_PATCH[30:]]])
    updates: List[StreamUpdate] = []

    final = _generate(client, starter_files, updates)

    assert final.is_final
    assert "Hello" in final.files["App.tsx"]
    assert final.applied_ops == 1
    assert updates[-1] is final
    assert client.requests[0].messages[0]["role"] == "system"
    assert client.requests[0].model == "qwen2.5-coder-7b"


def test_special_token_response_is_regenerated(starter_files: Dict[str, str]) -> None:
    client = ScriptedClient([["<|im_start|>", "<|im_end|>"], [TITLE_PATCH]])
    updates: List[StreamUpdate] = []

    final = _generate(client, starter_files, updates)

    assert len(client.requests) == 2
    assert "Hello" in final.files["App.tsx"]
    assert any("AUTO_RETRY: Special tokens detected; retrying once." in update.warnings for update in updates)


def test_markerless_parseable_response_is_regenerated(starter_files: Dict[str, str]) -> None:
    client = ScriptedClient([["Here you go:\n```tsx\nconst x = 1;\n```"], [TITLE_PATCH]])
    updates: List[StreamUpdate] = []

    final = _generate(client, starter_files, updates)

    assert len(client.requests) == 2
    assert final.applied_ops == 1
    assert any(
        "AUTO_RETRY: Parseable content without actionable edits; retrying once." in update.warnings
        for update in updates
    )


def test_regeneration_is_bounded(starter_files: Dict[str, str]) -> None:
    client = ScriptedClient([["<|im_end|>"]] * 3)

    final = _generate(client, starter_files, [])

    assert len(client.requests) == 3
    assert final.is_final


def test_unknown_model_size_requires_a_tier_choice(starter_files: Dict[str, str]) -> None:
    client = ScriptedClient([[TITLE_PATCH]], model="local-model")

    with pytest.raises(ModelProfileError):
        _generate(client, starter_files, [], model="local-model")

    assert client.requests == []


def test_sampling_knobs_only_with_override() -> None:
    messages = [{"role": "user", "content": "hi"}]

    plain = build_chat_request(messages, _settings())
    strict = build_chat_request(
        messages,
        _settings(sampling_override_enabled=True, sampling_profile=SamplingProfile.STRICT_DETERMINISTIC),
    )
    qwen = build_chat_request(messages, _settings(sampling_override_enabled=True))
    generic = build_chat_request(
        messages, _settings(sampling_override_enabled=True, provider_family=ProviderFamily.GENERIC)
    )

    assert (plain.temperature, plain.top_p, plain.top_k) == (None, None, None)
    assert (strict.temperature, strict.top_p) == (0.2, 0.9)
    assert (qwen.temperature, qwen.top_p, qwen.top_k) == (1.0, 0.95, 40)
    assert generic.temperature is None
    assert plain.to_payload("fallback")["model"] == "qwen2.5-coder-7b"
