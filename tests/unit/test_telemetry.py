from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List

import pytest

from patchstream.models.chat_stream import ChatDelta, StreamFrame
from patchstream.models.llm_client import ChatClient, ChatRequest
from patchstream.models.registry import LookupMode
from patchstream.orchestrator import RunOrchestrator, RunPhase
from patchstream.protocol import ParserStage, parse_response
from patchstream.settings import GenerationSettings, QualityMode
from patchstream.telemetry import TELEMETRY_LOGGER, emit_event

PROSE = "I would change the title to something friendlier."
TITLE_PATCH = "<!-- patch: App.tsx -->\n<replace><find>Tailwind v3</find><with>Patchstream</with></replace>"


@dataclass
class _Counts:
    applied: int
    failed: int


def _events(caplog: pytest.LogCaptureFixture) -> List[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == TELEMETRY_LOGGER.name]


def test_event_is_one_compact_json_line(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger=TELEMETRY_LOGGER.name)

    emit_event(
        "run.phase",
        phase=RunPhase.PLAN,
        stage=ParserStage.FALLBACK,
        path=Path("src") / "App.tsx",
        files=("App.tsx", "index.tsx"),
        counts=_Counts(applied=2, failed=0),
        note="café",
    )

    records = [record for record in caplog.records if record.name == "patchstream.telemetry"]
    assert len(records) == 1
    assert records[0].levelno == logging.INFO
    message = records[0].getMessage()
    assert "\n" not in message
    assert ": " not in message and ", " not in message
    assert "\\u00e9" in message

    payload = json.loads(message)
    assert list(payload)[:2] == ["event", "timestamp"]
    assert payload["event"] == "run.phase"
    assert datetime.fromisoformat(payload["timestamp"]).utcoffset().total_seconds() == 0
    assert payload["phase"] == "plan"
    assert payload["stage"] == "fallback"
    assert payload["path"] == "src/App.tsx"
    assert payload["files"] == ["App.tsx", "index.tsx"]
    assert payload["counts"] == {"applied": 2, "failed": 0}
    assert payload["note"] == "café"


def test_nothing_is_logged_below_info(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger=TELEMETRY_LOGGER.name)

    emit_event("run.phase", phase=RunPhase.PLAN)

    assert _events(caplog) == []


def test_final_parse_reports_completion(caplog: pytest.LogCaptureFixture, starter_files) -> None:
    caplog.set_level(logging.INFO, logger=TELEMETRY_LOGGER.name)

    parse_response(TITLE_PATCH, base_files=starter_files, is_final=False)
    assert _events(caplog) == []

    parse_response(TITLE_PATCH, base_files=starter_files, is_final=True)

    (event,) = _events(caplog)
    assert event["event"] == "parse.completed"
    assert event["stage"] == "markers"
    assert event["applied_ops"] == 1
    assert event["touched_files"] == ["App.tsx"]
    assert event["failed_patches"] == 0


class _ScriptedGenerator:
    def __init__(self, responses: List[str]) -> None:
        self._responses = responses
        self.calls = 0

    async def __call__(self, prompt, history, files, on_update=None, *, attempt_index, attempt_type):
        self.calls += 1
        text = self._responses[min(self.calls, len(self._responses)) - 1]
        return parse_response(text, base_files=files, is_final=True, raw_model_text=text)


def test_run_emits_retry_repair_and_finish_events(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger=TELEMETRY_LOGGER.name)
    generator = _ScriptedGenerator([PROSE, PROSE, TITLE_PATCH])
    settings = GenerationSettings(quality_mode=QualityMode.ADAPTIVE_BEST_OF_2, auto_repair_attempts=3)

    result = asyncio.run(RunOrchestrator(settings=settings, generate=generator).run("Rename the title"))

    assert result.ok
    events = _events(caplog)
    names = [event["event"] for event in events]
    assert {"parse.completed", "run.phase", "run.retry", "run.repair", "run.finished"} <= set(names)
    assert names.index("run.retry") < names.index("run.repair")
    assert names[-1] == "run.finished"

    retry = next(event for event in events if event["event"] == "run.retry")
    assert retry["attempt_index"] == 1
    assert retry["reason"] == "adaptive_retry_on_failure_signals"

    phases = [event["phase"] for event in events if event["event"] == "run.phase"]
    assert phases[0] == "plan"
    assert "repair" in phases

    finished = events[-1]
    assert finished["phase"] == "finalize"
    assert finished["changed_files"] == ["App.tsx"]
    assert finished["failed"] is False


class _OneReplyClient(ChatClient):
    def __init__(self, text: str) -> None:
        super().__init__("qwen2.5-coder-7b")
        self._text = text

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamFrame]:
        yield StreamFrame(delta=ChatDelta(content=self._text), wire_line="data: {}")


def test_streamed_run_emits_snapshot_events(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger=TELEMETRY_LOGGER.name)
    settings = GenerationSettings(
        model="qwen2.5-coder-7b",
        lookup_mode=LookupMode.OFF,
        quality_mode=QualityMode.SINGLE_PASS,
        auto_repair_attempts=0,
    )
    orchestrator = RunOrchestrator.from_client(_OneReplyClient(TITLE_PATCH), settings)

    result = asyncio.run(orchestrator.run("Rename the title"))

    assert result.ok
    snapshots = [event for event in _events(caplog) if event["event"] == "stream.snapshot"]
    assert snapshots
    assert snapshots[-1]["is_final"] is True
    assert snapshots[-1]["attempt_type"] == "primary"
    assert snapshots[-1]["has_real_diff"] is True
