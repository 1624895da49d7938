from __future__ import annotations

import asyncio
from typing import Dict, List

from patchstream.orchestrator import RunOrchestrator, RunPhase
from patchstream.protocol import ParserStage, parse_response
from patchstream.settings import GenerationSettings, QualityMode

TITLE_LINE = '<h1 className="text-4xl font-black mb-4 tracking-tight">Tailwind v3</h1>'
TITLE_PATCH = (
    "<replace>\n"
    f"<find>{TITLE_LINE}</find>\n"
    '<with><h1 className="text-4xl font-black mb-4 tracking-tight">Patchstream</h1></with>\n'
    "</replace>"
)

GAME_APP = """import React from 'react';

const App: React.FC = () => {
  const speed = 5; // pixels per frame
  return <div className="p-4">{speed}</div>;
};

export default App;"""


def test_duplicate_inline_patch_inside_tool_wrapper_applies_once(starter_files: Dict[str, str]) -> None:
    text = f"<tool_call>\n{TITLE_PATCH}\n{TITLE_PATCH}\n</tool_call>"

    update = parse_response(text, base_files=starter_files, is_final=True)

    assert update.failed_patches == []
    assert update.applied_ops == 1
    assert update.parser_stage is ParserStage.FALLBACK
    assert update.files["App.tsx"].count("Patchstream") == 1
    assert update.changed_files == ["App.tsx"]
    assert "AUTO_CORRECT: Deduplicated 1 repeated inline patch op(s)." in update.warnings


def test_comment_drift_matches_and_keeps_source_comment(starter_files: Dict[str, str]) -> None:
    files = {**starter_files, "App.tsx": GAME_APP}
    text = (
        "<!-- patch: App.tsx -->\n"
        "<replace>\n<find>\nconst speed = 5; // speed\n</find>\n<with>\nconst speed = 8;\n</with>\n</replace>"
    )

    update = parse_response(text, base_files=files, is_final=True)

    assert update.failed_patches == []
    assert update.applied_ops == 1
    assert "const speed = 8; // pixels per frame" in update.files["App.tsx"]
    assert "const speed = 5;" not in update.files["App.tsx"]


def test_missing_anchor_leaves_files_untouched(starter_files: Dict[str, str]) -> None:
    text = (
        "<!-- patch: App.tsx -->\n"
        "<replace><find>const missing = true;</find><with>return 2;</with></replace>"
    )

    update = parse_response(text, base_files=starter_files, is_final=True)

    assert update.files == starter_files
    assert update.changed_files == []
    assert any("not found" in failure.lower() for failure in update.failed_patches)
    assert any('op 1 ("const missing = true;")' in failure for failure in update.failed_patches)
    assert "patch_failed:App.tsx" in update.repair_hints
    assert "NO_OP: marker patch detected but produced no file diff" in update.failed_patches


def test_truncated_repeated_patch_block_applies_once(starter_files: Dict[str, str]) -> None:
    block = (
        "<!-- patch: App.tsx -->\n"
        "<replace>\n<find>Tailwind v3</find>\n<with>Patchstream</with>\n</replace>"
    )
    truncated = "<!-- patch: App.tsx -->\n<replace>\n<find>Tailwind v3</find>\n<with>Patchstream</with\n</replace"

    update = parse_response(f"{block}\n\n{truncated}", base_files=starter_files, is_final=True)

    assert update.failed_patches == []
    assert update.applied_ops == 1
    assert update.files["App.tsx"].count("Patchstream") == 1
    assert "AUTO_CORRECT: Repaired malformed XML closing tags in patch text." in update.warnings
    assert "AUTO_CORRECT: Skipped duplicate patch block for App.tsx." in update.warnings


def test_ambiguous_markerless_patch_is_not_applied(starter_files: Dict[str, str]) -> None:
    button = "export const Button = () => <button className=\"btn\">Go</button>;"
    files = {**starter_files, "components/A.tsx": button, "components/B.tsx": button}
    text = (
        "<replace><find><button className=\"btn\">Go</button></find>"
        "<with><button className=\"btn\">Start</button></with></replace>"
    )

    update = parse_response(text, base_files=files, is_final=True)

    assert update.files == files
    assert update.changed_files == []
    assert update.failed_patches == [
        "PROTOCOL_VIOLATION: Inline patch target ambiguous (components/A.tsx, components/B.tsx)."
    ]
    assert "ambiguous_target" in update.repair_hints


class ScriptedGenerator:
    """Replays canned model responses through the real parser."""

    def __init__(self, responses: List[str]) -> None:
        self._responses = list(responses)
        self.prompts: List[str] = []

    async def __call__(self, prompt, history, files, on_update=None, *, attempt_index, attempt_type):
        self.prompts.append(prompt)
        text = self._responses[min(len(self.prompts), len(self._responses)) - 1]
        return parse_response(text, base_files=files, is_final=True, raw_model_text=text)


def _settings(mode: QualityMode, repairs: int = 3) -> GenerationSettings:
    return GenerationSettings(quality_mode=mode, auto_repair_attempts=repairs)


def test_single_pass_makes_exactly_one_call() -> None:
    generator = ScriptedGenerator([f"<!-- patch: App.tsx -->\n{TITLE_PATCH}"])
    orchestrator = RunOrchestrator(settings=_settings(QualityMode.SINGLE_PASS), generate=generator)

    result = asyncio.run(orchestrator.run("Rename the title"))

    assert len(generator.prompts) == 1
    assert result.ok
    assert result.changed_files == ["App.tsx"]
    assert result.attempts[0].retry_decision is not None
    assert result.attempts[0].retry_decision.reason == "quality_mode_single_pass"


def test_single_pass_failure_is_not_retried() -> None:
    generator = ScriptedGenerator(["Sorry, I can only describe the change."])
    orchestrator = RunOrchestrator(settings=_settings(QualityMode.SINGLE_PASS, repairs=0), generate=generator)

    result = asyncio.run(orchestrator.run("Rename the title"))

    assert len(generator.prompts) == 1
    assert result.phase is RunPhase.FAILED
    assert not result.kept_generated_files
    assert result.failure_message is not None
    assert "No editable changes detected" in result.failure_message


def test_always_best_of_two_makes_exactly_two_calls() -> None:
    generator = ScriptedGenerator([f"<!-- patch: App.tsx -->\n{TITLE_PATCH}"])
    orchestrator = RunOrchestrator(settings=_settings(QualityMode.ALWAYS_BEST_OF_2), generate=generator)

    result = asyncio.run(orchestrator.run("Rename the title"))

    assert len(generator.prompts) == 2
    assert generator.prompts[1].startswith("SECOND ATTEMPT REQUIRED")
    assert [attempt.retry_decision.reason for attempt in result.attempts] == [
        "quality_mode_always_best_of_2",
        "retry_already_performed",
    ]
    assert result.ok
    assert "Patchstream" in result.files["App.tsx"]


def test_adaptive_healthy_primary_is_not_retried() -> None:
    generator = ScriptedGenerator([f"<!-- patch: App.tsx -->\n{TITLE_PATCH}"])
    orchestrator = RunOrchestrator(settings=_settings(QualityMode.ADAPTIVE_BEST_OF_2), generate=generator)

    result = asyncio.run(orchestrator.run("Rename the title"))

    assert len(generator.prompts) == 1
    assert result.attempts[0].retry_decision.reason == "primary_attempt_healthy"
