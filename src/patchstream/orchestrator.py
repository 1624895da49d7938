"""Run orchestration: best-of-N attempts, candidate selection and bounded auto-repair."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from .models.llm_client import ChatClient
from .models.registry import ModelRegistry
from .prompts import (
    UPDATE_MODE_PREFIX,
    FailureEvidence,
    build_repair_from_evidence_prompt,
    build_repair_prompt,
    build_second_attempt_prompt,
    make_excerpt,
)
from .protocol.parser import AttemptType, StreamUpdate
from .protocol.stream import UpdateCallback, generate_edits
from .settings import GenerationSettings, QualityMode
from .telemetry import emit_event
from .tools.sanitize import sanitize_generated_files
from .tools.transaction import get_changed_files_between
from .validation.confidence import is_low_confidence
from .validation.preflight import PreflightResult, run_preview_preflight
from .validation.validator import StructuralValidator, ValidationResult, validate_project

LOGGER = logging.getLogger(__name__)

RUNNER_UP_MARGIN = 30
PROTOCOL_VIOLATION_PREFIX = "PROTOCOL_VIOLATION:"
AUTO_REPAIRABLE_VIOLATIONS: tuple[str, ...] = (
    "No marker blocks found",
    "Filename blocks must use fenced code",
    "Patch blocks missing markers",
)
NO_MARKER_FRIENDLY = "No editable changes detected. The model did not provide any file blocks."

RuntimeProbe = Callable[[Mapping[str, str]], Sequence[str]]
GenerateFn = Callable[..., Awaitable[StreamUpdate]]

INITIAL_INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Tailwind Local App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/index.tsx"></script>
  </body>
</html>"""

INITIAL_INDEX_TSX = """import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App.tsx';

const root = ReactDOM.createRoot(document.getElementById('root') as HTMLElement);
root.render(<App />);"""

INITIAL_APP_TSX = """import React from 'react';

const App: React.FC = () => {
  return (
    <div className="min-h-screen bg-slate-900 flex items-center justify-center p-6 font-sans text-white">
      <div className="max-w-md w-full bg-slate-800 rounded-3xl p-10 shadow-2xl border border-slate-700">
        <div className="w-16 h-16 bg-blue-500 rounded-2xl mb-8 flex items-center justify-center shadow-lg shadow-blue-500/20">
          <svg className="w-8 h-8 text-white" fill="none" viewBox="0 0 24 24" stroke="currentColor">
            <path strokeLinecap="round" strokeLinejoin="round" strokeWidth={2} d="M13 10V3L4 14h7v7l9-11h-7z" />
          </svg>
        </div>
        <h1 className="text-4xl font-black mb-4 tracking-tight">Tailwind v3</h1>
        <p className="text-slate-400 text-lg leading-relaxed">
          Compiled locally, 100% offline. Ready for your next big idea.
        </p>
      </div>
    </div>
  );
};

export default App;"""

INITIAL_TAILWIND_CONFIG = """module.exports = {
  theme: {
    extend: {},
  },
  plugins: [],
};"""

INITIAL_INPUT_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;"""

INITIAL_PROJECT_FILES: dict[str, str] = {
    "index.html": INITIAL_INDEX_HTML,
    "index.tsx": INITIAL_INDEX_TSX,
    "App.tsx": INITIAL_APP_TSX,
    "tailwind.config.js": INITIAL_TAILWIND_CONFIG,
    "input.css": INITIAL_INPUT_CSS,
}


class RunPhase(str, Enum):
    PLAN = "plan"
    PATCH = "patch"
    VALIDATE = "validate"
    PREVIEW_CHECK = "preview-check"
    REPAIR = "repair"
    FINALIZE = "finalize"
    FAILED = "failed"


@dataclass(slots=True)
class RetryDecision:
    should_retry: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"should_retry": self.should_retry, "reason": self.reason}


@dataclass(slots=True)
class CandidateScore:
    """Weighted score of one candidate file set."""

    validation_delta: int
    runtime_ok: bool
    changed_files: int
    applied_ops: int
    hard_failures: int
    score: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation_delta": self.validation_delta,
            "runtime_ok": self.runtime_ok,
            "changed_files": self.changed_files,
            "applied_ops": self.applied_ops,
            "hard_failures": self.hard_failures,
            "score": self.score,
        }


@dataclass(slots=True)
class EvaluatedCandidate:
    """A sanitised candidate with its validation, preflight and score."""

    label: str
    files: dict[str, str]
    warnings: list[str]
    changed: bool
    changed_files: list[str]
    validation: ValidationResult
    new_validation_errors: list[str]
    preflight: PreflightResult
    runtime_errors: list[str]
    score: CandidateScore

    @property
    def clean_change(self) -> bool:
        return bool(self.changed_files) and not self.new_validation_errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "changed_files": list(self.changed_files),
            "new_validation_errors": list(self.new_validation_errors),
            "preflight": self.preflight.to_dict(),
            "runtime_errors": list(self.runtime_errors),
            "warnings": list(self.warnings),
            "score": self.score.to_dict(),
        }


@dataclass(slots=True)
class AttemptIssues:
    """Issue classification for one attempt's selected candidate."""

    violations: list[str] = field(default_factory=list)
    technicals: list[str] = field(default_factory=list)
    auto_repairable: list[str] = field(default_factory=list)
    validation: ValidationResult = field(default_factory=lambda: ValidationResult(valid=True))
    runtime_errors: list[str] = field(default_factory=list)
    parser_hints: list[str] = field(default_factory=list)
    effective_changed_files: list[str] = field(default_factory=list)
    inline_no_op: bool = False
    no_effective_changes: bool = False
    has_usable_edits: bool = False
    has_hard_issues: bool = False
    low_confidence: bool = False

    @property
    def has_runtime_issues(self) -> bool:
        return bool(self.runtime_errors)

    @property
    def has_issues(self) -> bool:
        return self.has_hard_issues or self.has_runtime_issues

    def evidence(self) -> FailureEvidence:
        return FailureEvidence(
            protocol_errors=list(self.auto_repairable),
            patch_errors=list(self.technicals),
            validation_errors=list(self.validation.errors),
            runtime_errors=list(self.runtime_errors),
            parser_hints=list(self.parser_hints),
            no_effective_changes=self.no_effective_changes,
            inline_no_op=self.inline_no_op,
        )

    def signature(self, parser_stage: str, touched_count: int) -> str:
        return "||".join(
            [
                f"v:{'|'.join(self.auto_repairable)}",
                f"t:{'|'.join(self.technicals)}",
                f"x:{'|'.join(self.validation.errors)}",
                f"r:{'|'.join(self.runtime_errors)}",
                f"h:{'|'.join(self.parser_hints)}",
                f"s:{parser_stage}",
                f"tc:{touched_count}",
            ]
        )


@dataclass(slots=True)
class RunAttempt:
    """Descriptor and outcome of one generation call within a run."""

    attempt_index: int
    attempt_type: AttemptType
    prompt: str
    source_files: dict[str, str]
    rollback_files: dict[str, str]
    repair_attempt: int = 0
    selected_label: str | None = None
    score: int | None = None
    changed_files: list[str] = field(default_factory=list)
    retry_decision: RetryDecision | None = None
    hard_issues: bool = False

    @property
    def is_repair(self) -> bool:
        return self.attempt_type is AttemptType.REPAIR

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_index": self.attempt_index,
            "attempt_type": self.attempt_type.value,
            "repair_attempt": self.repair_attempt,
            "selected_label": self.selected_label,
            "score": self.score,
            "changed_files": list(self.changed_files),
            "retry_decision": self.retry_decision.to_dict() if self.retry_decision else None,
            "hard_issues": self.hard_issues,
        }


@dataclass(slots=True)
class RunResult:
    """Terminal outcome of one user request."""

    phase: RunPhase
    files: dict[str, str]
    kept_generated_files: bool
    changed_files: list[str] = field(default_factory=list)
    applied_ops: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    decision_reason: str = ""
    failure_message: str | None = None
    repair_from_evidence_prompt: str | None = None
    alternative: EvaluatedCandidate | None = None
    repeated_signature: bool = False
    attempts: list[RunAttempt] = field(default_factory=list)
    phases: list[RunPhase] = field(default_factory=list)
    final_update: StreamUpdate | None = None

    @property
    def ok(self) -> bool:
        return self.phase is RunPhase.FINALIZE and self.failure_message is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "ok": self.ok,
            "kept_generated_files": self.kept_generated_files,
            "changed_files": list(self.changed_files),
            "applied_ops": self.applied_ops,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "decision_reason": self.decision_reason,
            "failure_message": self.failure_message,
            "repair_from_evidence_prompt": self.repair_from_evidence_prompt,
            "alternative": self.alternative.to_dict() if self.alternative else None,
            "repeated_signature": self.repeated_signature,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "phases": [phase.value for phase in self.phases],
        }


def _unique(items: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(items))


def is_initial_starter_project(files: Mapping[str, str]) -> bool:
    """True when ``files`` is the untouched starter project (whitespace-trimmed)."""
    if len(files) != len(INITIAL_PROJECT_FILES):
        return False
    for name, content in INITIAL_PROJECT_FILES.items():
        if name not in files:
            return False
        if (files[name] or "").strip() != content.strip():
            return False
    return True


def ensure_seed_workspace_files(files: Optional[Mapping[str, str]]) -> dict[str, str]:
    if files:
        return dict(files)
    return dict(INITIAL_PROJECT_FILES)


def should_trigger_second_attempt(
    *,
    quality_mode: QualityMode,
    is_repair_call: bool,
    attempt_index: int,
    has_hard_issues: bool,
    has_runtime_issues: bool,
    no_effective_changes: bool,
    inline_no_op: bool,
) -> RetryDecision:
    """Decide whether a request earns one extra generation attempt."""
    if is_repair_call:
        return RetryDecision(False, "retry_disabled_for_repair_calls")
    if attempt_index >= 2:
        return RetryDecision(False, "retry_already_performed")
    if quality_mode is QualityMode.SINGLE_PASS:
        return RetryDecision(False, "quality_mode_single_pass")
    if quality_mode is QualityMode.ALWAYS_BEST_OF_2:
        return RetryDecision(True, "quality_mode_always_best_of_2")
    if not (has_hard_issues or has_runtime_issues or no_effective_changes or inline_no_op):
        return RetryDecision(False, "primary_attempt_healthy")
    return RetryDecision(True, "adaptive_retry_on_failure_signals")


def score_run_candidate(
    validation_delta: int,
    runtime_ok: bool,
    changed_files: int,
    applied_ops: int,
    hard_failures: int,
) -> CandidateScore:
    score = 240 if changed_files > 0 else -120
    score += min(applied_ops, 6) * 16
    score -= max(0, validation_delta) * 140
    score += 60 if runtime_ok else -80
    score -= hard_failures * 110
    return CandidateScore(
        validation_delta=validation_delta,
        runtime_ok=runtime_ok,
        changed_files=changed_files,
        applied_ops=applied_ops,
        hard_failures=hard_failures,
        score=score,
    )


def rank_candidates(candidates: Sequence[EvaluatedCandidate]) -> list[EvaluatedCandidate]:
    """Highest score first; ties keep pool order."""
    return sorted(candidates, key=lambda candidate: -candidate.score.score)


def pick_best_candidate(candidates: Sequence[EvaluatedCandidate]) -> EvaluatedCandidate | None:
    ranked = rank_candidates(candidates)
    return ranked[0] if ranked else None


def filter_candidate_pool(pool: Sequence[EvaluatedCandidate]) -> list[EvaluatedCandidate]:
    """Prefer clean changes, then preflight-safe candidates; a filter that empties the pool is skipped."""
    clean = [candidate for candidate in pool if candidate.clean_change]
    narrowed = clean or list(pool)
    preflight_safe = [candidate for candidate in narrowed if candidate.preflight.ok]
    return preflight_safe or narrowed


def select_candidate(
    pool: Sequence[EvaluatedCandidate],
) -> tuple[EvaluatedCandidate, EvaluatedCandidate | None]:
    """Return the winner and, when it scored close and changed files cleanly, the runner-up."""
    ranked = rank_candidates(filter_candidate_pool(pool))
    selected = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None
    if (
        runner_up is not None
        and abs(selected.score.score - runner_up.score.score) <= RUNNER_UP_MARGIN
        and runner_up.clean_change
        and runner_up.label != selected.label
    ):
        return selected, runner_up
    return selected, None


class _StreamTracker:
    """Forwards snapshots and remembers the last one that actually changed files."""

    def __init__(self, source_files: Mapping[str, str], forward: Optional[UpdateCallback]) -> None:
        self.last_actionable: dict[str, str] = dict(source_files)
        self.had_actionable = False
        self.saw_patch_signals = False
        self._forward = forward

    def __call__(self, update: StreamUpdate) -> None:
        if not update.is_final:
            if update.marker_count > 0 or update.applied_ops > 0 or update.touched_files:
                self.saw_patch_signals = True
            if update.has_real_diff or update.applied_ops > 0 or update.touched_files:
                self.had_actionable = True
                self.last_actionable = dict(update.files)
        if self._forward is not None:
            self._forward(update)


class RunOrchestrator:
    """Drives one user request through generation, selection, retry and repair.

    Attempts run strictly one after another. Each attempt parses against its
    own source files; a retry keeps the request's source files and uses the
    previous selection as its rollback baseline, a repair builds on the
    previous selection and keeps the original rollback baseline.
    """

    def __init__(
        self,
        *,
        settings: GenerationSettings,
        client: Optional[ChatClient] = None,
        registry: Optional[ModelRegistry] = None,
        validator: Optional[StructuralValidator] = None,
        runtime_probe: Optional[RuntimeProbe] = None,
        generate: Optional[GenerateFn] = None,
    ) -> None:
        if generate is None and client is None:
            raise ValueError("RunOrchestrator needs either a chat client or a generate function.")
        self._settings = settings
        self._client = client
        self._registry = registry
        self._validator = validator
        self._runtime_probe = runtime_probe
        self._generate = generate or self._generate_with_client
        self._phases: list[RunPhase] = []

    @classmethod
    def from_client(
        cls,
        client: ChatClient,
        settings: GenerationSettings,
        *,
        registry: Optional[ModelRegistry] = None,
        runtime_probe: Optional[RuntimeProbe] = None,
    ) -> "RunOrchestrator":
        """Convenience constructor used by the CLI."""
        return cls(settings=settings, client=client, registry=registry, runtime_probe=runtime_probe)

    async def _generate_with_client(
        self,
        prompt: str,
        history: Sequence[Mapping[str, str]],
        files: Mapping[str, str],
        on_update: Optional[UpdateCallback] = None,
        *,
        attempt_index: int,
        attempt_type: AttemptType,
    ) -> StreamUpdate:
        assert self._client is not None
        return await generate_edits(
            self._client,
            prompt,
            history,
            files,
            on_update,
            settings=self._settings,
            registry=self._registry,
            attempt_index=attempt_index,
            attempt_type=attempt_type,
            validator=self._validator,
        )

    def _set_phase(self, phase: RunPhase, attempt: RunAttempt) -> None:
        if self._phases and self._phases[-1] is phase:
            return
        self._phases.append(phase)
        emit_event(
            "run.phase",
            phase=phase,
            attempt_index=attempt.attempt_index,
            attempt_type=attempt.attempt_type,
        )

    def _probe_runtime(self, files: Mapping[str, str]) -> list[str]:
        if self._runtime_probe is None:
            return []
        return [str(error) for error in self._runtime_probe(files)]

    def evaluate_candidate(
        self,
        label: str,
        files: Mapping[str, str],
        *,
        source_files: Mapping[str, str],
        baseline_errors: Sequence[str],
        applied_ops: int,
        hard_failures: int,
    ) -> EvaluatedCandidate:
        sanitized = sanitize_generated_files(files)
        changed_files = get_changed_files_between(source_files, sanitized.files)
        validation = validate_project(sanitized.files, self._validator)
        new_errors = validation.new_errors(baseline_errors)
        preflight = run_preview_preflight(sanitized.files)
        runtime_errors = self._probe_runtime(sanitized.files)
        structural_fatal = 0 if preflight.ok else len(preflight.fatal_errors)
        score = score_run_candidate(
            len(new_errors),
            not runtime_errors,
            len(changed_files),
            applied_ops,
            hard_failures + structural_fatal,
        )
        warnings = _unique(
            [*sanitized.warnings, *(f"preview_preflight: {warning}" for warning in preflight.warnings)]
        )
        return EvaluatedCandidate(
            label=label,
            files=sanitized.files,
            warnings=warnings,
            changed=sanitized.changed,
            changed_files=changed_files,
            validation=validation,
            new_validation_errors=new_errors,
            preflight=preflight,
            runtime_errors=runtime_errors,
            score=score,
        )

    def classify_issues(
        self,
        update: StreamUpdate,
        *,
        source_files: Mapping[str, str],
        verified_files: Mapping[str, str],
        runtime_errors: Sequence[str],
        zero_change_is_hard: bool = False,
    ) -> AttemptIssues:
        """Sort an attempt's failures into the categories that drive retry, repair and reporting."""
        failures = list(update.failed_patches)
        violations = [item for item in failures if item.startswith(PROTOCOL_VIOLATION_PREFIX)]
        technicals = [item for item in failures if not item.startswith(PROTOCOL_VIOLATION_PREFIX)]
        hints = _unique(update.repair_hints)
        inline_no_op = "inline_anchor_miss" in hints or any(
            item.startswith("NO_OP: inline patch") for item in failures
        )
        validation = validate_project(verified_files, self._validator)
        effective_changed = get_changed_files_between(source_files, verified_files)
        attempted_edit = update.marker_count > 0 or bool(update.parsed_blocks_text.strip())
        no_effective_changes = attempted_edit and not effective_changed
        auto_repairable = [
            item for item in violations if any(marker in item for marker in AUTO_REPAIRABLE_VIOLATIONS)
        ]
        has_hard_issues = (
            not validation.valid
            or bool(technicals)
            or bool(auto_repairable)
            or inline_no_op
            or no_effective_changes
            or (zero_change_is_hard and not effective_changed)
        )
        return AttemptIssues(
            violations=violations,
            technicals=technicals,
            auto_repairable=auto_repairable,
            validation=validation,
            runtime_errors=list(runtime_errors),
            parser_hints=hints,
            effective_changed_files=effective_changed,
            inline_no_op=inline_no_op,
            no_effective_changes=no_effective_changes,
            has_usable_edits=bool(effective_changed) and validation.valid,
            has_hard_issues=has_hard_issues,
            low_confidence=is_low_confidence(update.confidence),
        )

    async def run(
        self,
        prompt: str,
        files: Optional[Mapping[str, str]] = None,
        history: Sequence[Mapping[str, str]] = (),
        *,
        on_update: Optional[UpdateCallback] = None,
    ) -> RunResult:
        """Run one user request to a terminal ``finalize`` or ``failed`` phase."""
        request = prompt.strip()
        seeded = ensure_seed_workspace_files(files)
        has_user_prompts = any(message.get("role") == "user" for message in history)
        is_update_call = any(message.get("role") == "assistant" for message in history)
        iteration_context = has_user_prompts or not is_initial_starter_project(seeded)
        # candidates are sanitised before comparison, so the source must be too
        source = sanitize_generated_files(seeded).files
        max_repairs = max(0, self._settings.auto_repair_attempts)
        self._phases = []
        attempts: list[RunAttempt] = []
        last_signature = ""
        signature_count = 0

        attempt = RunAttempt(
            attempt_index=1,
            attempt_type=AttemptType.PRIMARY,
            prompt=request,
            source_files=source,
            rollback_files=dict(source),
        )
        while True:
            attempts.append(attempt)
            self._set_phase(RunPhase.REPAIR if attempt.is_repair else RunPhase.PLAN, attempt)
            prefix = UPDATE_MODE_PREFIX if (is_update_call or attempt.is_repair) else ""
            tracker = _StreamTracker(attempt.source_files, on_update)
            update = await self._generate(
                f"{prefix}{attempt.prompt}",
                history,
                attempt.source_files,
                tracker,
                attempt_index=attempt.attempt_index,
                attempt_type=attempt.attempt_type,
            )
            if tracker.saw_patch_signals and not attempt.is_repair:
                self._set_phase(RunPhase.PATCH, attempt)

            baseline_errors = validate_project(attempt.source_files, self._validator).errors
            pool = [
                self.evaluate_candidate(
                    "final",
                    update.files,
                    source_files=attempt.source_files,
                    baseline_errors=baseline_errors,
                    applied_ops=update.applied_ops,
                    hard_failures=len(update.failed_patches),
                )
            ]
            if tracker.had_actionable:
                pool.append(
                    self.evaluate_candidate(
                        "stream",
                        tracker.last_actionable,
                        source_files=attempt.source_files,
                        baseline_errors=baseline_errors,
                        applied_ops=0,
                        hard_failures=0,
                    )
                )
            pool.append(
                self.evaluate_candidate(
                    "baseline",
                    attempt.rollback_files,
                    source_files=attempt.source_files,
                    baseline_errors=baseline_errors,
                    applied_ops=0,
                    hard_failures=0,
                )
            )
            selected, runner_up = select_candidate(pool)
            verified = selected.files
            attempt.selected_label = selected.label
            attempt.score = selected.score.score
            emit_event(
                "run.candidate_selected",
                attempt_index=attempt.attempt_index,
                attempt_type=attempt.attempt_type,
                label=selected.label,
                score=selected.score.score,
                pool={candidate.label: candidate.score.score for candidate in pool},
                runner_up=runner_up.label if runner_up else None,
            )

            warnings = _unique([*update.warnings, *selected.warnings])
            if selected.label == "final":
                decision_reason = "Selected final parse candidate."
            else:
                decision_reason = (
                    f"Selected {selected.label} candidate due to stronger score and validation outcome."
                )
                warnings.append(
                    f"AUTO_RECOVER: Selected {selected.label} candidate due to better validation/change quality."
                )

            if not attempt.is_repair:
                self._set_phase(RunPhase.VALIDATE, attempt)
                self._set_phase(RunPhase.PREVIEW_CHECK, attempt)
            issues = self.classify_issues(
                update,
                source_files=attempt.source_files,
                verified_files=verified,
                runtime_errors=selected.runtime_errors,
                zero_change_is_hard=(
                    iteration_context
                    and attempt.attempt_index == 1
                    and attempt.attempt_type is AttemptType.PRIMARY
                ),
            )
            attempt.changed_files = list(issues.effective_changed_files)
            attempt.hard_issues = issues.has_hard_issues
            if not issues.has_hard_issues and issues.low_confidence:
                warnings = _unique(
                    [
                        *warnings,
                        f"LOW_CONFIDENCE: parserConfidence={update.confidence:.2f} stage={update.parser_stage.value}",
                    ]
                )

            decision = should_trigger_second_attempt(
                quality_mode=self._settings.quality_mode,
                is_repair_call=attempt.is_repair,
                attempt_index=attempt.attempt_index,
                has_hard_issues=issues.has_hard_issues,
                has_runtime_issues=issues.has_runtime_issues,
                no_effective_changes=issues.no_effective_changes,
                inline_no_op=issues.inline_no_op,
            )
            attempt.retry_decision = decision
            if decision.should_retry:
                LOGGER.info("Running second attempt (%s)", decision.reason)
                emit_event("run.retry", attempt_index=attempt.attempt_index, reason=decision.reason)
                attempt = RunAttempt(
                    attempt_index=attempt.attempt_index + 1,
                    attempt_type=AttemptType.RETRY,
                    prompt=build_second_attempt_prompt(attempt.prompt, issues.evidence()),
                    source_files=attempt.source_files,
                    rollback_files=dict(verified),
                    repair_attempt=attempt.repair_attempt,
                )
                continue

            should_repair = (
                issues.has_hard_issues and not issues.has_usable_edits and attempt.repair_attempt < max_repairs
            )
            repeated_signature = False
            if should_repair:
                signature = issues.signature(update.parser_stage.value, len(update.touched_files))
                if signature == last_signature:
                    signature_count += 1
                else:
                    last_signature, signature_count = signature, 1
                if signature_count >= 2:
                    repeated_signature = True
                    should_repair = False

            if should_repair:
                LOGGER.info("Starting auto-repair %d/%d", attempt.repair_attempt + 1, max_repairs)
                emit_event(
                    "run.repair",
                    attempt_index=attempt.attempt_index,
                    repair_attempt=attempt.repair_attempt + 1,
                    max_repairs=max_repairs,
                )
                repair_prompt = build_repair_prompt(
                    issues.evidence(),
                    validation_valid=issues.validation.valid,
                    failed_patches=update.failed_patches,
                    model_text=update.clean_model_text or update.parsed_blocks_text or update.raw_model_text,
                    source_files=attempt.source_files,
                    confidence=update.confidence,
                    parser_stage=update.parser_stage.value,
                    low_confidence=issues.low_confidence,
                    auto_fixes=selected.warnings,
                )
                attempt = RunAttempt(
                    attempt_index=attempt.attempt_index,
                    attempt_type=AttemptType.REPAIR,
                    prompt=repair_prompt,
                    source_files=dict(verified),
                    rollback_files=attempt.rollback_files,
                    repair_attempt=attempt.repair_attempt + 1,
                )
                continue

            if repeated_signature:
                LOGGER.warning("Auto-repair stopped: identical failure signature repeated")

            return self._finish(
                request=request,
                attempt=attempt,
                attempts=attempts,
                update=update,
                selected=selected,
                runner_up=runner_up,
                issues=issues,
                warnings=warnings,
                decision_reason=decision_reason,
                repeated_signature=repeated_signature,
                max_repairs=max_repairs,
            )

    def _finish(
        self,
        *,
        request: str,
        attempt: RunAttempt,
        attempts: list[RunAttempt],
        update: StreamUpdate,
        selected: EvaluatedCandidate,
        runner_up: EvaluatedCandidate | None,
        issues: AttemptIssues,
        warnings: list[str],
        decision_reason: str,
        repeated_signature: bool,
        max_repairs: int,
    ) -> RunResult:
        verified = selected.files
        changed = issues.effective_changed_files
        if not issues.has_issues:
            self._set_phase(RunPhase.FINALIZE, attempt)
            result = RunResult(
                phase=RunPhase.FINALIZE,
                files=dict(verified),
                kept_generated_files=True,
                changed_files=list(changed),
                applied_ops=update.applied_ops if changed else 0,
                warnings=warnings,
                decision_reason=decision_reason,
                alternative=runner_up,
                attempts=attempts,
                phases=list(self._phases),
                final_update=update,
            )
            self._emit_finished(result)
            return result

        failure_message = build_failure_report(
            update,
            issues,
            auto_fixes=selected.warnings,
            repeated_signature=repeated_signature,
            repair_limit_reached=attempt.repair_attempt >= max_repairs,
            max_repairs=max_repairs,
        )
        keep = issues.has_usable_edits or (not issues.has_hard_issues and issues.has_runtime_issues)
        phase = RunPhase.FINALIZE if keep else RunPhase.FAILED
        self._set_phase(phase, attempt)
        result = RunResult(
            phase=phase,
            files=dict(verified) if keep else dict(attempt.rollback_files),
            kept_generated_files=keep,
            changed_files=list(changed) if keep else [],
            applied_ops=update.applied_ops if keep and changed else 0,
            warnings=warnings,
            errors=list(update.failed_patches),
            decision_reason=decision_reason,
            failure_message=failure_message,
            repair_from_evidence_prompt=build_repair_from_evidence_prompt(request, issues.evidence()),
            alternative=runner_up,
            repeated_signature=repeated_signature,
            attempts=attempts,
            phases=list(self._phases),
            final_update=update,
        )
        self._emit_finished(result)
        return result

    @staticmethod
    def _emit_finished(result: RunResult) -> None:
        emit_event(
            "run.finished",
            phase=result.phase,
            kept_generated_files=result.kept_generated_files,
            changed_files=result.changed_files,
            applied_ops=result.applied_ops,
            attempts=len(result.attempts),
            failed=result.failure_message is not None,
        )


def build_failure_report(
    update: StreamUpdate,
    issues: AttemptIssues,
    *,
    auto_fixes: Sequence[str] = (),
    repeated_signature: bool = False,
    repair_limit_reached: bool = False,
    max_repairs: int = 0,
) -> str:
    """Operator-facing report listing each unresolved failure category."""
    blocks: list[str] = []
    if issues.violations:
        friendly = [NO_MARKER_FRIENDLY if "No marker blocks found" in item else item for item in issues.violations]
        blocks.append("Protocol:\n" + "\n".join(friendly))
    if issues.technicals:
        blocks.append("Patch:\n" + "\n".join(issues.technicals))
    if not issues.validation.valid:
        blocks.append("Validation:\n" + ", ".join(issues.validation.errors))
    if issues.runtime_errors:
        blocks.append("Runtime:\n" + "\n".join(issues.runtime_errors))
    if issues.no_effective_changes:
        blocks.append("No effective file changes were produced by the patch.")
    if issues.inline_no_op:
        blocks.append("Inline anchor miss: patch was detected but no anchor matched the target file.")
    if issues.low_confidence or issues.parser_hints:
        parser_block = f"Parser:\nconfidence={update.confidence:.2f} stage={update.parser_stage.value}"
        if issues.parser_hints:
            parser_block += "\n" + "\n".join(issues.parser_hints)
        blocks.append(parser_block)
    if repeated_signature:
        blocks.append("Auto-repair stopped due to repeated identical failure signature.")
    if auto_fixes:
        blocks.append("Local auto-fixes:\n" + "\n".join(auto_fixes))
    if repair_limit_reached:
        blocks.append(f"Auto-repair limit reached ({max_repairs}).")
    excerpt = make_excerpt(update.parsed_blocks_text or update.clean_model_text or update.raw_model_text)
    if excerpt:
        blocks.append(f"Model output excerpt:\n{excerpt}")
    return "Update failed.\n\n" + "\n\n".join(blocks)


__all__ = [
    "AttemptIssues",
    "CandidateScore",
    "EvaluatedCandidate",
    "INITIAL_PROJECT_FILES",
    "QualityMode",
    "RetryDecision",
    "RunAttempt",
    "RunOrchestrator",
    "RunPhase",
    "RunResult",
    "RuntimeProbe",
    "build_failure_report",
    "ensure_seed_workspace_files",
    "filter_candidate_pool",
    "is_initial_starter_project",
    "pick_best_candidate",
    "rank_candidates",
    "score_run_candidate",
    "select_candidate",
    "should_trigger_second_attempt",
]
