"""Scalar confidence for one parse pass."""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from .validator import StructuralValidator, validate_project

LOW_CONFIDENCE_THRESHOLD = 0.35

BASE_WEIGHT = 0.2
MARKER_WEIGHT = 0.15
MARKER_CAP = 3
APPLIED_WEIGHT = 0.2
TOUCHED_WEIGHT = 0.1
VALID_WEIGHT = 0.2
FALLBACK_PENALTY = 0.15
FAILED_PATCH_PENALTY = 0.35
INFERRED_PENALTY = 0.08
RAW_FULL_FILE_PENALTY = 0.1


def compute_parser_confidence(
    *,
    marker_count: int,
    applied_ops: int,
    touched_files: Sequence[str],
    failed_patches: Sequence[str],
    warnings: Iterable[str],
    used_fallback_stage: bool,
    files: Mapping[str, str],
    validator: StructuralValidator | None = None,
) -> float:
    """Combine independent parse evidence into a score clamped to ``[0, 1]``."""
    warning_list = list(warnings)
    score = BASE_WEIGHT
    score += min(marker_count, MARKER_CAP) * MARKER_WEIGHT
    if applied_ops > 0:
        score += APPLIED_WEIGHT
    if touched_files:
        score += TOUCHED_WEIGHT
    if validate_project(files, validator).valid:
        score += VALID_WEIGHT
    if used_fallback_stage:
        score -= FALLBACK_PENALTY
    if failed_patches:
        score -= FAILED_PATCH_PENALTY
    if any(warning.startswith("AUTO_INFER:") for warning in warning_list):
        score -= INFERRED_PENALTY
    if any("markerless raw App.tsx" in warning for warning in warning_list):
        score -= RAW_FULL_FILE_PENALTY
    return max(0.0, min(1.0, score))


def is_low_confidence(confidence: float) -> bool:
    return confidence < LOW_CONFIDENCE_THRESHOLD


__all__ = ["LOW_CONFIDENCE_THRESHOLD", "compute_parser_confidence", "is_low_confidence"]
