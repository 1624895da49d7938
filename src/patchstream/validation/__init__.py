"""Structural validation, preview preflight and parse confidence."""

from .confidence import LOW_CONFIDENCE_THRESHOLD, compute_parser_confidence, is_low_confidence
from .preflight import PreflightResult, run_preview_preflight
from .validator import (
    RegexStructuralValidator,
    StructuralValidator,
    ValidationResult,
    resolve_import_to_existing_file,
    resolve_path,
    validate_project,
)

__all__ = [
    "LOW_CONFIDENCE_THRESHOLD",
    "PreflightResult",
    "RegexStructuralValidator",
    "StructuralValidator",
    "ValidationResult",
    "compute_parser_confidence",
    "is_low_confidence",
    "resolve_import_to_existing_file",
    "resolve_path",
    "run_preview_preflight",
    "validate_project",
]
