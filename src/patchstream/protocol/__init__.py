"""Edit-protocol parsing: normalisation, markers, anchors, patching and fallbacks."""

from .anchors import AnchorMatch, AnchorTier, locate_anchor
from .engine import PatchResult, apply_operations, apply_patches
from .extractor import Marker, MarkerKind, OperationType, PatchOperation, extract_operations, find_markers
from .fallback import FallbackCandidate, run_fallback_chain, run_inline_rescue
from .normalizer import NormalizedText, normalize_model_text
from .parser import AttemptType, ParseMode, ParserStage, ParserStats, StreamUpdate, parse_response

__all__ = [
    "AnchorMatch",
    "AnchorTier",
    "AttemptType",
    "FallbackCandidate",
    "Marker",
    "MarkerKind",
    "NormalizedText",
    "OperationType",
    "ParseMode",
    "ParserStage",
    "ParserStats",
    "PatchOperation",
    "PatchResult",
    "StreamUpdate",
    "apply_operations",
    "apply_patches",
    "extract_operations",
    "find_markers",
    "locate_anchor",
    "normalize_model_text",
    "parse_response",
    "run_fallback_chain",
    "run_inline_rescue",
]
