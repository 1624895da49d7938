"""File-set helpers shared by the parser and the run orchestrator."""

from .assets import ASSET_PREFIX, asset_placeholder, is_asset_filename, is_encoded_asset, split_protocol_files
from .sanitize import SanitizeResult, sanitize_generated_files
from .transaction import TransactionResult, files_equal, get_changed_files_between, run_patch_transaction

__all__ = [
    "ASSET_PREFIX",
    "SanitizeResult",
    "TransactionResult",
    "asset_placeholder",
    "files_equal",
    "get_changed_files_between",
    "is_asset_filename",
    "is_encoded_asset",
    "run_patch_transaction",
    "sanitize_generated_files",
    "split_protocol_files",
]
