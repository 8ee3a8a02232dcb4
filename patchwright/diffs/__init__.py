"""
Unified diff handling.

Model output is untrusted text. Nothing downstream of the model reads it
except through `sanitize` and `validate`.
"""

from patchwright.diffs.apply_errors import extract_failed_files
from patchwright.diffs.blocks import DIFF_HEADER, NO_CHANGES, DiffFileBlock, parse_file_blocks
from patchwright.diffs.sanitizer import sanitize, sanitize_reason
from patchwright.diffs.sanity import check_against_worktree
from patchwright.diffs.validator import ValidationResult, validate

__all__ = [
    "DIFF_HEADER",
    "NO_CHANGES",
    "DiffFileBlock",
    "ValidationResult",
    "check_against_worktree",
    "extract_failed_files",
    "parse_file_blocks",
    "sanitize",
    "sanitize_reason",
    "validate",
]
