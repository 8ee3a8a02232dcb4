"""Pre-apply checks that compare a valid diff against the working copy."""

from __future__ import annotations

from pathlib import Path

from patchwright.diffs.blocks import parse_file_blocks

DELETION_KEYWORDS = (
    "delete",
    "remove",
    "drop",
    "eliminate",
    "get rid of",
    "take out",
    "rm ",
    "unlink",
)


def _wants_deletion(prompt: str) -> bool:
    lowered = prompt.lower()
    return any(keyword in lowered for keyword in DELETION_KEYWORDS)


def check_against_worktree(diff: str, worktree: Path, prompt: str) -> list[str]:
    """
    Reject file creations and deletions that cannot be what the user meant.

    Returns one reason per offending file block; an empty list means the
    diff may be handed to `git apply`.
    """
    reasons: list[str] = []
    worktree = Path(worktree)

    for block in parse_file_blocks(diff):
        exists = (worktree / block.path).exists()

        if block.is_new_file and exists:
            reasons.append(
                f"Rejecting diff: attempted to create existing file '{block.path}' "
                f"(line {block.line_number}). Modify the existing file instead of creating it."
            )

        if block.is_deleted_file:
            if not exists:
                reasons.append(
                    f"Rejecting diff: attempted to delete '{block.path}' "
                    f"(line {block.line_number}), but the file does not exist in the worktree."
                )
            elif not _wants_deletion(prompt):
                reasons.append(
                    f"Rejecting diff: attempted to delete file '{block.path}' "
                    f"(line {block.line_number}), but the request did not ask for deletion. "
                    "Do not delete files unless explicitly requested."
                )

    return reasons
