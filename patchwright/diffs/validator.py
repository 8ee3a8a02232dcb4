"""
Structural validation of unified diffs.

Pure and deterministic: no filesystem, no network. Every structural
problem found is reported, so one retry prompt can fix all of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from patchwright.diffs.blocks import DIFF_HEADER, HUNK_RE, parse_file_blocks

DEFAULT_MAX_LINES = 5000

_HUNK_LINE_PREFIXES = ("+", "-", " ", "\\")


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reasons: list[str] = field(default_factory=list)

    def describe(self) -> str:
        return "; ".join(self.reasons)


def validate(text: str, max_lines: int = DEFAULT_MAX_LINES) -> ValidationResult:
    """Decide whether `text` is a well-formed unified diff.

    The NO_CHANGES sentinel is not a diff and is never passed here; callers
    special-case it first.

    Args:
        text: Candidate diff, normally the output of `sanitize`.
        max_lines: Hard cap on diff size.

    Returns:
        ValidationResult: `ok` plus every reason the diff was rejected.
    """
    lines = text.split("\n")
    reasons: list[str] = []

    if len(lines) > max_lines:
        reasons.append(f"Diff exceeds maximum size: {len(lines)} lines > {max_lines} lines")

    first_header = next((i for i, line in enumerate(lines) if line.startswith(DIFF_HEADER)), None)
    if first_header is None:
        reasons.append("Missing unified diff header (diff --git)")
    elif any(line.strip() for line in lines[:first_header]):
        reasons.append("Diff contains content before the first diff --git header")

    blocks = parse_file_blocks(text)
    for block in blocks:
        where = f"File block '{block.path}' (line {block.line_number})"
        if not block.has_old_header:
            reasons.append(f"{where} is missing --- header")
        if not block.has_new_header:
            reasons.append(f"{where} is missing +++ header")
        if block.hunk_count == 0:
            reasons.append(f"{where} is missing @@ hunk marker")

    if first_header is None and not any(HUNK_RE.match(line) for line in lines):
        reasons.append("Missing hunk markers (@@)")

    if any(line.startswith("```") for line in lines):
        reasons.append("Diff contains code blocks or markdown formatting")

    bad_line = _first_invalid_hunk_line(lines)
    if bad_line is not None:
        number, line = bad_line
        reasons.append(
            f"Invalid diff line at {number}: lines in hunks must start with +, -, space, or \\. "
            f'Found: "{line[:50]}"'
        )

    return ValidationResult(ok=not reasons, reasons=reasons)


def _first_invalid_hunk_line(lines: list[str]) -> tuple[int, str] | None:
    in_hunk = False
    for number, line in enumerate(lines, start=1):
        if line.startswith(DIFF_HEADER):
            in_hunk = False
            continue
        if line.startswith("@@"):
            in_hunk = True
            continue
        if in_hunk and line and not line.startswith(_HUNK_LINE_PREFIXES):
            return number, line
    return None
