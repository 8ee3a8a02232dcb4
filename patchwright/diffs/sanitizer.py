"""
Diff sanitizer: recover a unified diff from conversational model output.

Models like to wrap diffs in prose and markdown fences. The sanitizer
cuts everything before the first `diff --git` header, drops a closing
fence and whatever follows it, and refuses outright when the wrapping
is mixed into the diff body itself.
"""

from __future__ import annotations

import re

from patchwright.diffs.blocks import DIFF_HEADER

_HEADER_LINE_RE = re.compile(r"^diff --git ", re.MULTILINE)

_COMMENTARY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^Here's",
        r"^Here is",
        r"^Sure",
        r"^I'll",
        r"^Let me",
        r"^I've",
        r"^I have",
        r"^This (diff|patch|change)",
        r"^The (diff|patch|change)",
        r"^Below is",
        r"^Above is",
    )
]

# Lines that may legitimately appear inside a diff body.
_DIFF_LINE_PREFIXES = (
    "+", "-", " ", "\\", "@@", DIFF_HEADER,
    "index ", "new file mode", "deleted file mode", "old mode", "new mode",
    "similarity index", "rename from", "rename to", "copy from", "copy to",
    "Binary files",
)


def _is_commentary(line: str) -> bool:
    stripped = line.strip()
    return any(p.match(stripped) for p in _COMMENTARY_PATTERNS)


def _is_fence(line: str) -> bool:
    # Indented backticks are hunk context (" ```bash" in a Markdown file).
    return line.startswith("```")


def _sanitize(raw: str) -> tuple[str | None, str | None]:
    text = raw.replace("\r\n", "\n")

    match = _HEADER_LINE_RE.search(text)
    if match is None:
        return None, "no diff --git header found in model output"

    lines = text[match.start():].split("\n")

    # A fence after the header closes the diff; only prose may follow it.
    fence_at = next((i for i, line in enumerate(lines) if _is_fence(line)), None)
    if fence_at is not None:
        tail = lines[fence_at + 1:]
        if any(line.startswith(DIFF_HEADER) or line.startswith("@@") for line in tail):
            return None, "markdown code fence inside the diff body"
        if tail and tail[0] and tail[0].startswith(_DIFF_LINE_PREFIXES):
            return None, f"markdown code fence inside the diff body at {lines[fence_at]!r}"
        lines = lines[:fence_at]

    # Trailing prose without a fence ("Hope this helps!").
    while lines and not lines[-1].startswith(_DIFF_LINE_PREFIXES):
        lines.pop()

    for line in lines:
        if line and not line.startswith(_DIFF_LINE_PREFIXES) and _is_commentary(line):
            return None, f"commentary mixed into diff body: {line.strip()[:60]!r}"

    return "\n".join(lines) + "\n", None


def sanitize(raw: str) -> str | None:
    """Extract the diff from raw model output.

    Returns the text from the first `diff --git` header on, with a trailing
    fence and any trailing prose removed, ending in exactly one newline.
    Returns None when no header exists or the wrapping cannot be separated
    from the diff.
    """
    return _sanitize(raw)[0]


def sanitize_reason(raw: str) -> str | None:
    """Why `sanitize(raw)` returned None, or None if it succeeded."""
    return _sanitize(raw)[1]
