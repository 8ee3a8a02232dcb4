"""
Reading `git apply` failures.

git names the files whose hunks did not match in two forms:

    error: patch failed: src/app.py:12
    error: src/app.py: patch does not apply
"""

from __future__ import annotations

import re

_FAILED_FILE_PATTERNS = (
    re.compile(r"error: patch failed: ([^:]+):"),
    re.compile(r"error: ([^:]+): patch does not apply"),
)


def extract_failed_files(error: str) -> list[str]:
    """Files named in `git apply` stderr, in first-seen order, without duplicates."""
    files: list[str] = []
    for pattern in _FAILED_FILE_PATTERNS:
        for match in pattern.finditer(error):
            path = match.group(1).strip()
            if path and path not in files:
                files.append(path)
    return files
