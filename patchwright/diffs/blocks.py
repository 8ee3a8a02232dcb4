"""File-block parsing shared by the validator and the pre-apply checks."""

from __future__ import annotations

import re
from dataclasses import dataclass

NO_CHANGES = "NO_CHANGES"

DIFF_HEADER = "diff --git "

_HEADER_RE = re.compile(r"^diff --git a/(.+) b/(.+)$")
HUNK_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@")


@dataclass
class DiffFileBlock:
    """One `diff --git` section of a unified diff."""
    old_path: str
    new_path: str
    line_number: int
    has_old_header: bool = False
    has_new_header: bool = False
    hunk_count: int = 0
    is_new_file: bool = False
    is_deleted_file: bool = False

    @property
    def path(self) -> str:
        return self.new_path


def parse_file_blocks(text: str) -> list[DiffFileBlock]:
    """Split a diff into its file blocks, recording which headers each one has."""
    blocks: list[DiffFileBlock] = []
    current: DiffFileBlock | None = None

    for number, line in enumerate(text.split("\n"), start=1):
        if line.startswith(DIFF_HEADER):
            match = _HEADER_RE.match(line)
            old_path, new_path = (match.group(1), match.group(2)) if match else ("unknown", "unknown")
            current = DiffFileBlock(old_path=old_path, new_path=new_path, line_number=number)
            blocks.append(current)
            continue

        if current is None:
            continue

        # Once a hunk has started, "---" and "+++" are body lines, not headers.
        if current.hunk_count and not HUNK_RE.match(line):
            continue

        if line.startswith("new file mode "):
            current.is_new_file = True
        elif line.startswith("deleted file mode "):
            current.is_deleted_file = True
        elif line.startswith("--- "):
            current.has_old_header = True
            if line.startswith("--- /dev/null"):
                current.is_new_file = True
        elif line.startswith("+++ "):
            current.has_new_header = True
            if line.startswith("+++ /dev/null"):
                current.is_deleted_file = True
        elif HUNK_RE.match(line):
            current.hunk_count += 1

    return blocks
