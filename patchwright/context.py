"""
PATCHWRIGHT Context Builder: what the model gets to see.

Deterministic: the same prompt against the same tree always produces the
same context. Discovery order:
  1. Paths named verbatim in the prompt
  2. Tracked code files containing prompt keywords, plus their 1-hop local imports
  3. Common entry points
  4. README / package manifests
Everything is capped at `max_chars` of file content.
"""

from __future__ import annotations

import posixpath
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

# ---------------------------------------------------------------------------
# Constants & Configuration
# ---------------------------------------------------------------------------

SKIP_DIRS = {
    ".git", ".patchwright", ".venv", "venv", "env",
    "node_modules", "target", "dist", "build", "__pycache__",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    ".next", ".nuxt", "coverage", ".cargo", "vendor",
}

CODE_EXTENSIONS = {
    ".rs", ".py", ".ts", ".tsx", ".js", ".jsx", ".go", ".java",
    ".c", ".cpp", ".h", ".hpp", ".md", ".html", ".css", ".json",
}

ENTRY_POINTS = [
    "index.js", "index.ts", "main.js", "main.ts", "app.js", "app.ts",
    "main.py", "app.py", "__main__.py",
    "src/index.js", "src/index.ts", "src/main.js", "src/main.ts",
    "src/App.tsx", "src/App.jsx", "src/main.py",
]

FALLBACK_FILES = ["README.md", "readme.md", "README", "README.txt", "package.json", "pyproject.toml"]

README_PATHS = ["README.md", "readme.md", "README"]

STOP_WORDS = {
    "the", "this", "that", "with", "from", "for", "and", "into", "should",
    "make", "please", "file", "change", "update", "add", "when",
}

MAX_KEYWORDS = 5

_PATH_TOKEN_RE = re.compile(r"[\w./-]+\.[A-Za-z0-9]+")
_KEYWORD_RE = re.compile(r"\b[a-z][a-z0-9_]{3,}\b")

_JS_IMPORT_RES = [
    re.compile(r"import\s+.*?from\s+['\"](.+?)['\"]"),
    re.compile(r"require\(['\"](.+?)['\"]\)"),
]
_PY_IMPORT_RE = re.compile(r"^\s*from\s+(\.+[\w.]*)\s+import", re.MULTILINE)


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------

@dataclass
class RepoContext:
    """Files chosen for the prompt, in discovery order."""
    root: str
    files: dict[str, str] = field(default_factory=dict)
    truncated: bool = False
    guidance: str = ""

    @property
    def total_size(self) -> int:
        return sum(len(content) for content in self.files.values())

    def to_prompt(self) -> str:
        parts = [f"--- {path} ---\n{content}" for path, content in sorted(self.files.items())]
        if self.truncated:
            parts.append("(context truncated: more files matched than fit)")
        if self.guidance:
            parts.append(self.guidance)
        return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Discovery helpers
# ---------------------------------------------------------------------------

def _tracked_files(repo_path: Path) -> list[str]:
    """Uses git ls-files so .gitignore is respected automatically."""
    try:
        raw = subprocess.check_output(
            ["git", "ls-files"], cwd=repo_path, text=True, stderr=subprocess.DEVNULL,
        ).splitlines()
    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.warning("[CONTEXT] git ls-files failed, falling back to manual walk.")
        raw = [p.relative_to(repo_path).as_posix() for p in repo_path.rglob("*") if p.is_file()]

    return sorted(
        path for path in raw
        if not any(part in SKIP_DIRS for part in path.split("/"))
    )


def extract_keywords(prompt: str) -> list[str]:
    words = []
    for word in _KEYWORD_RE.findall(prompt.lower()):
        if word not in STOP_WORDS and word not in words:
            words.append(word)
    return words[:MAX_KEYWORDS]


def _read(repo_path: Path, rel_path: str) -> str | None:
    full = repo_path / rel_path
    if not full.is_file():
        return None
    try:
        return full.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"[CONTEXT] Skipping {rel_path}: {e}")
        return None


def _local_imports(rel_path: str, content: str, tracked: set[str]) -> list[str]:
    """Resolve relative imports of one file to tracked paths."""
    base_dir = posixpath.dirname(rel_path)
    ext = posixpath.splitext(rel_path)[1]
    candidates: list[str] = []

    if ext in {".js", ".jsx", ".ts", ".tsx"}:
        for pattern in _JS_IMPORT_RES:
            for spec in pattern.findall(content):
                if not spec.startswith("."):
                    continue
                stem = posixpath.normpath(posixpath.join(base_dir, spec))
                candidates += [stem + suffix for suffix in ("", ".ts", ".tsx", ".js", ".jsx", "/index.ts", "/index.js")]
    elif ext == ".py":
        for spec in _PY_IMPORT_RE.findall(content):
            dots = len(spec) - len(spec.lstrip("."))
            module = spec[dots:].replace(".", "/")
            package = base_dir
            for _ in range(dots - 1):
                package = posixpath.dirname(package)
            stem = posixpath.join(package, module) if module else package
            candidates += [stem + ".py", posixpath.join(stem, "__init__.py")]

    resolved = []
    for candidate in candidates:
        if candidate in tracked and candidate not in resolved:
            resolved.append(candidate)
    return resolved


def readme_guidance(repo_path: Path, prompt: str) -> str:
    """Steer README edits toward a modify diff rather than a new file."""
    if "readme" not in prompt.lower():
        return ""
    for readme in README_PATHS:
        content = _read(repo_path, readme)
        if content is None:
            continue
        head = "\n".join(content.split("\n")[:60])
        return (
            "README FILE CONTEXT:\n"
            f"- Existing file: {readme}\n"
            f"- DO NOT create {readme}. It already exists.\n"
            "- Generate a MODIFY diff (not new file diff).\n"
            f'- Must start with "--- a/{readme}"\n\n'
            f"Current content (first 60 lines):\n{head}"
        )
    return ""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_context(repo_path: Path, prompt: str, max_chars: int = 50_000) -> RepoContext:
    """Collect the files most likely to matter for `prompt`."""
    repo_path = Path(repo_path).resolve()
    tracked = _tracked_files(repo_path)
    tracked_set = set(tracked)
    context = RepoContext(root=str(repo_path), guidance=readme_guidance(repo_path, prompt))

    named = [token for token in _PATH_TOKEN_RE.findall(prompt) if token in tracked_set]

    keywords = extract_keywords(prompt)
    matched: list[str] = []
    for rel_path in tracked:
        if posixpath.splitext(rel_path)[1] not in CODE_EXTENSIONS:
            continue
        content = _read(repo_path, rel_path)
        if content is None:
            continue
        lowered = content.lower()
        if any(keyword in lowered for keyword in keywords):
            matched.append(rel_path)

    discovered = list(dict.fromkeys(named + matched))
    if not discovered:
        discovered = [p for p in ENTRY_POINTS if p in tracked_set]
    if not discovered:
        discovered = [p for p in FALLBACK_FILES if (repo_path / p).is_file()]
    if not discovered:
        logger.warning(f"[CONTEXT] No files found in {repo_path}")

    queue = list(discovered)
    seen: set[str] = set()
    while queue:
        rel_path = queue.pop(0)
        if rel_path in seen:
            continue
        seen.add(rel_path)

        content = _read(repo_path, rel_path)
        if content is None:
            continue
        if context.total_size + len(content) > max_chars:
            context.truncated = True
            continue

        context.files[rel_path] = content
        # 1-hop only: imports of discovered files, not of their imports
        if rel_path in discovered:
            queue.extend(_local_imports(rel_path, content, tracked_set))

    logger.info(
        f"[CONTEXT] {len(context.files)} files, {context.total_size} chars"
        f"{' (truncated)' if context.truncated else ''} | keywords: {', '.join(keywords) or '-'}"
    )
    return context
