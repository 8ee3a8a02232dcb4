"""
Configuration loader for PATCHWRIGHT.
Merges built-in defaults with <home>/config.yaml overrides and
PATCHWRIGHT_* environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    implementer: str = "anthropic/claude-sonnet-4-5-20250929"
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout_seconds: float = 120


class LimitsConfig(BaseModel):
    max_diff_attempts: int = 3
    max_consecutive_diff_failures: int = 3
    max_apply_failures: int = 3
    fallback_after_apply_failures: int = 2
    max_iterations: int = 6
    max_diff_lines: int = 5000
    max_context_chars: int = 50_000
    max_tokens_per_task: int = 400_000
    max_dollars_per_task: float = 10.0
    rate_limit_retries: int = 2
    rollback_on_cancel: bool = False


class WorkspaceConfig(BaseModel):
    home: str = "~/.patchwright"
    repos_dir: str = "repos"
    worktrees_dir: str = "worktrees"
    db_path: str = "patchwright.db"
    log_dir: str = "logs"
    git_timeout_seconds: float = 60
    force_reset_branches: bool = True
    author_name: str = "PATCHWRIGHT Bot"
    author_email: str = "patchwright@localhost"

    @property
    def home_path(self) -> Path:
        return Path(self.home).expanduser()

    def resolve(self, value: str) -> Path:
        """Resolve a path setting relative to the home directory."""
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.home_path / path

    @property
    def repos_path(self) -> Path:
        return self.resolve(self.repos_dir)

    @property
    def worktrees_path(self) -> Path:
        return self.resolve(self.worktrees_dir)

    @property
    def database_path(self) -> Path:
        return self.resolve(self.db_path)

    @property
    def log_path(self) -> Path:
        return self.resolve(self.log_dir)


class PreflightConfig(BaseModel):
    lint: str | None = None
    typecheck: str | None = None
    test: str | None = None
    smoke: str | None = None
    timeout_seconds: float = 300


class PublishConfig(BaseModel):
    title_prefix: str = "PATCHWRIGHT"
    title_max_chars: int = 60
    push: bool = True


class PatchwrightConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    preflight: PreflightConfig = Field(default_factory=PreflightConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var → (section, key)
_ENV_OVERRIDES = {
    "PATCHWRIGHT_HOME": ("workspace", "home"),
    "PATCHWRIGHT_DB_PATH": ("workspace", "db_path"),
    "PATCHWRIGHT_REPOS_DIR": ("workspace", "repos_dir"),
    "PATCHWRIGHT_MODEL": ("routing", "implementer"),
    "PATCHWRIGHT_MAX_ITERATIONS": ("limits", "max_iterations"),
    "PATCHWRIGHT_MAX_APPLY_FAILURES": ("limits", "max_apply_failures"),
    "PATCHWRIGHT_LINT_COMMAND": ("preflight", "lint"),
    "PATCHWRIGHT_TYPECHECK_COMMAND": ("preflight", "typecheck"),
    "PATCHWRIGHT_TEST_COMMAND": ("preflight", "test"),
    "PATCHWRIGHT_SMOKE_COMMAND": ("preflight", "smoke"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is not None and value.strip():
            overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> PatchwrightConfig:
    """
    Load config by merging:
      1. Built-in defaults (patchwright/config.yaml)
      2. Installation overrides (<home>/config.yaml, or an explicit path)
      3. PATCHWRIGHT_* environment variables
    """
    environ = dict(os.environ) if environ is None else environ

    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Installation overrides
    if config_path is None:
        home = environ.get("PATCHWRIGHT_HOME") or base.get("workspace", {}).get("home", "~/.patchwright")
        config_path = Path(home).expanduser() / "config.yaml"
    if config_path.exists():
        with open(config_path, "r") as f:
            overrides: dict[str, Any] = yaml.safe_load(f) or {}
        base = _deep_merge(base, overrides)

    # 3. Environment
    base = _deep_merge(base, _env_overrides(environ))

    return PatchwrightConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which provider and code-hosting credentials are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
        "GH_TOKEN":          bool(os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")),
    }
