"""
Preflight: external checks run after a patch applies.

Up to four configured stages (lint → typecheck → test → smoke), run in the
task's worktree, fail-fast. No configured stages is a skipped success.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from loguru import logger

from patchwright.config_loader import PreflightConfig

STAGE_ORDER = ("lint", "typecheck", "test", "smoke")

OUTPUT_TAIL_CHARS = 3000


@dataclass
class StageResult:
    name: str
    ok: bool
    output: str = ""
    error: str = ""


@dataclass
class PreflightResult:
    success: bool
    stage: str  # failing stage, "all", or "skipped"
    stages: list[StageResult] = field(default_factory=list)

    @property
    def failure(self) -> StageResult | None:
        return next((s for s in self.stages if not s.ok), None)

    def summary(self) -> str:
        if self.stage == "skipped":
            return "No preflight checks configured"
        lines = [f"- {s.name}: {'passed' if s.ok else 'FAILED (' + s.error + ')'}" for s in self.stages]
        return "\n".join(lines)


def configured_stages(config: PreflightConfig) -> list[tuple[str, str]]:
    stages = []
    for name in STAGE_ORDER:
        command = getattr(config, name)
        if command and command.strip():
            stages.append((name, command))
    return stages


def run_preflight(
    worktree: Path,
    config: PreflightConfig,
    on_progress: Callable[[str, str], None] | None = None,
) -> PreflightResult:
    """Run configured stages in order, stopping at the first failure."""
    progress = on_progress or (lambda stage, message: None)
    stages = configured_stages(config)

    if not stages:
        progress("preflight", "No preflight checks configured - skipping")
        return PreflightResult(success=True, stage="skipped")

    results: list[StageResult] = []
    for name, command in stages:
        progress(name, f"Starting {name} check: {command}")
        try:
            proc = subprocess.run(
                command, shell=True, cwd=worktree, capture_output=True, text=True,
                timeout=config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            output = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
            results.append(StageResult(name, ok=False, output=output[-OUTPUT_TAIL_CHARS:],
                                       error=f"Timeout after {config.timeout_seconds}s"))
            progress(name, f"{name} failed: timeout")
            return PreflightResult(success=False, stage=name, stages=results)

        output = (proc.stdout + proc.stderr)[-OUTPUT_TAIL_CHARS:]
        if proc.returncode != 0:
            results.append(StageResult(name, ok=False, output=output, error=f"Exit code {proc.returncode}"))
            progress(name, f"{name} failed: exit code {proc.returncode}")
            logger.warning(f"[PREFLIGHT] {name} failed in {worktree}")
            return PreflightResult(success=False, stage=name, stages=results)

        results.append(StageResult(name, ok=True, output=output))
        progress(name, f"{name} passed")

    return PreflightResult(success=True, stage="all", stages=results)
