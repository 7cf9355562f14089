"""Human-readable formatting for usage, durations, tool calls, and chain summaries."""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Literal

from subagent_manager.schemas import ParallelStep, RunResult, SequentialStep, Usage


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 10000:
        return f"{count / 1000:.1f}k"
    return f"{round(count / 1000)}k"


def format_usage(usage: Usage, model: str | None = None) -> str:
    parts: list[str] = []
    if usage.turns:
        parts.append(f"{usage.turns} turn{'s' if usage.turns > 1 else ''}")
    if usage.input:
        parts.append(f"in:{format_tokens(usage.input)}")
    if usage.output:
        parts.append(f"out:{format_tokens(usage.output)}")
    if usage.cache_read:
        parts.append(f"R{format_tokens(usage.cache_read)}")
    if usage.cache_write:
        parts.append(f"W{format_tokens(usage.cache_write)}")
    if usage.cost:
        parts.append(f"${usage.cost:.4f}")
    if model:
        parts.append(model)
    return " ".join(parts)


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms // 60000}m{(ms % 60000) // 1000}s"


def shorten_path(path: str) -> str:
    """Replace a leading home directory with ``~``."""
    home = os.environ.get("HOME", "")
    if home and path.startswith(home):
        return f"~{path[len(home):]}"
    return path


def format_tool_call(name: str, args: dict[str, Any]) -> str:
    if name == "bash":
        command = str(args.get("command") or "")
        return f"$ {command[:60]}{'...' if len(command) > 60 else ''}"
    if name in ("read", "write", "edit"):
        return f"{name} {shorten_path(str(args.get('path') or args.get('file_path') or ''))}"
    encoded = json.dumps(args)
    return f"{name} {encoded[:40]}{'...' if len(encoded) > 40 else ''}"


def step_label(step: SequentialStep | ParallelStep) -> str:
    if isinstance(step, ParallelStep):
        return f"parallel[{len(step.items)}]"
    return step.agent


def build_chain_summary(
    steps: Sequence[SequentialStep | ParallelStep],
    results: Sequence[RunResult],
    chain_dir: Path,
    status: Literal["completed", "failed"],
    failed_step: tuple[int, str] | None = None,
) -> str:
    """Summarize a finished chain: step list, duration, skills, and where its files live."""
    names = " -> ".join(step_label(step) for step in steps)
    duration = format_duration(sum(result.duration_ms for result in results))
    progress_path = chain_dir / "progress.md"
    skills: dict[str, None] = {}
    for result in results:
        for skill in result.skills or ():
            skills.setdefault(skill)
    skills_line = f"\nSkills: {', '.join(skills)}" if skills else ""

    if status == "completed":
        noun = "step" if len(results) == 1 else "steps"
        head = f"Chain completed: {names} ({len(results)} {noun}, {duration})"
    else:
        where = f" at step {failed_step[0] + 1}" if failed_step else ""
        error = f": {failed_step[1]}" if failed_step and failed_step[1] else ""
        head = f"Chain failed{where}{error}"
    progress = str(progress_path) if progress_path.exists() else "(none)"
    return f"{head}{skills_line}\n\nProgress: {progress}\nArtifacts: {chain_dir}"
