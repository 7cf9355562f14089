"""Effective per-step behavior and the directive text wrapped around each task."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Union

from subagent_manager.agents import AgentDefinition, AgentRegistry
from subagent_manager.skills import normalize_skill_input
from subagent_manager.schemas import TaskItem

PROGRESS_FILE = "progress.md"

Disabled = Literal[False]


@dataclass(frozen=True, slots=True)
class StepOverrides:
    """Per-step settings; ``None`` means "not specified", ``False`` means disabled."""

    output: Union[str, Disabled, None] = None
    reads: Union[tuple[str, ...], Disabled, None] = None
    progress: bool | None = None
    skills: Union[tuple[str, ...], Disabled, None] = None

    @classmethod
    def from_item(cls, item: TaskItem) -> StepOverrides:
        skills = normalize_skill_input(item.skill)
        return cls(
            output=item.output,
            reads=tuple(item.reads) if isinstance(item.reads, list) else item.reads,
            progress=item.progress,
            skills=tuple(skills) if isinstance(skills, list) else skills,
        )


@dataclass(frozen=True, slots=True)
class ResolvedBehavior:
    output: Union[str, Disabled]
    reads: Union[tuple[str, ...], Disabled]
    progress: bool
    skills: Union[tuple[str, ...], Disabled]

    def skill_list(self) -> list[str]:
        return list(self.skills) if self.skills is not False else []


def _union(*groups: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(name for group in groups for name in group))


def resolve_step_behavior(
    agent: AgentDefinition,
    overrides: StepOverrides,
    chain_skills: Sequence[str] = (),
) -> ResolvedBehavior:
    """Merge overrides over agent defaults; skills are additive with ``chain_skills``."""
    if overrides.output is not None:
        output: Union[str, Disabled] = overrides.output
    else:
        output = agent.output or False

    if overrides.reads is not None:
        reads: Union[tuple[str, ...], Disabled] = overrides.reads
    else:
        reads = agent.default_reads or False

    if overrides.progress is not None:
        progress = overrides.progress
    else:
        progress = bool(agent.default_progress)

    if overrides.skills is False:
        skills: Union[tuple[str, ...], Disabled] = False
    elif overrides.skills is not None:
        skills = _union(overrides.skills, chain_skills)
    else:
        skills = _union(agent.skills or (), chain_skills)

    return ResolvedBehavior(output=output, reads=reads, progress=progress, skills=skills)


def parallel_task_dir(step_index: int, task_index: int, agent: str) -> str:
    """Namespaced subdirectory (relative to the chain dir) for one parallel item."""
    return f"parallel-{step_index}/{task_index}-{agent}"


def resolve_parallel_behaviors(
    items: Sequence[TaskItem],
    registry: AgentRegistry,
    step_index: int,
    chain_skills: Sequence[str] = (),
) -> list[ResolvedBehavior]:
    """Resolve each item's behavior, namespacing relative outputs under its subdirectory."""
    behaviors: list[ResolvedBehavior] = []
    for task_index, item in enumerate(items):
        agent = registry.require(item.agent)
        behavior = resolve_step_behavior(agent, StepOverrides.from_item(item), chain_skills)
        output = behavior.output
        if output is not False and not Path(output).is_absolute():
            output = f"{parallel_task_dir(step_index, task_index, item.agent)}/{output}"
        behaviors.append(
            ResolvedBehavior(output=output, reads=behavior.reads, progress=behavior.progress, skills=behavior.skills)
        )
    return behaviors


def resolve_chain_path(chain_dir: Path | str, path: str) -> str:
    if Path(path).is_absolute():
        return path
    return f"{chain_dir}/{path}"


@dataclass(frozen=True, slots=True)
class ChainInstructions:
    prefix: str = ""
    suffix: str = ""

    def wrap(self, task: str) -> str:
        return f"{self.prefix}{task}{self.suffix}"


def build_chain_instructions(
    behavior: ResolvedBehavior,
    chain_dir: Path | str,
    *,
    is_first_progress: bool,
    previous_summary: str | None = None,
) -> ChainInstructions:
    """Build directive text: read/write before the task, progress and prior output after."""
    prefix_parts: list[str] = []
    if behavior.reads:
        files = ", ".join(resolve_chain_path(chain_dir, name) for name in behavior.reads)
        prefix_parts.append(f"[Read from: {files}]")
    if behavior.output:
        prefix_parts.append(f"[Write to: {resolve_chain_path(chain_dir, behavior.output)}]")
    prefix = "\n".join(prefix_parts) + "\n\n" if prefix_parts else ""

    suffix_parts: list[str] = []
    if behavior.progress:
        progress_path = f"{chain_dir}/{PROGRESS_FILE}"
        if is_first_progress:
            suffix_parts.append(f"Create and maintain progress at: {progress_path}")
        else:
            suffix_parts.append(f"Update progress at: {progress_path}")
    if previous_summary and previous_summary.strip():
        suffix_parts.append(f"Previous step output:\n{previous_summary.strip()}")
    suffix = "\n\n---\n" + "\n".join(suffix_parts) if suffix_parts else ""

    return ChainInstructions(prefix=prefix, suffix=suffix)
