"""Per-step task templates and placeholder substitution."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from subagent_manager.schemas import ParallelStep, SequentialStep

TASK_PLACEHOLDER = "{task}"
PREVIOUS_PLACEHOLDER = "{previous}"
CHAIN_DIR_PLACEHOLDER = "{chain_dir}"


def resolve_chain_templates(steps: Sequence[SequentialStep | ParallelStep]) -> list[str | list[str]]:
    """Return one template per sequential step and one list per parallel step.

    Explicit tasks are used verbatim. Otherwise the first unit of the chain
    defaults to ``{task}`` and every later unit to ``{previous}``.
    """
    templates: list[str | list[str]] = []
    first_unit = True
    for step in steps:
        if isinstance(step, ParallelStep):
            item_templates: list[str] = []
            for item in step.items:
                item_templates.append(item.task or (TASK_PLACEHOLDER if first_unit else PREVIOUS_PLACEHOLDER))
                first_unit = False
            templates.append(item_templates)
        else:
            templates.append(step.task or (TASK_PLACEHOLDER if first_unit else PREVIOUS_PLACEHOLDER))
            first_unit = False
    return templates


def substitute(template: str, *, task: str, previous: str, chain_dir: Path | str) -> str:
    return (
        template.replace(TASK_PLACEHOLDER, task)
        .replace(PREVIOUS_PLACEHOLDER, previous)
        .replace(CHAIN_DIR_PLACEHOLDER, str(chain_dir))
    )


def original_task(steps: Sequence[SequentialStep | ParallelStep]) -> str:
    """The chain's top-level task: the first unit's explicit task."""
    if not steps:
        return ""
    first = steps[0]
    if isinstance(first, ParallelStep):
        return (first.items[0].task or "") if first.items else ""
    return first.task or ""
