"""Up-front chain validation; nothing is spawned for a chain that fails these checks."""

from __future__ import annotations

from collections.abc import Sequence

from subagent_manager.agents import AgentRegistry
from subagent_manager.errors import ChainValidationError, UnknownAgentError
from subagent_manager.schemas import ParallelStep, SequentialStep


def validate_chain(steps: Sequence[SequentialStep | ParallelStep], registry: AgentRegistry) -> None:
    if not steps:
        raise ChainValidationError("Chain must have at least one step")

    first = steps[0]
    if isinstance(first, ParallelStep):
        for index, item in enumerate(first.items):
            if not item.task:
                raise ChainValidationError(
                    f"First parallel step: task {index + 1} must have a task (no previous output to reference)"
                )
    elif not first.task:
        raise ChainValidationError("First step in chain must have a task")

    for step_index, step in enumerate(steps):
        items = step.items if isinstance(step, ParallelStep) else [step]
        for item in items:
            if item.agent not in registry:
                raise UnknownAgentError(item.agent, registry.names(), step=step_index + 1)
        if isinstance(step, ParallelStep) and not step.items:
            raise ChainValidationError(f"Parallel step {step_index + 1} must have at least one task")


def validate_async_chain(steps: Sequence[SequentialStep | ParallelStep]) -> None:
    if any(isinstance(step, ParallelStep) for step in steps):
        raise ChainValidationError(
            "Async mode doesn't support chains with parallel steps. Run the chain synchronously instead."
        )
