"""Chain execution: templates, behavior resolution, scratch directories, and orchestration.

Usage::

    from subagent_manager.chain import ChainOrchestrator, ChainRunOptions

    orchestrator = ChainOrchestrator(executor, registry, settings)
    outcome = await orchestrator.run(steps, ChainRunOptions(cwd=Path.cwd()))
"""

from subagent_manager.chain.behavior import (
    ResolvedBehavior,
    StepOverrides,
    build_chain_instructions,
    resolve_parallel_behaviors,
    resolve_step_behavior,
)
from subagent_manager.chain.orchestrator import ChainHooks, ChainOrchestrator, ChainOutcome, ChainRunOptions
from subagent_manager.chain.scratch import ChainScratch, cleanup_old_chain_dirs
from subagent_manager.chain.templates import resolve_chain_templates, substitute
from subagent_manager.chain.validation import validate_async_chain, validate_chain

__all__ = [
    "ChainHooks",
    "ChainOrchestrator",
    "ChainOutcome",
    "ChainRunOptions",
    "ChainScratch",
    "ResolvedBehavior",
    "StepOverrides",
    "build_chain_instructions",
    "cleanup_old_chain_dirs",
    "resolve_chain_templates",
    "resolve_parallel_behaviors",
    "resolve_step_behavior",
    "substitute",
    "validate_async_chain",
    "validate_chain",
]
