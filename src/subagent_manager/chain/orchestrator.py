"""Chain orchestration: drive sequential and parallel steps through the single-run executor."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol

from subagent_manager.agents import AgentRegistry
from subagent_manager.chain.behavior import (
    ResolvedBehavior,
    StepOverrides,
    build_chain_instructions,
    resolve_parallel_behaviors,
    resolve_step_behavior,
)
from subagent_manager.chain.scratch import ChainScratch, aggregate_parallel_outputs
from subagent_manager.chain.templates import (
    PREVIOUS_PLACEHOLDER,
    original_task,
    resolve_chain_templates,
    substitute,
)
from subagent_manager.chain.validation import validate_chain
from subagent_manager.concurrency import map_concurrent
from subagent_manager.config import Settings
from subagent_manager.executor import ProgressSink, ProgressUpdate, RunOptions
from subagent_manager.formatters import build_chain_summary, step_label
from subagent_manager.messages import get_final_output
from subagent_manager.schemas import (
    CANCELLED_ERROR,
    AgentProgress,
    ArtifactConfig,
    ArtifactSummary,
    MaxOutputConfig,
    ParallelStep,
    RunDetails,
    RunResult,
    SequentialStep,
    TaskItem,
    ToolResponse,
)

logger = logging.getLogger(__name__)

Step = SequentialStep | ParallelStep


class AgentRunner(Protocol):
    async def run(self, agent_name: str, task: str, options: RunOptions | None = None) -> RunResult: ...


@dataclass(slots=True)
class ChainHooks:
    """Optional callbacks fired around each step (used by the async runner)."""

    on_step_start: Callable[[int, Step], None] | None = None
    on_step_end: Callable[[int, list[RunResult]], None] | None = None


@dataclass(slots=True)
class ChainRunOptions:
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    cwd: Path | None = None
    signal: asyncio.Event | None = None
    on_update: ProgressSink | None = None
    chain_skills: tuple[str, ...] = ()
    artifacts_dir: Path | None = None
    artifact_config: ArtifactConfig | None = None
    session_dir_for_index: Callable[[int], Path | None] | None = None
    share: bool = False
    max_output: MaxOutputConfig | None = None
    include_progress: bool = False
    output_log: Path | None = None
    hooks: ChainHooks | None = None


@dataclass(slots=True)
class ChainOutcome:
    status: Literal["completed", "failed"]
    summary: str
    results: list[RunResult]
    chain_dir: Path
    chain_agents: list[str]
    failed_step: int | None = None
    error: str | None = None
    final_output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    @property
    def cancelled(self) -> bool:
        return any(result.cancelled for result in self.results) or self.error == CANCELLED_ERROR

    def to_response(self, *, include_progress: bool = False, artifacts_dir: Path | None = None) -> ToolResponse:
        details = RunDetails(
            mode="chain",
            results=self.results,
            chain_agents=self.chain_agents,
            total_steps=len(self.chain_agents),
        )
        if include_progress:
            details.progress = [result.progress for result in self.results if result.progress is not None]
        if artifacts_dir is not None:
            details.artifacts = ArtifactSummary(
                dir=str(artifacts_dir),
                files=[result.artifact_paths for result in self.results if result.artifact_paths is not None],
            )
        return ToolResponse(text=self.summary, details=details, is_error=not self.succeeded)


class _StepFailed(Exception):
    def __init__(self, step_index: int, error: str) -> None:
        super().__init__(error)
        self.step_index = step_index
        self.error = error


class ChainOrchestrator:
    """Runs a validated chain: ``NotStarted -> (StepRunning)* -> Completed | Failed``."""

    def __init__(self, executor: AgentRunner, registry: AgentRegistry, settings: Settings) -> None:
        self.executor = executor
        self.registry = registry
        self.settings = settings

    async def run(self, steps: Sequence[Step], options: ChainRunOptions | None = None) -> ChainOutcome:
        """Execute ``steps`` in order; raises ``ChainValidationError`` before spawning anything."""
        validate_chain(steps, self.registry)
        options = options or ChainRunOptions()
        scratch = ChainScratch.create(self.settings.chain_runs_dir, options.run_id)
        logger.info("Starting chain %s (%d step(s)) in %s", options.run_id, len(steps), scratch.path)
        return await _ChainRun(self, list(steps), options, scratch).execute()


class _ChainRun:
    """Mutable state of one chain execution."""

    def __init__(
        self,
        orchestrator: ChainOrchestrator,
        steps: list[Step],
        options: ChainRunOptions,
        scratch: ChainScratch,
    ) -> None:
        self.executor = orchestrator.executor
        self.registry = orchestrator.registry
        self.settings = orchestrator.settings
        self.steps = steps
        self.options = options
        self.scratch = scratch
        self.templates = resolve_chain_templates(steps)
        self.task = original_task(steps)
        self.chain_agents = [step_label(step) for step in steps]
        self.results: list[RunResult] = []
        self.progress_created = False
        self.next_index = 0
        self._live: list[RunResult | None] = []
        self._live_step = -1

    async def execute(self) -> ChainOutcome:
        previous = ""
        hooks = self.options.hooks or ChainHooks()
        try:
            for step_index, step in enumerate(self.steps):
                if self.options.signal is not None and self.options.signal.is_set():
                    raise _StepFailed(step_index, CANCELLED_ERROR)
                if hooks.on_step_start is not None:
                    hooks.on_step_start(step_index, step)
                if isinstance(step, ParallelStep):
                    step_results, previous = await self._run_parallel(step_index, step, previous)
                else:
                    result = await self._run_sequential(step_index, step, previous)
                    step_results = [result]
                    previous = get_final_output(result.messages)
                if hooks.on_step_end is not None:
                    hooks.on_step_end(step_index, step_results)
                self._raise_if_failed(step_index, step, step_results)
        except _StepFailed as failure:
            logger.warning("Chain %s failed at step %d: %s", self.options.run_id, failure.step_index + 1, failure.error)
            return ChainOutcome(
                status="failed",
                summary=build_chain_summary(
                    self.steps, self.results, self.scratch.path, "failed", (failure.step_index, failure.error)
                ),
                results=self.results,
                chain_dir=self.scratch.path,
                chain_agents=self.chain_agents,
                failed_step=failure.step_index,
                error=failure.error,
            )

        logger.info("Chain %s completed (%d result(s))", self.options.run_id, len(self.results))
        return ChainOutcome(
            status="completed",
            summary=build_chain_summary(self.steps, self.results, self.scratch.path, "completed"),
            results=self.results,
            chain_dir=self.scratch.path,
            chain_agents=self.chain_agents,
            final_output=previous,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_sequential(self, step_index: int, step: SequentialStep, previous: str) -> RunResult:
        agent = self.registry.require(step.agent, step=step_index + 1)
        behavior = resolve_step_behavior(agent, StepOverrides.from_item(step), self.options.chain_skills)
        is_first_progress = behavior.progress and not self.progress_created
        if behavior.progress:
            self.progress_created = True
        template = self.templates[step_index]
        if not isinstance(template, str):
            raise TypeError(f"Step {step_index + 1} has per-item templates but is sequential")
        task_text = self._build_task(template, behavior, previous, is_first_progress=is_first_progress)

        index = self._claim_index()
        logger.info("Chain %s step %d/%d: %s", self.options.run_id, step_index + 1, len(self.steps), step.agent)
        result = await self.executor.run(
            step.agent,
            task_text,
            self._run_options(index, step, behavior, self._sink(step_index, 1, 0)),
        )
        self.results.append(result)
        self._verify_output(result, behavior)
        return result

    async def _run_parallel(self, step_index: int, step: ParallelStep, previous: str) -> tuple[list[RunResult], str]:
        items = step.items
        self.scratch.create_parallel_dirs(step_index, [item.agent for item in items])
        behaviors = resolve_parallel_behaviors(items, self.registry, step_index, self.options.chain_skills)
        if any(behavior.progress for behavior in behaviors) and not self.progress_created:
            self.scratch.ensure_progress_file()
            self.progress_created = True

        templates = self.templates[step_index]
        if not isinstance(templates, list):
            raise TypeError(f"Step {step_index + 1} has a single template but is parallel")
        base_index = self._claim_index(len(items))
        concurrency = step.concurrency or self.settings.max_concurrency
        aborted = False
        logger.info(
            "Chain %s step %d/%d: parallel x%d (concurrency=%d, fail_fast=%s)",
            self.options.run_id,
            step_index + 1,
            len(self.steps),
            len(items),
            concurrency,
            step.fail_fast,
        )

        async def run_item(item: TaskItem, task_index: int) -> RunResult:
            nonlocal aborted
            if step.fail_fast and aborted:
                return RunResult.skipped(item.agent, task_index)
            behavior = behaviors[task_index]
            task_text = self._build_task(templates[task_index], behavior, previous, is_first_progress=False)
            result = await self.executor.run(
                item.agent,
                task_text,
                self._run_options(
                    base_index + task_index,
                    item,
                    behavior,
                    self._sink(step_index, len(items), task_index),
                ),
            )
            result.task_index = task_index
            if not result.succeeded and step.fail_fast:
                aborted = True
            self._verify_output(result, behavior)
            return result

        step_results = await map_concurrent(items, concurrency, run_item)
        self.results.extend(step_results)
        aggregated = aggregate_parallel_outputs(
            step_results, [get_final_output(result.messages) for result in step_results]
        )
        return step_results, aggregated

    def _raise_if_failed(self, step_index: int, step: Step, step_results: list[RunResult]) -> None:
        if isinstance(step, ParallelStep):
            failures = [
                (index, result)
                for index, result in enumerate(step_results)
                if not result.succeeded and not result.was_skipped
            ]
            if failures:
                lines = [f"- Task {index + 1} ({result.agent}): {result.error or 'failed'}" for index, result in failures]
                raise _StepFailed(step_index, f"Parallel step {step_index + 1} failed:\n" + "\n".join(lines))
            return
        result = step_results[0]
        if not result.succeeded:
            raise _StepFailed(step_index, result.error or f"exit code {result.exit_code}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _claim_index(self, count: int = 1) -> int:
        index = self.next_index
        self.next_index += count
        return index

    def _build_task(self, template: str, behavior: ResolvedBehavior, previous: str, *, is_first_progress: bool) -> str:
        previous_summary = None if PREVIOUS_PLACEHOLDER in template else previous
        instructions = build_chain_instructions(
            behavior,
            self.scratch.path,
            is_first_progress=is_first_progress,
            previous_summary=previous_summary,
        )
        return instructions.wrap(substitute(template, task=self.task, previous=previous, chain_dir=self.scratch.path))

    def _run_options(
        self,
        index: int,
        item: TaskItem,
        behavior: ResolvedBehavior,
        sink: ProgressSink | None,
    ) -> RunOptions:
        options = self.options
        session_dir = options.session_dir_for_index(index) if options.session_dir_for_index else None
        return RunOptions(
            cwd=Path(item.cwd) if item.cwd else options.cwd,
            signal=options.signal,
            on_update=sink,
            max_output=options.max_output,
            artifacts_dir=options.artifacts_dir,
            artifact_config=options.artifact_config,
            run_id=options.run_id,
            index=index,
            session_dir=session_dir,
            share=options.share,
            skills=behavior.skill_list(),
            output_log=options.output_log,
        )

    def _verify_output(self, result: RunResult, behavior: ResolvedBehavior) -> None:
        if behavior.output is False or not result.succeeded:
            return
        warning = self.scratch.verify_output(behavior.output)
        if warning:
            logger.warning("%s: %s", result.agent, warning)
            result.warnings.append(warning)

    def _sink(self, step_index: int, width: int, slot: int) -> ProgressSink | None:
        """Wrap the caller's sink so each snapshot carries the whole chain's view."""
        outer = self.options.on_update
        if outer is None:
            return None
        if self._live_step != step_index:
            self._live = [None] * width
            self._live_step = step_index

        def forward(update: ProgressUpdate) -> None:
            if update.details.results:
                self._live[slot] = update.details.results[0]
            running = [result for result in self._live if result is not None]
            progress: list[AgentProgress] = [
                result.progress for result in [*self.results, *running] if result.progress is not None
            ]
            outer(
                ProgressUpdate(
                    text=update.text,
                    details=RunDetails(
                        mode="chain",
                        results=[*self.results, *running],
                        progress=progress,
                        chain_agents=self.chain_agents,
                        total_steps=len(self.steps),
                        current_step_index=step_index,
                    ),
                )
            )

        return forward
