"""Tests for chain orchestration against an in-memory agent runner."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from pathlib import Path

import pytest

from subagent_manager.agents import AgentDefinition, AgentRegistry
from subagent_manager.chain.orchestrator import ChainHooks, ChainOrchestrator, ChainRunOptions
from subagent_manager.config import Settings
from subagent_manager.errors import ChainValidationError
from subagent_manager.executor import ProgressUpdate, RunOptions
from subagent_manager.schemas import (
    CANCELLED_ERROR,
    SKIPPED_ERROR,
    AgentProgress,
    RunDetails,
    RunResult,
    parse_chain,
)

pytestmark = pytest.mark.unit

Handler = Callable[[str, str, RunOptions], RunResult]


def _run(coro):
    return asyncio.run(coro)


def ok(agent: str, task: str, text: str) -> RunResult:
    return RunResult(
        agent=agent,
        task=task,
        messages=[{"role": "assistant", "content": [{"type": "text", "text": text}]}],
        progress=AgentProgress(agent=agent, status="completed", duration_ms=10),
    )


def failed(agent: str, task: str, error: str) -> RunResult:
    return RunResult(agent=agent, task=task, exit_code=1, error=error)


class FakeRunner:
    """Records every invocation and answers through ``handler``."""

    def __init__(self, handler: Handler | None = None) -> None:
        self.handler = handler or (lambda agent, task, _options: ok(agent, task, f"{agent} done"))
        self.calls: list[tuple[str, str, RunOptions]] = []

    async def run(self, agent_name: str, task: str, options: RunOptions | None = None) -> RunResult:
        options = options or RunOptions()
        self.calls.append((agent_name, task, options))
        await asyncio.sleep(0)
        return self.handler(agent_name, task, options)

    def tasks_for(self, agent: str) -> list[str]:
        return [task for name, task, _ in self.calls if name == agent]


def _orchestrate(runner: FakeRunner, registry: AgentRegistry, settings: Settings, raw_steps, **options):
    orchestrator = ChainOrchestrator(runner, registry, settings)
    return _run(orchestrator.run(parse_chain(raw_steps), ChainRunOptions(run_id="test", **options)))


def test_previous_output_flows_into_next_step(registry, settings) -> None:
    runner = FakeRunner(
        lambda agent, task, _o: ok(agent, task, "FOO" if agent == "scout" else "plan ready")
    )
    outcome = _orchestrate(runner, registry, settings, [{"agent": "scout", "task": "X"}, {"agent": "planner"}])

    assert outcome.succeeded
    assert runner.tasks_for("scout") == ["X"]
    assert runner.tasks_for("planner") == ["FOO"]
    assert outcome.final_output == "plan ready"
    assert outcome.chain_agents == ["scout", "planner"]
    assert outcome.summary.startswith("Chain completed: scout -> planner (2 steps")


def test_task_placeholders_are_substituted(registry, settings) -> None:
    runner = FakeRunner(lambda agent, task, _o: ok(agent, task, "found it"))
    outcome = _orchestrate(
        runner,
        registry,
        settings,
        [{"agent": "scout", "task": "Look at auth"}, {"agent": "planner", "task": "Plan {task} using {previous} in {chain_dir}"}],
    )

    (planner_task,) = runner.tasks_for("planner")
    assert planner_task == f"Plan Look at auth using found it in {outcome.chain_dir}"


def test_explicit_task_without_previous_gets_previous_summary(registry, settings) -> None:
    runner = FakeRunner(lambda agent, task, _o: ok(agent, task, "scout notes"))
    _orchestrate(runner, registry, settings, [{"agent": "scout", "task": "X"}, {"agent": "planner", "task": "Plan it"}])

    (planner_task,) = runner.tasks_for("planner")
    assert planner_task == "Plan it\n\n---\nPrevious step output:\nscout notes"


def test_fail_fast_skips_unclaimed_items(registry, settings) -> None:
    def handler(agent: str, task: str, _options: RunOptions) -> RunResult:
        if task == "two":
            return failed(agent, task, "boom")
        return ok(agent, task, f"{task} done")

    runner = FakeRunner(handler)
    outcome = _orchestrate(
        runner,
        registry,
        settings,
        [
            {
                "parallel": [
                    {"agent": "scout", "task": "one"},
                    {"agent": "worker", "task": "two"},
                    {"agent": "planner", "task": "three"},
                ],
                "concurrency": 1,
                "failFast": True,
            }
        ],
    )

    assert [name for name, _, _ in runner.calls] == ["scout", "worker"]
    first, second, third = outcome.results
    assert first.succeeded and first.task_index == 0
    assert first.messages[0]["content"][0]["text"] == "one done"
    assert second.error == "boom"
    assert third.exit_code == -1
    assert third.error == SKIPPED_ERROR
    assert third.task_index == 2
    assert outcome.status == "failed"
    assert outcome.error == "Parallel step 1 failed:\n- Task 2 (worker): boom"


def test_without_fail_fast_every_item_runs(registry, settings) -> None:
    def handler(agent: str, task: str, _options: RunOptions) -> RunResult:
        return failed(agent, task, "boom") if task == "two" else ok(agent, task, "ok")

    runner = FakeRunner(handler)
    outcome = _orchestrate(
        runner,
        registry,
        settings,
        [
            {
                "parallel": [
                    {"agent": "scout", "task": "one"},
                    {"agent": "worker", "task": "two"},
                    {"agent": "planner", "task": "three"},
                ],
                "concurrency": 1,
            }
        ],
    )
    assert len(runner.calls) == 3
    assert outcome.results[2].succeeded
    assert not outcome.succeeded


def test_sequential_failure_halts_chain(registry, settings) -> None:
    def handler(agent: str, task: str, _options: RunOptions) -> RunResult:
        return failed(agent, task, "planner crashed") if agent == "planner" else ok(agent, task, "ok")

    runner = FakeRunner(handler)
    outcome = _orchestrate(
        runner,
        registry,
        settings,
        [{"agent": "scout", "task": "X"}, {"agent": "planner"}, {"agent": "worker"}],
    )

    assert [name for name, _, _ in runner.calls] == ["scout", "planner"]
    assert outcome.failed_step == 1
    assert outcome.summary.startswith("Chain failed at step 2: planner crashed")
    response = outcome.to_response()
    assert response.is_error is True
    assert response.details.mode == "chain"
    assert response.details.total_steps == 3


def test_parallel_outputs_are_aggregated_for_next_step(registry, settings) -> None:
    runner = FakeRunner(lambda agent, task, _o: ok(agent, task, f"{agent} says {task}"))
    outcome = _orchestrate(
        runner,
        registry,
        settings,
        [
            {"parallel": [{"agent": "scout", "task": "a"}, {"agent": "worker", "task": "b"}]},
            {"agent": "planner"},
        ],
    )

    assert outcome.chain_agents == ["parallel[2]", "planner"]
    assert runner.tasks_for("planner") == [
        "=== Parallel Task 1 (scout) ===\nscout says a\n\n=== Parallel Task 2 (worker) ===\nworker says b"
    ]
    assert (outcome.chain_dir / "parallel-0" / "0-scout").is_dir()
    assert (outcome.chain_dir / "parallel-0" / "1-worker").is_dir()


def test_run_indices_are_global_across_steps(registry, settings) -> None:
    runner = FakeRunner()
    _orchestrate(
        runner,
        registry,
        settings,
        [
            {"agent": "scout", "task": "X"},
            {"parallel": [{"agent": "worker"}, {"agent": "planner"}]},
            {"agent": "scout"},
        ],
    )
    assert sorted(options.index for _, _, options in runner.calls) == [0, 1, 2, 3]
    assert runner.calls[-1][2].index == 3


def test_missing_output_file_adds_warning(registry, settings) -> None:
    runner = FakeRunner()
    outcome = _orchestrate(runner, registry, settings, [{"agent": "scout", "task": "X"}, {"agent": "reviewer"}])

    reviewer = outcome.results[1]
    assert reviewer.warnings == ["Agent did not create expected output file: review.md"]
    (reviewer_task,) = runner.tasks_for("reviewer")
    assert reviewer_task.startswith(f"[Write to: {outcome.chain_dir}/review.md]\n\n")


def test_written_output_file_passes_verification(registry, settings) -> None:
    def handler(agent: str, task: str, _options: RunOptions) -> RunResult:
        match = re.search(r"\[Write to: (.+?)\]", task)
        if match:
            Path(match.group(1)).write_text("review", encoding="utf-8")
        return ok(agent, task, "ok")

    outcome = _orchestrate(FakeRunner(handler), registry, settings, [{"agent": "reviewer", "task": "X"}])
    assert outcome.results[0].warnings == []


def test_progress_file_is_created_then_updated(settings) -> None:
    registry = AgentRegistry.from_definitions(
        [AgentDefinition(name="a", default_progress=True), AgentDefinition(name="b", default_progress=True)]
    )
    runner = FakeRunner()
    outcome = _orchestrate(runner, registry, settings, [{"agent": "a", "task": "X"}, {"agent": "b"}])

    progress = outcome.chain_dir / "progress.md"
    assert f"Create and maintain progress at: {progress}" in runner.tasks_for("a")[0]
    assert f"Update progress at: {progress}" in runner.tasks_for("b")[0]


def test_parallel_step_precreates_progress_file(settings) -> None:
    registry = AgentRegistry.from_definitions([AgentDefinition(name="a", default_progress=True)])
    runner = FakeRunner()
    outcome = _orchestrate(runner, registry, settings, [{"parallel": [{"agent": "a", "task": "1"}, {"agent": "a", "task": "2"}]}])

    assert (outcome.chain_dir / "progress.md").exists()
    assert all("Update progress at:" in task for _, task, _ in runner.calls)


def test_chain_skills_are_passed_to_each_run(registry, settings) -> None:
    runner = FakeRunner()
    _orchestrate(
        runner,
        registry,
        settings,
        [{"agent": "scout", "task": "X"}, {"agent": "planner", "skill": False}],
        chain_skills=("docs",),
    )
    assert runner.calls[0][2].skills == ["docs"]
    assert runner.calls[1][2].skills == []


def test_abort_before_step_stops_chain(registry, settings) -> None:
    async def scenario():
        signal = asyncio.Event()
        signal.set()
        runner = FakeRunner()
        orchestrator = ChainOrchestrator(runner, registry, settings)
        outcome = await orchestrator.run(
            parse_chain([{"agent": "scout", "task": "X"}]), ChainRunOptions(signal=signal)
        )
        return runner, outcome

    runner, outcome = _run(scenario())
    assert runner.calls == []
    assert outcome.error == CANCELLED_ERROR
    assert outcome.cancelled is True


def test_invalid_chain_spawns_nothing(registry, settings) -> None:
    runner = FakeRunner()
    with pytest.raises(ChainValidationError):
        _orchestrate(runner, registry, settings, [{"agent": "scout"}])
    assert runner.calls == []
    assert not settings.chain_runs_dir.exists()


def test_hooks_and_progress_updates(registry, settings) -> None:
    def handler(agent: str, task: str, options: RunOptions) -> RunResult:
        result = ok(agent, task, "ok")
        if options.on_update is not None:
            options.on_update(ProgressUpdate(text="working", details=RunDetails(results=[result])))
        return result

    started: list[int] = []
    ended: list[tuple[int, int]] = []
    updates: list[ProgressUpdate] = []
    _orchestrate(
        FakeRunner(handler),
        registry,
        settings,
        [{"agent": "scout", "task": "X"}, {"parallel": [{"agent": "worker"}, {"agent": "planner"}]}],
        on_update=updates.append,
        hooks=ChainHooks(
            on_step_start=lambda index, _step: started.append(index),
            on_step_end=lambda index, results: ended.append((index, len(results))),
        ),
    )

    assert started == [0, 1]
    assert ended == [(0, 1), (1, 2)]
    assert updates
    assert all(update.details.mode == "chain" for update in updates)
    assert updates[-1].details.current_step_index == 1
    assert updates[-1].details.chain_agents == ["scout", "parallel[2]"]
