"""Detached async job runner.

Launched as ``python -m subagent_manager.async_jobs.runner <config.json>`` by
the job manager. It owns the job's ``status.json`` for the whole run, appends
lifecycle events to ``events.jsonl``, tees raw child output into
``output.log``, and finally writes a Markdown run log plus a transient result
file for the foreground watcher.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from contextlib import suppress
from pathlib import Path
from typing import Any, Literal

from pydantic import Field

from subagent_manager.agents import AgentDefinition, AgentRegistry
from subagent_manager.async_jobs.status import (
    EVENTS_FILE,
    OUTPUT_LOG_FILE,
    STATUS_FILE,
    run_log_name,
    write_run_log,
)
from subagent_manager.chain.orchestrator import AgentRunner, ChainHooks, ChainOrchestrator, ChainRunOptions
from subagent_manager.config import Settings
from subagent_manager.errors import ChainValidationError
from subagent_manager.executor import RunOptions, SingleRunExecutor
from subagent_manager.file_io import append_jsonl, read_json, write_json
from subagent_manager.messages import get_final_output
from subagent_manager.schemas import (
    CANCELLED_ERROR,
    ArtifactConfig,
    AsyncResult,
    AsyncStatus,
    AsyncStepResult,
    AsyncStepStatus,
    MaxOutputConfig,
    RunResult,
    SequentialStep,
    TokenUsage,
    WireModel,
    now_ms,
)
from subagent_manager.truncation import resolve_budget, truncate_output

logger = logging.getLogger(__name__)


class AsyncRunConfig(WireModel):
    """Everything the detached runner needs; written by the manager, deleted once read."""

    id: str
    mode: Literal["single", "chain"] = "single"
    steps: list[SequentialStep]
    agents: list[dict[str, Any]] = Field(default_factory=list)
    cwd: str
    async_dir: str
    results_dir: str
    session_id: str | None = None
    session_dir: str | None = None
    share: bool = False
    artifacts_dir: str | None = None
    artifact_config: ArtifactConfig | None = None
    max_output: MaxOutputConfig | None = None
    chain_skills: list[str] = Field(default_factory=list)
    skills: list[str] | None = None
    settings: dict[str, Any] = Field(default_factory=dict)
    command: list[str] | None = None

    def agent_label(self) -> str:
        if self.mode == "chain":
            return "chain:" + "->".join(step.agent for step in self.steps)
        return self.steps[0].agent


def _token_usage(result: RunResult) -> TokenUsage:
    return TokenUsage(
        input=result.usage.input,
        output=result.usage.output,
        total=result.usage.input + result.usage.output,
    )


class AsyncJobRunner:
    """Runs one async job and keeps its status file current."""

    def __init__(self, config: AsyncRunConfig, *, executor: AgentRunner | None = None) -> None:
        self.config = config
        self.settings = Settings.model_validate(config.settings)
        self.registry = AgentRegistry.from_definitions(AgentDefinition.from_wire(item) for item in config.agents)
        self.executor: AgentRunner = executor or SingleRunExecutor(
            self.registry,
            self.settings,
            command=config.command,
            runtime_cwd=Path(config.cwd),
        )
        self.async_dir = Path(config.async_dir)
        self.status_path = self.async_dir / STATUS_FILE
        self.events_path = self.async_dir / EVENTS_FILE
        self.output_log = self.async_dir / OUTPUT_LOG_FILE
        self.completed: list[RunResult] = []
        self.status = self._initial_status()

    def _initial_status(self) -> AsyncStatus:
        existing = read_json(self.status_path)
        status = AsyncStatus.model_validate(existing) if isinstance(existing, dict) else None
        if status is None or status.run_id != self.config.id or status.finished:
            status = AsyncStatus(run_id=self.config.id, mode=self.config.mode)
        status.mode = self.config.mode
        status.pid = os.getpid()
        status.cwd = self.config.cwd
        status.steps = [AsyncStepStatus(agent=step.agent) for step in self.config.steps]
        status.artifacts_dir = self.config.artifacts_dir
        status.session_dir = self.config.session_dir
        status.output_file = str(self.output_log)
        return status

    # ------------------------------------------------------------------
    # Status bookkeeping
    # ------------------------------------------------------------------

    def _write_status(self) -> None:
        self.status.last_update = now_ms()
        write_json(self.status_path, self.status.to_wire())

    def _event(self, event_type: str, **fields: Any) -> None:
        append_jsonl(self.events_path, {"type": event_type, "ts": now_ms(), "runId": self.config.id, **fields})

    def _step_started(self, step_index: int, agent: str) -> None:
        step = self.status.steps[step_index]
        step.status = "running"
        step.started_at = now_ms()
        self.status.current_step = step_index
        self._write_status()
        self._event("subagent.step.started", stepIndex=step_index, agent=agent)

    def _step_finished(self, step_index: int, result: RunResult) -> None:
        step = self.status.steps[step_index]
        ended = now_ms()
        step.status = "complete" if result.succeeded else "failed"
        step.ended_at = ended
        step.duration_ms = ended - (step.started_at or ended)
        step.exit_code = result.exit_code
        step.error = result.error
        step.tokens = _token_usage(result)
        step.skills = result.skills
        self.completed.append(result)
        total = self.status.total_tokens or TokenUsage()
        self.status.total_tokens = TokenUsage(
            input=total.input + step.tokens.input,
            output=total.output + step.tokens.output,
            total=total.total + step.tokens.total,
        )
        if result.session_file:
            self.status.session_file = result.session_file
        self._write_status()
        self._event(
            "subagent.step.completed" if result.succeeded else "subagent.step.failed",
            stepIndex=step_index,
            agent=result.agent,
            exitCode=result.exit_code,
            durationMs=step.duration_ms,
            tokens=step.tokens.to_wire(),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, abort: asyncio.Event | None = None) -> AsyncResult:
        config = self.config
        self.async_dir.mkdir(parents=True, exist_ok=True)
        self.status.advance("running")
        self.status.current_step = 0
        self._write_status()
        self._event("subagent.run.started", mode=config.mode, cwd=config.cwd, pid=os.getpid())
        logger.info("Async run %s started (%s, %d step(s))", config.id, config.mode, len(config.steps))

        try:
            if config.mode == "chain":
                results = await self._run_chain(abort)
            else:
                results = [await self._run_single(abort)]
        except ChainValidationError as exc:
            logger.error("Async run %s rejected: %s", config.id, exc)
            return self._finish([], error=str(exc))
        except Exception as exc:
            logger.exception("Async run %s crashed", config.id)
            for step in self.status.steps:
                if step.status == "running":
                    step.status = "failed"
                    step.error = str(exc)
            return self._finish(list(self.completed), error=str(exc))
        return self._finish(results)

    async def _run_single(self, abort: asyncio.Event | None) -> RunResult:
        step = self.config.steps[0]
        self._step_started(0, step.agent)
        result = await self.executor.run(
            step.agent,
            step.task or "",
            RunOptions(
                cwd=Path(step.cwd or self.config.cwd),
                signal=abort,
                artifacts_dir=Path(self.config.artifacts_dir) if self.config.artifacts_dir else None,
                artifact_config=self.config.artifact_config,
                run_id=self.config.id,
                session_dir=Path(self.config.session_dir) if self.config.session_dir else None,
                share=self.config.share,
                skills=self.config.skills,
                output_log=self.output_log,
            ),
        )
        self._step_finished(0, result)
        return result

    async def _run_chain(self, abort: asyncio.Event | None) -> list[RunResult]:
        session_dir = Path(self.config.session_dir) if self.config.session_dir else None
        orchestrator = ChainOrchestrator(self.executor, self.registry, self.settings)
        outcome = await orchestrator.run(
            self.config.steps,
            ChainRunOptions(
                run_id=self.config.id,
                cwd=Path(self.config.cwd),
                signal=abort,
                chain_skills=tuple(self.config.chain_skills),
                artifacts_dir=Path(self.config.artifacts_dir) if self.config.artifacts_dir else None,
                artifact_config=self.config.artifact_config,
                session_dir_for_index=lambda _index: session_dir,
                share=self.config.share,
                output_log=self.output_log,
                hooks=ChainHooks(
                    on_step_start=lambda index, step: self._step_started(index, step.agent),
                    on_step_end=lambda index, results: self._step_finished(index, results[0]),
                ),
            ),
        )
        return outcome.results

    def _finish(self, results: list[RunResult], *, error: str | None = None) -> AsyncResult:
        config = self.config
        outputs = [get_final_output(result.messages).strip() for result in results]
        summary = "\n\n".join(f"{result.agent}:\n{output}" for result, output in zip(results, outputs)) or (error or "")
        truncated = False
        if config.max_output is not None:
            max_bytes, max_lines = resolve_budget(
                config.max_output,
                default_bytes=self.settings.default_max_output_bytes,
                default_lines=self.settings.default_max_output_lines,
            )
            last_paths = results[-1].artifact_paths if results else None
            truncation = truncate_output(summary, max_bytes, max_lines, last_paths.output_path if last_paths else None)
            if truncation.truncated:
                summary = truncation.text
                truncated = True

        success = bool(results) and len(results) == len(config.steps) and all(r.succeeded for r in results)
        ended = now_ms()
        failed = next((result for result in results if not result.succeeded), None)
        self.status.advance("complete" if success else "failed")
        self.status.ended_at = ended
        if failed is not None:
            self.status.error = CANCELLED_ERROR if failed.cancelled else f"Step failed: {failed.agent}"
        elif not success:
            self.status.error = error or "Chain did not run every step"
        self._write_status()
        self._event("subagent.run.completed", status=self.status.state, durationMs=ended - self.status.started_at)

        write_run_log(
            self.async_dir / run_log_name(config.id),
            run_id=config.id,
            mode=config.mode,
            cwd=config.cwd,
            started_at=self.status.started_at,
            ended_at=ended,
            steps=self.status.steps,
            summary=summary,
            truncated=truncated,
            artifacts_dir=config.artifacts_dir,
            session_file=self.status.session_file,
        )

        result = AsyncResult(
            id=config.id,
            agent=config.agent_label(),
            success=success,
            summary=summary,
            results=[
                AsyncStepResult(
                    agent=run.agent,
                    output=output,
                    success=run.succeeded,
                    artifact_paths=run.artifact_paths,
                )
                for run, output in zip(results, outputs)
            ],
            exit_code=0 if success else (failed.exit_code if failed is not None else 1),
            timestamp=ended,
            duration_ms=ended - self.status.started_at,
            truncated=truncated,
            artifacts_dir=config.artifacts_dir,
            cwd=config.cwd,
            async_dir=config.async_dir,
            session_id=config.session_id,
            session_file=self.status.session_file,
        )
        write_json(Path(config.results_dir) / f"{config.id}.json", result.to_wire())
        logger.info("Async run %s finished: %s", config.id, self.status.state)
        return result


async def run_async_job(config: AsyncRunConfig, *, executor: AgentRunner | None = None) -> AsyncResult:
    """Run a job in the current event loop; SIGTERM aborts the in-flight step."""
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = False
    with suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGTERM, abort.set)
        installed = True
    try:
        return await AsyncJobRunner(config, executor=executor).run(abort)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGTERM)


def load_run_config(path: Path) -> AsyncRunConfig:
    raw = read_json(path)
    if not isinstance(raw, dict):
        raise ValueError(f"Unreadable async run config: {path}")
    with suppress(OSError):
        path.unlink()
    return AsyncRunConfig.model_validate(raw)


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if len(args) != 1:
        logger.error("Usage: python -m subagent_manager.async_jobs.runner <config.json>")
        return 2
    try:
        config = load_run_config(Path(args[0]))
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    result = asyncio.run(run_async_job(config))
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
