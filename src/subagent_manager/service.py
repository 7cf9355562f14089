"""Request surface: validate a delegation request and route it to single, parallel, chain, or async execution."""

from __future__ import annotations

import asyncio
import logging
import tempfile
import uuid
from collections.abc import Sequence
from pathlib import Path

from subagent_manager.agents import AgentRegistry, discover_agents
from subagent_manager.artifacts import artifacts_dir_for_session, cleanup_old_artifacts
from subagent_manager.async_jobs.manager import AsyncJobManager
from subagent_manager.async_jobs.status import status_report
from subagent_manager.chain.behavior import StepOverrides, resolve_step_behavior
from subagent_manager.chain.orchestrator import ChainOrchestrator, ChainRunOptions
from subagent_manager.chain.scratch import cleanup_old_chain_dirs
from subagent_manager.chain.validation import validate_chain
from subagent_manager.concurrency import map_concurrent
from subagent_manager.config import Settings
from subagent_manager.errors import ChainValidationError, SubagentError
from subagent_manager.executor import ProgressSink, RunOptions, SingleRunExecutor
from subagent_manager.file_io import safe_name
from subagent_manager.messages import get_final_output
from subagent_manager.schemas import (
    AgentScope,
    ArtifactConfig,
    ArtifactSummary,
    RunDetails,
    RunMode,
    RunResult,
    SequentialStep,
    SubagentRequest,
    TaskItem,
    ToolResponse,
)
from subagent_manager.skills import normalize_skill_input

logger = logging.getLogger(__name__)

PARALLEL_ASYNC_NOTE = " (async not supported for parallel)"


class _RequestContext:
    """Per-request values shared by the execution paths."""

    def __init__(self, service: SubagentService, request: SubagentRequest, registry: AgentRegistry, cwd: Path) -> None:
        settings = service.settings
        self.request = request
        self.registry = registry
        self.cwd = cwd
        self.run_id = uuid.uuid4().hex[:8]
        self.share = request.share is not False
        if request.session_dir:
            self.session_root: Path | None = Path(request.session_dir).resolve()
        elif self.share:
            self.session_root = Path(tempfile.mkdtemp(prefix="subagent-session-"))
        else:
            self.session_root = None
        if self.session_root is not None:
            self.session_root.mkdir(parents=True, exist_ok=True)

        has_chain, has_tasks, _ = request.mode_flags()
        requested_async = request.run_async if request.run_async is not None else settings.async_by_default
        self.parallel_downgraded = has_tasks and requested_async
        self.effective_async = requested_async and not has_tasks
        self.artifact_config = ArtifactConfig(enabled=request.artifacts, cleanup_days=settings.artifact_cleanup_days)
        if self.effective_async:
            self.artifacts_dir = settings.temp_artifacts_dir
        else:
            self.artifacts_dir = artifacts_dir_for_session(service.session_file, settings.temp_artifacts_dir)

    @property
    def enabled_artifacts_dir(self) -> Path | None:
        return self.artifacts_dir if self.artifact_config.enabled else None

    def session_dir_for_index(self, index: int) -> Path | None:
        return self.session_root / f"run-{index}" if self.session_root is not None else None

    def details(self, mode: RunMode, results: list[RunResult], **extra: object) -> RunDetails:
        details = RunDetails(mode=mode, results=results, **extra)
        if self.request.include_progress:
            details.progress = [result.progress for result in results if result.progress is not None]
        files = [result.artifact_paths for result in results if result.artifact_paths is not None]
        if files:
            details.artifacts = ArtifactSummary(dir=str(self.artifacts_dir), files=files)
        return details


class SubagentService:
    """Entry point used by the CLI and the HTTP API."""

    def __init__(
        self,
        settings: Settings,
        *,
        manager: AsyncJobManager | None = None,
        command: Sequence[str] | None = None,
        cwd: Path | None = None,
        session_file: str | None = None,
    ) -> None:
        self.settings = settings
        self.cwd = (cwd or Path.cwd()).resolve()
        self.manager = manager or AsyncJobManager(settings, session_id=session_file, cwd=self.cwd)
        self.command = list(command) if command else None
        self.session_file = session_file

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def startup(self, *, force: bool = False) -> dict[str, int]:
        """Purge stale chain directories and temp artifacts; ``force`` skips the daily artifact rate limit."""
        self.settings.ensure_dirs()
        removed = {
            "chainDirs": cleanup_old_chain_dirs(self.settings.chain_runs_dir, self.settings.chain_dir_max_age_hours),
            "artifacts": cleanup_old_artifacts(
                self.settings.temp_artifacts_dir, self.settings.artifact_cleanup_days, force=force
            ),
        }
        logger.debug("Startup housekeeping: %s", removed)
        return removed

    def agents(self, scope: AgentScope = "user", cwd: Path | None = None) -> AgentRegistry:
        return discover_agents(cwd or self.cwd, scope, self.settings)

    def executor(self, registry: AgentRegistry, cwd: Path) -> SingleRunExecutor:
        return SingleRunExecutor(registry, self.settings, command=self.command, runtime_cwd=cwd)

    def status(self, run_id: str | None = None, run_dir: str | None = None) -> ToolResponse:
        return status_report(self.settings, run_id=run_id, run_dir=run_dir, reader=self.manager.reader)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: SubagentRequest,
        *,
        signal: asyncio.Event | None = None,
        on_update: ProgressSink | None = None,
    ) -> ToolResponse:
        """Run ``request``; validation and launch errors become error responses."""
        has_chain, has_tasks, _ = request.mode_flags()
        mode: RunMode = "chain" if has_chain else "parallel" if has_tasks else "single"
        try:
            return await self._execute(request, signal, on_update)
        except SubagentError as exc:
            logger.warning("Rejected %s request: %s", mode, exc)
            return ToolResponse(text=str(exc), details=RunDetails(mode=mode), is_error=True)

    async def _execute(
        self,
        request: SubagentRequest,
        signal: asyncio.Event | None,
        on_update: ProgressSink | None,
    ) -> ToolResponse:
        cwd = Path(request.cwd).resolve() if request.cwd else self.cwd
        registry = discover_agents(cwd, request.agent_scope, self.settings)
        has_chain, has_tasks, has_single = request.mode_flags()
        if has_chain + has_tasks + has_single != 1:
            raise ChainValidationError(f"Provide exactly one mode. Agents: {', '.join(registry.names()) or 'none'}")
        if has_chain and request.chain is not None:
            validate_chain(request.chain, registry)

        context = _RequestContext(self, request, registry, cwd)
        if context.effective_async:
            return self._launch_async(context)
        if has_chain:
            return await self._run_chain(context, signal, on_update)
        if has_tasks:
            return await self._run_parallel(context, signal)
        return await self._run_single(context, signal, on_update)

    def _chain_skills(self, request: SubagentRequest) -> list[str]:
        normalized = normalize_skill_input(request.skill)
        return normalized if isinstance(normalized, list) else []

    def _launch_async(self, context: _RequestContext) -> ToolResponse:
        request = context.request
        if request.chain:
            steps = list(request.chain)
            mode: RunMode = "chain"
            skills = None
        else:
            steps = [SequentialStep(agent=request.agent or "", task=request.task)]
            mode = "single"
            normalized = normalize_skill_input(request.skill)
            skills = [] if normalized is False else normalized
        job = self.manager.launch(
            steps,
            context.registry,
            mode=mode,
            cwd=context.cwd,
            share=context.share,
            session_root=context.session_root,
            artifacts_dir=context.enabled_artifacts_dir,
            artifact_config=context.artifact_config,
            max_output=request.max_output,
            chain_skills=self._chain_skills(request) if mode == "chain" else (),
            skills=skills,
            command=self.command,
        )
        if mode == "chain":
            text = f"Async chain: {' -> '.join(job.agents or [])} [{job.async_id}]"
        else:
            text = f"Async: {request.agent} [{job.async_id}]"
        return ToolResponse(
            text=text,
            details=RunDetails(mode=mode, async_id=job.async_id, async_dir=job.async_dir),
        )

    async def _run_chain(
        self,
        context: _RequestContext,
        signal: asyncio.Event | None,
        on_update: ProgressSink | None,
    ) -> ToolResponse:
        request = context.request
        orchestrator = ChainOrchestrator(self.executor(context.registry, context.cwd), context.registry, self.settings)
        outcome = await orchestrator.run(
            request.chain or [],
            ChainRunOptions(
                run_id=context.run_id,
                cwd=context.cwd,
                signal=signal,
                on_update=on_update,
                chain_skills=tuple(self._chain_skills(request)),
                artifacts_dir=context.enabled_artifacts_dir,
                artifact_config=context.artifact_config,
                session_dir_for_index=context.session_dir_for_index,
                share=context.share,
                max_output=request.max_output,
                include_progress=request.include_progress,
            ),
        )
        return outcome.to_response(
            include_progress=request.include_progress,
            artifacts_dir=context.enabled_artifacts_dir,
        )

    async def _run_parallel(self, context: _RequestContext, signal: asyncio.Event | None) -> ToolResponse:
        request = context.request
        tasks: list[TaskItem] = request.tasks or []
        if len(tasks) > self.settings.max_parallel:
            raise ChainValidationError(f"Max {self.settings.max_parallel} tasks")
        agents = [context.registry.require(task.agent) for task in tasks]
        executor = self.executor(context.registry, context.cwd)

        async def run_task(task: TaskItem, index: int) -> RunResult:
            behavior = resolve_step_behavior(agents[index], StepOverrides.from_item(task))
            result = await executor.run(
                task.agent,
                task.task or "",
                RunOptions(
                    cwd=Path(task.cwd) if task.cwd else context.cwd,
                    signal=signal,
                    max_output=request.max_output,
                    artifacts_dir=context.enabled_artifacts_dir,
                    artifact_config=context.artifact_config,
                    run_id=context.run_id,
                    index=index,
                    session_dir=context.session_dir_for_index(index),
                    share=context.share,
                    skills=behavior.skill_list(),
                ),
            )
            result.task_index = index
            return result

        results = await map_concurrent(tasks, self.settings.max_concurrency, run_task)
        ok = sum(1 for result in results if result.succeeded)
        note = PARALLEL_ASYNC_NOTE if context.parallel_downgraded else ""
        return ToolResponse(text=f"{ok}/{len(results)} succeeded{note}", details=context.details("parallel", results))

    async def _run_single(
        self,
        context: _RequestContext,
        signal: asyncio.Event | None,
        on_update: ProgressSink | None,
    ) -> ToolResponse:
        request = context.request
        agent = context.registry.require(request.agent or "")
        task = request.task or ""

        raw_output = request.output if request.output is not None else agent.output
        effective_output = agent.output if raw_output is True else raw_output
        output_path: Path | None = None
        if isinstance(effective_output, str) and effective_output:
            output_dir = Path(tempfile.gettempdir()) / f"subagent-{safe_name(agent.name)}-{context.run_id}"
            output_dir.mkdir(parents=True, exist_ok=True)
            output_path = output_dir / effective_output
            task += f"\n\n---\n**Output:** Write your findings to: {output_path}"

        normalized = normalize_skill_input(request.skill)
        result = await self.executor(context.registry, context.cwd).run(
            agent.name,
            task,
            RunOptions(
                cwd=context.cwd,
                signal=signal,
                on_update=on_update,
                max_output=request.max_output,
                artifacts_dir=context.enabled_artifacts_dir,
                artifact_config=context.artifact_config,
                run_id=context.run_id,
                session_dir=context.session_dir_for_index(0),
                share=context.share,
                skills=[] if normalized is False else normalized,
            ),
        )
        details = context.details("single", [result], truncation=result.truncation)
        if not result.succeeded:
            return ToolResponse(text=result.error or "Failed", details=details, is_error=True)

        output = result.truncation.text if result.truncation else get_final_output(result.messages)
        if output_path is not None:
            output += f"\n\nOutput saved to: {output_path}"
        return ToolResponse(text=output or "(no output)", details=details)
