"""Single-run executor: spawn one subordinate agent and report its ``RunResult``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from subagent_manager.agents import AgentDefinition, AgentRegistry
from subagent_manager.artifacts import ArtifactWriter
from subagent_manager.config import Settings
from subagent_manager.errors import detect_subagent_error
from subagent_manager.file_io import PromptFile, find_latest_file, write_private_prompt
from subagent_manager.messages import get_final_output
from subagent_manager.progress import RunStateTracker, ThrottledEmitter
from subagent_manager.prompt_logging import format_prompt_log_line
from subagent_manager.runner_common import (
    process_isolation_kwargs,
    resolve_binary,
    split_tools,
    terminate_with_grace,
)
from subagent_manager.schemas import (
    CANCELLED_ERROR,
    CANCELLED_EXIT_CODE,
    AgentProgress,
    ArtifactConfig,
    MaxOutputConfig,
    ProgressSummary,
    RunDetails,
    RunResult,
    now_ms,
)
from subagent_manager.skills import build_skill_injection, resolve_skills
from subagent_manager.stream import iter_records
from subagent_manager.truncation import resolve_budget, truncate_output

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """One snapshot delivered to a progress sink."""

    text: str
    details: RunDetails


ProgressSink = Callable[[ProgressUpdate], None]


@dataclass(slots=True)
class RunOptions:
    cwd: Path | None = None
    signal: asyncio.Event | None = None
    on_update: ProgressSink | None = None
    max_output: MaxOutputConfig | None = None
    artifacts_dir: Path | None = None
    artifact_config: ArtifactConfig | None = None
    run_id: str = "run"
    index: int | None = None
    session_dir: Path | None = None
    share: bool = False
    model_override: str | None = None
    # None means "use the agent's default skills"; an empty list disables them.
    skills: list[str] | None = None
    output_log: Path | None = None


def build_agent_args(
    agent: AgentDefinition,
    task: str,
    *,
    model: str | None,
    session_dir: Path | None,
    session_enabled: bool,
    system_prompt_path: Path | None,
) -> list[str]:
    """Build the child argument list (everything after the binary)."""
    args = ["--mode", "json", "-p"]
    if not session_enabled:
        args.append("--no-session")
    if session_dir is not None:
        args.extend(["--session-dir", str(session_dir)])
    if model:
        args.extend(["--model", model])
    builtin, extensions = split_tools(agent.tools)
    if builtin:
        args.extend(["--tools", ",".join(builtin)])
    for extension in extensions:
        args.extend(["--extension", extension])
    if system_prompt_path is not None:
        args.extend(["--append-system-prompt", str(system_prompt_path)])
    args.append(f"Task: {task}")
    return args


class SingleRunExecutor:
    """Runs exactly one agent invocation to completion.

    ``command`` is the argv prefix used to launch the agent CLI; it defaults
    to the configured ``agent_binary`` resolved on ``PATH``.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        settings: Settings,
        *,
        command: Sequence[str] | None = None,
        runtime_cwd: Path | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.command = list(command) if command else [resolve_binary(settings.agent_binary)]
        self.runtime_cwd = runtime_cwd or Path.cwd()

    async def run(self, agent_name: str, task: str, options: RunOptions | None = None) -> RunResult:
        options = options or RunOptions()
        agent = self.registry.get(agent_name)
        if agent is None:
            return RunResult(agent=agent_name, task=task, exit_code=1, error=f"Unknown agent: {agent_name}")

        skill_names = options.skills if options.skills is not None else list(agent.skills or ())
        resolved_skills, missing_skills = resolve_skills(
            skill_names, self.runtime_cwd, self.settings.user_skills_dir
        )
        system_prompt = agent.system_prompt.strip()
        if resolved_skills:
            injection = build_skill_injection(resolved_skills)
            system_prompt = f"{system_prompt}\n\n{injection}" if system_prompt else injection

        model = options.model_override or agent.model
        skill_list = [skill.name for skill in resolved_skills] or None
        result = RunResult(agent=agent_name, task=task, model=model, skills=skill_list)
        if missing_skills:
            result.warnings.append(f"Skills not found: {', '.join(missing_skills)}")
        progress = AgentProgress(
            index=options.index or 0,
            agent=agent_name,
            status="running",
            task=task,
            skills=skill_list,
        )
        result.progress = progress
        tracker = RunStateTracker(result, progress)

        writer = ArtifactWriter.create(
            options.artifacts_dir,
            options.artifact_config,
            run_id=options.run_id,
            agent=agent_name,
            index=options.index,
        )
        if writer is not None:
            writer.write_input(agent_name, task)

        session_enabled = options.share or options.session_dir is not None
        if options.session_dir is not None:
            options.session_dir.mkdir(parents=True, exist_ok=True)

        prompt_file: PromptFile | None = write_private_prompt(agent.name, system_prompt) if system_prompt else None
        try:
            args = build_agent_args(
                agent,
                task,
                model=model,
                session_dir=options.session_dir,
                session_enabled=session_enabled,
                system_prompt_path=prompt_file.path if prompt_file else None,
            )
            exit_code, stderr_text, cancelled = await self._spawn_and_stream(
                agent_name, [*self.command, *args], options, tracker
            )
        finally:
            if prompt_file is not None:
                prompt_file.remove()

        self._finalize(result, tracker, exit_code, stderr_text, cancelled)
        self._write_artifacts(result, tracker, writer, options)

        if options.share and options.session_dir is not None:
            session_file = find_latest_file(options.session_dir, ".jsonl")
            if session_file is not None:
                result.session_file = str(session_file)

        logger.info(
            "Subagent %s finished: exit=%s duration=%dms tools=%d tokens=%d",
            agent_name,
            result.exit_code,
            progress.duration_ms,
            progress.tool_count,
            progress.tokens,
        )
        return result

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def _spawn_and_stream(
        self,
        agent_name: str,
        cmd: list[str],
        options: RunOptions,
        tracker: RunStateTracker,
    ) -> tuple[int, str, bool]:
        """Return ``(exit_code, stderr_text, cancelled)``."""
        signal = options.signal
        if signal is not None and signal.is_set():
            logger.info("Abort requested before spawning %s; not starting it", agent_name)
            return CANCELLED_EXIT_CODE, "", True

        # The tee file is opened first so a bad path never leaves a child behind.
        output_log: IO[bytes] | None = None
        if options.output_log is not None:
            try:
                options.output_log.parent.mkdir(parents=True, exist_ok=True)
                output_log = options.output_log.open("ab")
            except OSError as exc:
                logger.error("Cannot open output log %s: %s", options.output_log, exc)
                return 1, f"Failed to open output log {options.output_log}: {exc}", False

        cwd = options.cwd or self.runtime_cwd
        logger.info("Spawning subagent %s in %s (%s)", agent_name, cwd, format_prompt_log_line(cmd[-1]))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **process_isolation_kwargs(),
            )
        except OSError as exc:
            if output_log is not None:
                output_log.close()
            logger.error("Failed to spawn %s: %s", cmd[0], exc)
            return 1, f"Failed to spawn {cmd[0]}: {exc}", False
        stdout, stderr = proc.stdout, proc.stderr
        if stdout is None or stderr is None:
            await terminate_with_grace(
                proc,
                grace_seconds=self.settings.kill_grace_seconds,
                process_name=f"subagent {agent_name}",
                reason="missing output pipes",
            )
            if output_log is not None:
                output_log.close()
            raise RuntimeError(f"subagent {agent_name} was spawned without output pipes")

        def _tee(chunk: bytes) -> None:
            if output_log is not None:
                output_log.write(chunk)
                output_log.flush()

        emitter: ThrottledEmitter | None = None
        if options.on_update is not None:
            sink = options.on_update
            emitter = ThrottledEmitter(
                lambda: sink(_snapshot(tracker)),
                self.settings.progress_throttle_ms,
            )

        cancelled = False

        async def _watch_abort(abort: asyncio.Event) -> None:
            nonlocal cancelled
            await abort.wait()
            cancelled = True
            await terminate_with_grace(
                proc,
                grace_seconds=self.settings.kill_grace_seconds,
                process_name=f"subagent {agent_name}",
                reason="abort signal",
            )

        async def _drain_stderr() -> bytes:
            collected = bytearray()
            while True:
                chunk = await stderr.read(65536)
                if not chunk:
                    break
                collected.extend(chunk)
                _tee(chunk)
            return bytes(collected)

        abort_task = asyncio.create_task(_watch_abort(signal)) if signal is not None else None
        stderr_task = asyncio.create_task(_drain_stderr())
        try:
            async for record in iter_records(stdout, on_chunk=_tee):
                urgency = tracker.apply(record.data, record.raw)
                if emitter is not None and urgency is not None:
                    emitter.schedule(force=urgency == "force")
            await proc.wait()
            stderr_bytes = await stderr_task
        finally:
            if abort_task is not None and not abort_task.done():
                abort_task.cancel()
                with suppress(asyncio.CancelledError):
                    await abort_task
            if proc.returncode is None:
                await terminate_with_grace(
                    proc,
                    grace_seconds=self.settings.kill_grace_seconds,
                    process_name=f"subagent {agent_name}",
                    reason="executor shutdown",
                )
            if not stderr_task.done():
                stderr_task.cancel()
            if emitter is not None:
                emitter.close(flush=True)
            if output_log is not None:
                output_log.close()

        exit_code = proc.returncode if proc.returncode is not None else 1
        return exit_code, stderr_bytes.decode("utf-8", errors="replace"), cancelled

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _finalize(
        self,
        result: RunResult,
        tracker: RunStateTracker,
        exit_code: int,
        stderr_text: str,
        cancelled: bool,
    ) -> None:
        progress = tracker.progress
        if cancelled:
            result.exit_code = CANCELLED_EXIT_CODE
            result.cancelled = True
            result.error = CANCELLED_ERROR
        else:
            result.exit_code = exit_code
            if exit_code != 0 and stderr_text.strip() and not result.error:
                result.error = stderr_text.strip()
            if result.exit_code == 0 and result.error:
                # The child exited cleanly but reported an error on its last turn.
                result.exit_code = 1
            if result.exit_code == 0:
                detected = detect_subagent_error(result.messages)
                if detected is not None:
                    result.exit_code = detected.exit_code or 1
                    result.error = detected.describe()

        progress.status = "completed" if result.exit_code == 0 else "failed"
        progress.duration_ms = tracker.elapsed_ms()
        if result.error:
            progress.error = result.error
            if progress.current_tool:
                progress.failed_tool = progress.current_tool
        result.progress_summary = ProgressSummary(
            tool_count=progress.tool_count,
            tokens=progress.tokens,
            duration_ms=progress.duration_ms,
        )

    def _write_artifacts(
        self,
        result: RunResult,
        tracker: RunStateTracker,
        writer: ArtifactWriter | None,
        options: RunOptions,
    ) -> None:
        full_output = get_final_output(result.messages)
        artifact_path: str | None = None
        if writer is not None:
            result.artifact_paths = writer.paths
            writer.write_output(full_output)
            writer.write_events(tracker.raw_lines)
            writer.write_metadata(
                {
                    "runId": options.run_id,
                    "agent": result.agent,
                    "task": result.task,
                    "exitCode": result.exit_code,
                    "usage": result.usage.to_wire(),
                    "model": result.model,
                    "durationMs": tracker.progress.duration_ms,
                    "toolCount": tracker.progress.tool_count,
                    "error": result.error,
                    "cancelled": result.cancelled,
                    "skills": result.skills,
                    "warnings": result.warnings or None,
                    "timestamp": now_ms(),
                }
            )
            artifact_path = writer.paths.output_path
        if options.max_output is not None:
            max_bytes, max_lines = resolve_budget(
                options.max_output,
                default_bytes=self.settings.default_max_output_bytes,
                default_lines=self.settings.default_max_output_lines,
            )
            truncation = truncate_output(full_output, max_bytes, max_lines, artifact_path)
            if truncation.truncated:
                result.truncation = truncation


def _snapshot(tracker: RunStateTracker) -> ProgressUpdate:
    tracker.touch()
    result = tracker.result
    return ProgressUpdate(
        text=get_final_output(result.messages) or "(running...)",
        details=RunDetails(
            mode="single",
            results=[result.model_copy()],
            progress=[tracker.progress.model_copy(deep=True)],
        ),
    )
