"""Foreground side of async jobs: launch, status polling, and session-scoped completion delivery."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import subprocess
import sys
import tempfile
import time
import uuid
from collections.abc import Callable, Sequence
from pathlib import Path

from pydantic import ValidationError

from subagent_manager.agents import AgentRegistry
from subagent_manager.async_jobs.runner import AsyncRunConfig
from subagent_manager.async_jobs.status import STATUS_FILE, StatusReader
from subagent_manager.chain.validation import validate_async_chain
from subagent_manager.config import Settings
from subagent_manager.errors import AsyncLaunchError
from subagent_manager.file_io import read_json, write_json
from subagent_manager.runner_common import process_isolation_kwargs
from subagent_manager.schemas import (
    ArtifactConfig,
    AsyncJobState,
    AsyncResult,
    AsyncStatus,
    MaxOutputConfig,
    ParallelStep,
    SequentialStep,
    now_ms,
)

logger = logging.getLogger(__name__)

Spawner = Callable[[list[str], Path], int]
CompletionListener = Callable[[AsyncResult], None]

RUNNER_MODULE = "subagent_manager.async_jobs.runner"


def spawn_detached(cmd: list[str], async_dir: Path) -> int:
    """Start ``cmd`` in its own session so it outlives the calling process; return its pid."""
    async_dir.mkdir(parents=True, exist_ok=True)
    log_path = async_dir / "runner.log"
    try:
        with log_path.open("ab") as log_handle:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                cwd=str(async_dir),
                **process_isolation_kwargs(),
            )
    except OSError as exc:
        raise AsyncLaunchError(f"Failed to start async runner: {exc}") from exc
    return proc.pid


def _new_session_id() -> str:
    return f"session-{now_ms()}-{secrets.token_hex(3)}"


class AsyncJobManager:
    """Tracks the async jobs launched from one hosting session.

    All session-scoped state (job map, linger deadlines, pending completions)
    is dropped by :meth:`reset_session`, which the host calls on every session
    start, switch, or branch.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_id: str | None = None,
        cwd: Path | None = None,
        spawner: Spawner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.session_id = session_id or _new_session_id()
        self.base_cwd = (cwd or Path.cwd()).resolve()
        self.spawner = spawner or spawn_detached
        self._clock = clock
        self.jobs: dict[str, AsyncJobState] = {}
        self._removals: dict[str, float] = {}
        self._completions: list[AsyncResult] = []
        self._listeners: list[CompletionListener] = []
        self.reader = StatusReader()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def reset_session(self, session_id: str | None = None, cwd: Path | None = None) -> None:
        self.session_id = session_id or _new_session_id()
        if cwd is not None:
            self.base_cwd = cwd.resolve()
        self.jobs.clear()
        self._removals.clear()
        self._completions.clear()
        self.reader.clear()
        logger.debug("Async job state reset for session %s (cwd=%s)", self.session_id, self.base_cwd)

    def add_listener(self, listener: CompletionListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch(
        self,
        steps: Sequence[SequentialStep | ParallelStep],
        registry: AgentRegistry,
        *,
        mode: str,
        cwd: Path,
        share: bool = False,
        session_root: Path | None = None,
        artifacts_dir: Path | None = None,
        artifact_config: ArtifactConfig | None = None,
        max_output: MaxOutputConfig | None = None,
        chain_skills: Sequence[str] = (),
        skills: list[str] | None = None,
        command: Sequence[str] | None = None,
    ) -> AsyncJobState:
        """Write the queued status and run config, then start the detached runner."""
        validate_async_chain(steps)
        sequential = [step for step in steps if isinstance(step, SequentialStep)]
        agents = [step.agent for step in sequential]
        for index, name in enumerate(agents):
            registry.require(name, step=index + 1)

        async_id = str(uuid.uuid4())
        async_dir = self.settings.async_dir / async_id
        session_dir = session_root / f"async-{async_id}" if session_root is not None else None
        async_dir.mkdir(parents=True, exist_ok=True)
        self.settings.results_dir.mkdir(parents=True, exist_ok=True)
        run_mode = "chain" if mode == "chain" else "single"

        queued = AsyncStatus(
            run_id=async_id,
            mode=run_mode,
            cwd=str(cwd),
            session_dir=str(session_dir) if session_dir else None,
        )
        write_json(async_dir / STATUS_FILE, queued.to_wire())

        config = AsyncRunConfig(
            id=async_id,
            mode=run_mode,
            steps=sequential,
            agents=[registry.require(name).to_wire() for name in dict.fromkeys(agents)],
            cwd=str(cwd),
            async_dir=str(async_dir),
            results_dir=str(self.settings.results_dir),
            session_id=self.session_id,
            session_dir=str(session_dir) if session_dir else None,
            share=share,
            artifacts_dir=str(artifacts_dir) if artifacts_dir else None,
            artifact_config=artifact_config,
            max_output=max_output,
            chain_skills=list(chain_skills),
            skills=skills,
            settings=self.settings.model_dump(mode="json"),
            command=list(command) if command else None,
        )
        fd, config_name = tempfile.mkstemp(prefix=f"subagent-async-cfg-{async_id}-", suffix=".json")
        os.close(fd)
        config_path = Path(config_name)
        write_json(config_path, config.to_wire())

        job = AsyncJobState(
            async_id=async_id,
            async_dir=str(async_dir),
            status="queued",
            mode=run_mode,
            agents=agents,
            steps_total=len(agents),
            started_at=queued.started_at,
            updated_at=queued.started_at,
        )
        self.jobs[async_id] = job

        try:
            pid = self.spawner([sys.executable, "-m", RUNNER_MODULE, str(config_path)], async_dir)
        except AsyncLaunchError:
            self.jobs.pop(async_id, None)
            config_path.unlink(missing_ok=True)
            raise
        logger.info("Launched async %s job %s (pid=%s): %s", run_mode, async_id, pid, " -> ".join(agents))
        return job

    # ------------------------------------------------------------------
    # Polling and completion delivery
    # ------------------------------------------------------------------

    def poll_once(self) -> list[AsyncJobState]:
        """Refresh unfinished jobs from their status files, deliver results, and expire lingering jobs."""
        for job in self.jobs.values():
            if job.finished:
                continue
            status = self.reader.read(Path(job.async_dir))
            if status is None:
                if job.status == "queued":
                    job.status = "running"
                continue
            job.status = status.state
            job.mode = status.mode
            job.current_step = status.current_step if status.current_step is not None else job.current_step
            job.steps_total = len(status.steps) or job.steps_total
            job.started_at = status.started_at or job.started_at
            job.updated_at = status.last_update or now_ms()
            if status.steps:
                job.agents = [step.agent for step in status.steps]
            job.session_dir = status.session_dir or job.session_dir
            job.output_file = status.output_file or job.output_file
            job.total_tokens = status.total_tokens or job.total_tokens
            job.session_file = status.session_file or job.session_file

        self.scan_results()
        self._expire()
        return self.job_list()

    def job_list(self) -> list[AsyncJobState]:
        return list(self.jobs.values())

    def owns(self, result: AsyncResult) -> bool:
        """A result belongs to this session by session id, else by working directory."""
        if result.session_id:
            return result.session_id == self.session_id
        if result.cwd:
            return Path(result.cwd).resolve() == self.base_cwd
        return False

    def scan_results(self) -> list[AsyncResult]:
        """Consume result files that belong to this session; others are left on disk."""
        results_dir = self.settings.results_dir
        if not results_dir.is_dir():
            return []
        delivered: list[AsyncResult] = []
        for path in sorted(results_dir.glob("*.json")):
            raw = read_json(path)
            if not isinstance(raw, dict):
                continue
            try:
                result = AsyncResult.model_validate(raw)
            except ValidationError as exc:
                logger.debug("Ignoring malformed result file %s: %s", path, exc)
                continue
            if not self.owns(result):
                continue
            self._complete(result)
            delivered.append(result)
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove result file %s: %s", path, exc)
        return delivered

    def _complete(self, result: AsyncResult) -> None:
        job = self.jobs.get(result.id)
        if job is not None:
            job.status = "complete" if result.success else "failed"
            job.updated_at = now_ms()
            if result.async_dir:
                job.async_dir = result.async_dir
        self._removals[result.id] = self._clock() + self.settings.job_linger_seconds
        self._completions.append(result)
        logger.info("Async job %s %s", result.id, "completed" if result.success else "failed")
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Completion listener failed for async job %s", result.id)

    def _expire(self) -> None:
        now = self._clock()
        for async_id, deadline in list(self._removals.items()):
            if now >= deadline:
                self._removals.pop(async_id, None)
                self.jobs.pop(async_id, None)

    def drain_completions(self) -> list[AsyncResult]:
        drained, self._completions = self._completions, []
        return drained

    async def run_poller(self, stop: asyncio.Event) -> None:
        """Poll every ``poll_interval_ms`` until ``stop`` is set."""
        interval = self.settings.poll_interval_ms / 1000
        while not stop.is_set():
            self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
