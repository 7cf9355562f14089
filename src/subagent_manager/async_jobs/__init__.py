"""Detached async jobs: the background runner and the foreground job manager."""

from subagent_manager.async_jobs.manager import AsyncJobManager, spawn_detached
from subagent_manager.async_jobs.runner import AsyncJobRunner, AsyncRunConfig, run_async_job
from subagent_manager.async_jobs.status import StatusReader, status_report, write_run_log

__all__ = [
    "AsyncJobManager",
    "AsyncJobRunner",
    "AsyncRunConfig",
    "StatusReader",
    "run_async_job",
    "spawn_detached",
    "status_report",
    "write_run_log",
]
