"""Chain scratch directories: creation, shared progress file, output checks, and age-based purge."""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Sequence
from pathlib import Path

from subagent_manager.chain.behavior import PROGRESS_FILE, parallel_task_dir
from subagent_manager.file_io import atomic_write_text, safe_name
from subagent_manager.schemas import RunResult

logger = logging.getLogger(__name__)

PROGRESS_TEMPLATE = "# Progress\n\n## Status\nIn Progress\n\n## Tasks\n\n## Files Changed\n\n## Notes\n"


class ChainScratch:
    """One chain run's working directory, shared by every step of that run."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def create(cls, root: Path, run_id: str) -> ChainScratch:
        path = root / safe_name(run_id)
        path.mkdir(parents=True, exist_ok=True)
        logger.debug("Created chain directory %s", path)
        return cls(path)

    @property
    def progress_path(self) -> Path:
        return self.path / PROGRESS_FILE

    def ensure_progress_file(self) -> bool:
        """Create ``progress.md`` once; return True if this call created it."""
        if self.progress_path.exists():
            return False
        atomic_write_text(self.progress_path, PROGRESS_TEMPLATE)
        return True

    def create_parallel_dirs(self, step_index: int, agents: Sequence[str]) -> list[Path]:
        created: list[Path] = []
        for task_index, agent in enumerate(agents):
            directory = self.path / parallel_task_dir(step_index, task_index, agent)
            directory.mkdir(parents=True, exist_ok=True)
            created.append(directory)
        return created

    def expected_output_path(self, output: str) -> Path:
        candidate = Path(output)
        return candidate if candidate.is_absolute() else self.path / output

    def verify_output(self, output: str) -> str | None:
        """Return a warning when the declared output file is missing, else None."""
        expected = self.expected_output_path(output)
        if expected.exists():
            return None
        search_dir = expected.parent if expected.parent.is_dir() else self.path
        strays: list[str] = []
        if search_dir.is_dir():
            strays = sorted(
                entry.name
                for entry in search_dir.iterdir()
                if entry.is_file() and entry.suffix == ".md" and entry.name != PROGRESS_FILE
            )
        if strays:
            return f"Agent wrote to different file(s): {', '.join(strays)} instead of {output}"
        return f"Agent did not create expected output file: {output}"


def aggregate_parallel_outputs(results: Sequence[RunResult], outputs: Sequence[str]) -> str:
    """Join parallel item outputs under ``=== Parallel Task N (agent) ===`` headers."""
    sections = []
    for index, (result, output) in enumerate(zip(results, outputs)):
        sections.append(f"=== Parallel Task {index + 1} ({result.agent}) ===\n{output}")
    return "\n\n".join(sections)


def cleanup_old_chain_dirs(root: Path, max_age_hours: int, *, now: float | None = None) -> int:
    """Remove chain directories older than ``max_age_hours``; returns how many were removed."""
    if not root.is_dir():
        return 0
    cutoff = (time.time() if now is None else now) - max_age_hours * 3600
    removed = 0
    for entry in root.iterdir():
        try:
            if entry.is_dir() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry)
                removed += 1
        except OSError as exc:
            logger.debug("Could not remove stale chain dir %s: %s", entry, exc)
    if removed:
        logger.info("Removed %d chain dir(s) older than %dh from %s", removed, max_age_hours, root)
    return removed
