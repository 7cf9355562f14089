"""Per-run artifact files (input, output, raw event log, metadata) and their retention."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from subagent_manager.file_io import append_text, atomic_write_text, safe_name, write_json
from subagent_manager.schemas import ArtifactConfig, ArtifactPaths

logger = logging.getLogger(__name__)

CLEANUP_MARKER_FILE = ".last-cleanup"
_CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


def artifacts_dir_for_session(session_file: str | Path | None, fallback: Path) -> Path:
    """Place artifacts beside the hosting session file, or in ``fallback`` without one."""
    if session_file:
        return Path(session_file).parent / "subagent-artifacts"
    return fallback


def get_artifact_paths(artifacts_dir: Path, run_id: str, agent: str, index: int | None = None) -> ArtifactPaths:
    suffix = f"_{index}" if index is not None else ""
    base = f"{run_id}_{safe_name(agent)}{suffix}"
    return ArtifactPaths(
        input_path=str(artifacts_dir / f"{base}_input.md"),
        output_path=str(artifacts_dir / f"{base}_output.md"),
        jsonl_path=str(artifacts_dir / f"{base}.jsonl"),
        metadata_path=str(artifacts_dir / f"{base}_meta.json"),
    )


class ArtifactWriter:
    """Writes the artifact quadruple for exactly one run."""

    def __init__(self, paths: ArtifactPaths, config: ArtifactConfig) -> None:
        self.paths = paths
        self.config = config

    @classmethod
    def create(
        cls,
        artifacts_dir: Path | None,
        config: ArtifactConfig | None,
        *,
        run_id: str,
        agent: str,
        index: int | None = None,
    ) -> ArtifactWriter | None:
        if artifacts_dir is None or config is None or not config.enabled:
            return None
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        return cls(get_artifact_paths(artifacts_dir, run_id, agent, index), config)

    def write_input(self, agent: str, task: str) -> None:
        if self.config.include_input:
            atomic_write_text(Path(self.paths.input_path), f"# Task for {agent}\n\n{task}")

    def write_output(self, output: str) -> None:
        if self.config.include_output:
            atomic_write_text(Path(self.paths.output_path), output)

    def write_events(self, lines: Iterable[str]) -> None:
        if not self.config.include_jsonl:
            return
        payload = "".join(f"{line}\n" for line in lines)
        if payload:
            append_text(Path(self.paths.jsonl_path), payload)

    def write_metadata(self, metadata: dict[str, Any]) -> None:
        if self.config.include_metadata:
            write_json(Path(self.paths.metadata_path), metadata)


def cleanup_old_artifacts(
    directory: Path, max_age_days: int, *, now: float | None = None, force: bool = False
) -> int:
    """Delete artifact files older than ``max_age_days``; runs at most once a day unless ``force``.

    Returns the number of files removed.
    """
    if not directory.is_dir():
        return 0
    current = time.time() if now is None else now
    marker = directory / CLEANUP_MARKER_FILE
    if not force:
        try:
            if current - marker.stat().st_mtime < _CLEANUP_INTERVAL_SECONDS:
                return 0
        except OSError:
            pass

    cutoff = current - max(1, int(max_age_days)) * 86_400
    removed = 0
    for entry in directory.iterdir():
        if entry.name == CLEANUP_MARKER_FILE:
            continue
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                entry.unlink()
                removed += 1
        except OSError as exc:
            logger.debug("Could not remove stale artifact %s: %s", entry, exc)
    atomic_write_text(marker, str(int(current * 1000)))
    if removed:
        logger.info("Removed %d artifact file(s) older than %d day(s) from %s", removed, max_age_days, directory)
    return removed
