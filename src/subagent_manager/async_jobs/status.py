"""Reading async status files, the status query, and the Markdown run log."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from subagent_manager.config import Settings
from subagent_manager.file_io import atomic_write_text, find_by_prefix, read_json
from subagent_manager.formatters import format_duration
from subagent_manager.schemas import AsyncResult, AsyncStatus, AsyncStepStatus, ToolResponse

logger = logging.getLogger(__name__)

STATUS_FILE = "status.json"
EVENTS_FILE = "events.jsonl"
OUTPUT_LOG_FILE = "output.log"
_MAX_CACHE_SIZE = 50


def run_log_name(run_id: str) -> str:
    return f"subagent-log-{run_id}.md"


def _iso(ms: int | None) -> str:
    if not ms:
        return "n/a"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


class StatusReader:
    """Reads ``status.json`` files, skipping the re-parse when the mtime is unchanged."""

    def __init__(self, max_entries: int = _MAX_CACHE_SIZE) -> None:
        self.max_entries = max_entries
        self._cache: OrderedDict[str, tuple[float, AsyncStatus]] = OrderedDict()
        self.reads = 0

    def read(self, async_dir: Path) -> AsyncStatus | None:
        path = async_dir / STATUS_FILE
        key = str(path)
        try:
            mtime = path.stat().st_mtime
        except OSError:
            self._cache.pop(key, None)
            return None
        cached = self._cache.get(key)
        if cached is not None and cached[0] == mtime:
            self._cache.move_to_end(key)
            return cached[1]

        raw = read_json(path)
        self.reads += 1
        if raw is None:
            return None
        try:
            status = AsyncStatus.model_validate(raw)
        except ValidationError as exc:
            logger.debug("Ignoring malformed status file %s: %s", path, exc)
            return None
        self._cache[key] = (mtime, status)
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        return status

    def clear(self) -> None:
        self._cache.clear()


def resolve_async_dir(settings: Settings, run_id: str | None, run_dir: str | None) -> tuple[Path | None, str | None]:
    """Return ``(async_dir, resolved_id)`` from an explicit dir, an exact id, or an id prefix."""
    if run_dir:
        path = Path(run_dir).resolve()
        return path, run_id or path.name
    if not run_id:
        return None, None
    direct = settings.async_dir / run_id
    if direct.exists():
        return direct, run_id
    match = find_by_prefix(settings.async_dir, run_id)
    if match is not None:
        return match, match.name
    return None, run_id


def status_report(
    settings: Settings,
    *,
    run_id: str | None = None,
    run_dir: str | None = None,
    reader: StatusReader | None = None,
) -> ToolResponse:
    """Describe an async run by id (or prefix) or directory."""
    async_dir, resolved_id = resolve_async_dir(settings, run_id, run_dir)
    result_path = find_by_prefix(settings.results_dir, run_id, ".json") if run_id and async_dir is None else None
    if async_dir is None and result_path is None:
        return ToolResponse(text="Async run not found. Provide id or dir.", is_error=True)

    if async_dir is not None:
        status = (reader or StatusReader()).read(async_dir)
        if status is not None:
            total = len(status.steps) or 1
            step_line = f"Step: {status.current_step + 1}/{total}" if status.current_step is not None else f"Steps: {total}"
            lines = [
                f"Run: {status.run_id}",
                f"State: {status.state}",
                f"Mode: {status.mode}",
                step_line,
                f"Started: {_iso(status.started_at)}",
                f"Updated: {_iso(status.last_update)}",
                f"Dir: {async_dir}",
            ]
            if status.session_file:
                lines.append(f"Session: {status.session_file}")
            log_path = async_dir / run_log_name(resolved_id or "unknown")
            if log_path.exists():
                lines.append(f"Log: {log_path}")
            events_path = async_dir / EVENTS_FILE
            if events_path.exists():
                lines.append(f"Events: {events_path}")
            return ToolResponse(text="\n".join(lines))

    if result_path is not None:
        raw = read_json(result_path)
        if isinstance(raw, dict):
            try:
                data = AsyncResult.model_validate({"id": run_id, **raw})
            except ValidationError as exc:
                logger.debug("Ignoring malformed result file %s: %s", result_path, exc)
            else:
                lines = [
                    f"Run: {data.id}",
                    f"State: {'complete' if data.success else 'failed'}",
                    f"Result: {result_path}",
                ]
                if data.summary:
                    lines.extend(["", data.summary])
                return ToolResponse(text="\n".join(lines))

    return ToolResponse(text="Status file not found.", is_error=True)


def write_run_log(
    path: Path,
    *,
    run_id: str,
    mode: str,
    cwd: str,
    started_at: int,
    ended_at: int,
    steps: Sequence[AsyncStepStatus],
    summary: str,
    truncated: bool,
    artifacts_dir: str | None = None,
    session_file: str | None = None,
) -> None:
    lines = [
        f"# Subagent run {run_id}",
        "",
        f"- **Mode:** {mode}",
        f"- **CWD:** {cwd}",
        f"- **Started:** {_iso(started_at)}",
        f"- **Ended:** {_iso(ended_at)}",
        f"- **Duration:** {format_duration(ended_at - started_at)}",
    ]
    if session_file:
        lines.append(f"- **Session:** {session_file}")
    if artifacts_dir:
        lines.append(f"- **Artifacts:** {artifacts_dir}")
    lines.extend(["", "## Steps", "| Step | Agent | Status | Duration |", "| --- | --- | --- | --- |"])
    for index, step in enumerate(steps):
        duration = format_duration(step.duration_ms) if step.duration_ms is not None else "-"
        lines.append(f"| {index + 1} | {step.agent} | {step.status} | {duration} |")
    lines.extend(["", "## Summary"])
    if truncated:
        lines.extend(["_Output truncated_", ""])
    lines.extend([summary.strip(), ""])
    atomic_write_text(path, "\n".join(lines))
