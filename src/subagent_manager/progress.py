"""Run-state accumulation from stream records, and throttled progress emission."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Literal

from subagent_manager.messages import extract_text_from_content, extract_tool_args_preview
from subagent_manager.runner_common import coerce_float, coerce_int
from subagent_manager.schemas import AgentProgress, RunResult, ToolActivity, now_ms

logger = logging.getLogger(__name__)

RECENT_TOOLS_LIMIT = 5
RECENT_OUTPUT_LIMIT = 50
_LINES_PER_MESSAGE = 10

UpdateKind = Literal["force", "update"]


class RunStateTracker:
    """Folds stream records into a ``RunResult`` and its ``AgentProgress``.

    Purely synchronous: the executor feeds it records and decides when to
    publish, which keeps this state machine testable without a child process.
    """

    def __init__(
        self,
        result: RunResult,
        progress: AgentProgress,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.result = result
        self.progress = progress
        self._clock = clock
        self._started = clock()
        self.raw_lines: list[str] = []

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def touch(self) -> None:
        self.progress.duration_ms = self.elapsed_ms()

    def apply(self, record: dict[str, Any] | None, raw: str | None = None) -> UpdateKind | None:
        """Apply one record; return how urgently progress should be published."""
        if raw is not None:
            self.raw_lines.append(raw)
        if not record:
            return None
        self.touch()
        kind = record.get("type")
        if kind == "tool_execution_start":
            self.progress.tool_count += 1
            tool_name = record.get("toolName")
            self.progress.current_tool = str(tool_name) if tool_name else None
            args = record.get("args")
            self.progress.current_tool_args = extract_tool_args_preview(args if isinstance(args, dict) else {})
            return "force"
        if kind == "tool_execution_end":
            if self.progress.current_tool:
                self.progress.recent_tools.insert(
                    0,
                    ToolActivity(
                        tool=self.progress.current_tool,
                        args=self.progress.current_tool_args or "",
                        end_ms=now_ms(),
                    ),
                )
                del self.progress.recent_tools[RECENT_TOOLS_LIMIT:]
            self.progress.current_tool = None
            self.progress.current_tool_args = None
            return "force"
        message = record.get("message")
        if kind == "message_end" and isinstance(message, dict):
            self.result.messages.append(message)
            if message.get("role") == "assistant":
                self._apply_assistant(message)
            return "update"
        if kind == "tool_result_end" and isinstance(message, dict):
            self.result.messages.append(message)
            self._push_output(extract_text_from_content(message.get("content")))
            return "update"
        return None

    def _apply_assistant(self, message: dict[str, Any]) -> None:
        usage = self.result.usage
        usage.turns += 1
        reported = message.get("usage")
        if isinstance(reported, dict):
            usage.input += coerce_int(reported.get("input"))
            usage.output += coerce_int(reported.get("output"))
            usage.cache_read += coerce_int(reported.get("cacheRead"))
            usage.cache_write += coerce_int(reported.get("cacheWrite"))
            cost = reported.get("cost")
            if isinstance(cost, dict):
                usage.cost += coerce_float(cost.get("total"))
            self.progress.tokens = usage.input + usage.output
        if not self.result.model and message.get("model"):
            self.result.model = str(message["model"])
        if message.get("errorMessage"):
            self.result.error = str(message["errorMessage"])
        self._push_output(extract_text_from_content(message.get("content")))

    def _push_output(self, text: str) -> None:
        if not text:
            return
        lines = [line for line in text.split("\n") if line.strip()][-_LINES_PER_MESSAGE:]
        recent = self.progress.recent_output
        recent.extend(lines)
        if len(recent) > RECENT_OUTPUT_LIMIT:
            del recent[: len(recent) - RECENT_OUTPUT_LIMIT]


class ThrottledEmitter:
    """Calls ``emit`` at most once per interval, always delivering the trailing edge.

    ``schedule(force=True)`` resets the window so tool boundaries publish
    immediately. ``close()`` cancels the timer and, by default, flushes a
    pending trailing emission.
    """

    def __init__(
        self,
        emit: Callable[[], None],
        interval_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._emit = emit
        self._interval = max(0, interval_ms) / 1000.0
        self._clock = clock
        self._last: float | None = None
        self._pending: asyncio.TimerHandle | None = None
        self._closed = False
        self.emissions = 0

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def schedule(self, *, force: bool = False) -> None:
        if self._closed:
            return
        if force:
            self._last = None
        now = self._clock()
        elapsed = float("inf") if self._last is None else now - self._last
        if elapsed >= self._interval:
            self._cancel_pending()
            self._last = now
            self._deliver()
        elif self._pending is None:
            loop = asyncio.get_running_loop()
            self._pending = loop.call_later(self._interval - elapsed, self._fire)

    def close(self, *, flush: bool = True) -> None:
        if self._closed:
            return
        had_pending = self._pending is not None
        self._cancel_pending()
        self._closed = True
        if flush and had_pending:
            self._deliver()

    def _fire(self) -> None:
        self._pending = None
        if self._closed:
            return
        self._last = self._clock()
        self._deliver()

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _deliver(self) -> None:
        self.emissions += 1
        try:
            self._emit()
        except Exception:
            logger.warning("Progress sink raised; continuing run", exc_info=True)
