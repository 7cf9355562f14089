"""Pydantic models for structured data exchanged between orchestration layers.

Every model serializes with camelCase keys (``to_wire``) so status files,
result files, and artifact metadata stay readable by any consumer of the job
store, while Python code uses snake_case attributes.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
)
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Base model accepting both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Usage and progress
# ---------------------------------------------------------------------------


class Usage(WireModel):
    """Token and cost totals accumulated across a run's assistant turns."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    turns: int = 0


class TokenUsage(WireModel):
    input: int = 0
    output: int = 0
    total: int = 0


class ToolActivity(WireModel):
    tool: str
    args: str = ""
    end_ms: int = 0


ProgressStatus = Literal["pending", "running", "completed", "failed"]


class AgentProgress(WireModel):
    """Live view of one in-flight run, mutated only by its executor."""

    index: int = 0
    agent: str
    status: ProgressStatus = "pending"
    task: str = ""
    skills: list[str] | None = None
    current_tool: str | None = None
    current_tool_args: str | None = None
    recent_tools: list[ToolActivity] = Field(default_factory=list)
    recent_output: list[str] = Field(default_factory=list)
    tool_count: int = 0
    tokens: int = 0
    duration_ms: int = 0
    error: str | None = None
    failed_tool: str | None = None


class ProgressSummary(WireModel):
    tool_count: int = 0
    tokens: int = 0
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Artifacts and truncation
# ---------------------------------------------------------------------------


class ArtifactPaths(WireModel):
    input_path: str
    output_path: str
    jsonl_path: str
    metadata_path: str


class ArtifactConfig(WireModel):
    """Which artifact files a run writes, and how long they are kept."""

    enabled: bool = True
    include_input: bool = True
    include_output: bool = True
    include_jsonl: bool = True
    include_metadata: bool = True
    cleanup_days: int = 7


class MaxOutputConfig(WireModel):
    """Caller-supplied output budget; unset fields fall back to the defaults."""

    bytes: int | None = None
    lines: int | None = None


class TruncationResult(WireModel):
    text: str
    truncated: bool = False
    original_bytes: int | None = None
    original_lines: int | None = None
    artifact_path: str | None = None


class ArtifactSummary(WireModel):
    dir: str
    files: list[ArtifactPaths] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------

SKIPPED_EXIT_CODE = -1
CANCELLED_EXIT_CODE = 130
SKIPPED_ERROR = "Skipped due to fail-fast"
CANCELLED_ERROR = "Cancelled by abort signal"


class RunResult(WireModel):
    """Outcome of one subordinate-agent invocation."""

    agent: str
    task: str
    exit_code: int = 0
    messages: list[dict[str, Any]] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: str | None = None
    error: str | None = None
    cancelled: bool = False
    task_index: int | None = None
    progress: AgentProgress | None = None
    progress_summary: ProgressSummary | None = None
    artifact_paths: ArtifactPaths | None = None
    truncation: TruncationResult | None = None
    skills: list[str] | None = None
    warnings: list[str] = Field(default_factory=list)
    session_file: str | None = None

    @classmethod
    def skipped(cls, agent: str, task_index: int | None = None) -> RunResult:
        return cls(
            agent=agent,
            task="(skipped)",
            exit_code=SKIPPED_EXIT_CODE,
            error=SKIPPED_ERROR,
            task_index=task_index,
        )

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def was_skipped(self) -> bool:
        return self.exit_code == SKIPPED_EXIT_CODE

    @property
    def duration_ms(self) -> int:
        return self.progress.duration_ms if self.progress is not None else 0


# ---------------------------------------------------------------------------
# Chain steps
# ---------------------------------------------------------------------------

SkillInput = Union[str, list[str], bool, None]


class TaskItem(WireModel):
    """One agent invocation inside a chain step or a parallel batch."""

    agent: str
    task: str | None = None
    cwd: str | None = None
    output: Union[Literal[False], str, None] = None
    reads: Union[Literal[False], list[str], None] = None
    progress: bool | None = None
    skill: SkillInput = None


class SequentialStep(TaskItem):
    kind: Literal["sequential"] = "sequential"


class ParallelStep(WireModel):
    """A fan-out step whose items run concurrently."""

    kind: Literal["parallel"] = "parallel"
    items: list[TaskItem] = Field(default_factory=list, alias="parallel")
    concurrency: int | None = None
    fail_fast: bool = False


def _step_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("kind")
        if kind in ("sequential", "parallel"):
            return kind
        return "parallel" if ("parallel" in value or "items" in value) else "sequential"
    return getattr(value, "kind", "sequential")


ChainStep = Annotated[
    Union[
        Annotated[SequentialStep, Tag("sequential")],
        Annotated[ParallelStep, Tag("parallel")],
    ],
    Discriminator(_step_kind),
]


def step_agents(step: SequentialStep | ParallelStep) -> list[str]:
    """Return every agent name a step will invoke."""
    if isinstance(step, ParallelStep):
        return [item.agent for item in step.items]
    return [step.agent]


class ChainSpec(WireModel):
    """Wrapper used to validate a raw chain list in one pass."""

    steps: list[ChainStep] = Field(default_factory=list)


def parse_chain(raw_steps: list[Any]) -> list[SequentialStep | ParallelStep]:
    return ChainSpec.model_validate({"steps": raw_steps}).steps


# ---------------------------------------------------------------------------
# Async job records
# ---------------------------------------------------------------------------

AsyncState = Literal["queued", "running", "complete", "failed"]
AsyncStepState = Literal["pending", "running", "complete", "failed"]
_STATE_RANK: dict[str, int] = {"queued": 0, "running": 1, "complete": 2, "failed": 2}


class AsyncStepStatus(WireModel):
    agent: str
    status: AsyncStepState = "pending"
    started_at: int | None = None
    ended_at: int | None = None
    duration_ms: int | None = None
    exit_code: int | None = None
    error: str | None = None
    tokens: TokenUsage | None = None
    skills: list[str] | None = None


class AsyncStatus(WireModel):
    """Durable lifecycle record of an async job (``status.json``)."""

    run_id: str
    mode: Literal["single", "chain"] = "single"
    state: AsyncState = "queued"
    started_at: int = Field(default_factory=now_ms)
    ended_at: int | None = None
    last_update: int = Field(default_factory=now_ms)
    pid: int | None = None
    cwd: str | None = None
    current_step: int | None = None
    steps: list[AsyncStepStatus] = Field(default_factory=list)
    artifacts_dir: str | None = None
    session_dir: str | None = None
    output_file: str | None = None
    total_tokens: TokenUsage | None = None
    session_file: str | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.state in ("complete", "failed")

    def advance(self, state: AsyncState) -> None:
        """Move the job forward; the lifecycle never moves backwards."""
        if state == self.state:
            return
        if self.finished or _STATE_RANK[state] < _STATE_RANK[self.state]:
            raise ValueError(f"Illegal async state transition: {self.state} -> {state}")
        self.state = state
        self.last_update = now_ms()


class AsyncStepResult(WireModel):
    agent: str
    output: str = ""
    success: bool = False
    artifact_paths: ArtifactPaths | None = None
    truncated: bool | None = None


class AsyncResult(WireModel):
    """Transient completion record consumed by the foreground watcher."""

    id: str
    agent: str = ""
    success: bool = False
    summary: str = ""
    results: list[AsyncStepResult] = Field(default_factory=list)
    exit_code: int = 0
    timestamp: int = Field(default_factory=now_ms)
    duration_ms: int = 0
    truncated: bool = False
    artifacts_dir: str | None = None
    cwd: str | None = None
    async_dir: str | None = None
    session_id: str | None = None
    session_file: str | None = None


class AsyncJobState(WireModel):
    """Foreground view of an async job, refreshed from its status file."""

    async_id: str
    async_dir: str
    status: AsyncState = "queued"
    mode: Literal["single", "chain"] | None = None
    agents: list[str] | None = None
    current_step: int | None = None
    steps_total: int | None = None
    started_at: int | None = None
    updated_at: int | None = None
    session_dir: str | None = None
    output_file: str | None = None
    total_tokens: TokenUsage | None = None
    session_file: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in ("complete", "failed")


# ---------------------------------------------------------------------------
# Request / response surface
# ---------------------------------------------------------------------------

RunMode = Literal["single", "parallel", "chain"]
AgentScope = Literal["user", "project", "both"]


class RunDetails(WireModel):
    mode: RunMode = "single"
    results: list[RunResult] = Field(default_factory=list)
    progress: list[AgentProgress] | None = None
    artifacts: ArtifactSummary | None = None
    truncation: TruncationResult | None = None
    chain_agents: list[str] | None = None
    total_steps: int | None = None
    current_step_index: int | None = None
    async_id: str | None = None
    async_dir: str | None = None


class ToolResponse(WireModel):
    text: str
    details: RunDetails = Field(default_factory=RunDetails)
    is_error: bool = False


class SubagentRequest(WireModel):
    """A delegation request: exactly one of single, parallel (``tasks``), or ``chain``."""

    agent: str | None = None
    task: str | None = None
    tasks: list[TaskItem] | None = None
    chain: list[ChainStep] | None = None
    run_async: bool | None = Field(default=None, alias="async")
    agent_scope: AgentScope = "user"
    cwd: str | None = None
    max_output: MaxOutputConfig | None = None
    artifacts: bool = True
    include_progress: bool = False
    share: bool = True
    session_dir: str | None = None
    output: Union[str, bool, None] = None
    skill: SkillInput = None

    def mode_flags(self) -> tuple[bool, bool, bool]:
        """Return ``(has_chain, has_tasks, has_single)``."""
        return (
            bool(self.chain),
            bool(self.tasks),
            bool(self.agent and self.task),
        )
