"""Data models for pr-agent."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator


class TaskStatus(str, Enum):
    """Task status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    """Session lifecycle status."""

    IDLE = "idle"
    PLANNING = "planning"
    PLAN_READY = "plan_ready"
    SHIPPING = "shipping"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class JobStatus(str, Enum):
    """Background job status values."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ShipOutcome(str, Enum):
    """How a ship run ended."""

    COMPLETED = "completed"
    PAUSED = "paused"
    PARTIAL_FAILURE = "partial_failure"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FAILED = "failed"
    DETACHED = "detached"


# ============================================================================
# Rate limiting
# ============================================================================


class RateLimitConfig(BaseModel):
    """Token bucket parameters. Durations are in seconds."""

    max_tokens: float = Field(gt=0, description="Bucket capacity")
    refill_rate: float = Field(ge=0, description="Tokens added per refill interval")
    refill_interval: float = Field(gt=0, description="Refill interval in seconds")

    model_config = {"frozen": True}


class RetryConfig(BaseModel):
    """Backoff parameters for the retrying executor. Durations are in seconds."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    base_delay: float = Field(default=1.0, gt=0, description="Initial backoff delay")
    max_delay: float = Field(default=30.0, gt=0, description="Backoff ceiling")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        """Ensure the ceiling is not below the base delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay cannot be smaller than base_delay")
        return self


# ============================================================================
# Plan, tasks and session
# ============================================================================


class Task(BaseModel):
    """A single unit of work in a plan."""

    id: str = Field(description="Task ID, unique within a plan (e.g., 'US-001')")
    title: str = Field(description="Task title")
    description: str = Field(default="", description="Task description")
    priority: int = Field(default=0, description="Tie-break ordering hint")
    dependencies: list[str] = Field(default_factory=list, description="IDs this task depends on")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Task status")
    acceptance_criteria: list[str] = Field(
        default_factory=list, description="Ordered acceptance criteria"
    )
    completed_at: datetime | None = Field(default=None, description="Completion timestamp")
    error: str | None = Field(default=None, description="Failure message")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate task ID is not empty."""
        if not v or not v.strip():
            raise ValueError("Task ID cannot be empty")
        return v.strip()

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: list[str]) -> list[str]:
        """Dependencies behave as a set; keep the first occurrence of each."""
        return list(dict.fromkeys(dep.strip() for dep in v if dep and dep.strip()))


class Execution(BaseModel):
    """Execution metadata of a session."""

    started_at: datetime | None = Field(default=None, description="Ship start timestamp")
    completed_at: datetime | None = Field(default=None, description="Ship end timestamp")
    commits: list[str] = Field(default_factory=list, description="Commit SHAs produced")
    pr_url: str | None = Field(default=None, description="Pull request URL")
    job_id: str | None = Field(default=None, description="Current remote job handle")
    stream_url: str | None = Field(default=None, description="Event stream of the current job")


class Session(BaseModel):
    """Durable execution context for one plan."""

    version: int = Field(default=1, description="State file version")
    session_id: str = Field(description="Session ID")
    status: SessionStatus = Field(default=SessionStatus.IDLE, description="Session status")
    repo: str | None = Field(default=None, description="Repository (owner/name)")
    branch: str | None = Field(default=None, description="Base branch")
    plan_name: str | None = Field(default=None, description="Plan name")
    current_task_id: str | None = Field(default=None, description="Task being executed")
    tasks: list[Task] = Field(default_factory=list, description="Tasks in plan order")
    execution: Execution = Field(default_factory=Execution, description="Execution metadata")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last update timestamp")

    def get_task(self, task_id: str) -> Task | None:
        """Find a task by ID."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def touch(self) -> None:
        """Update the modification timestamp."""
        self.updated_at = datetime.now()


class PlanMetadata(BaseModel):
    """Plan header fields."""

    name: str = Field(default="Untitled Plan", description="Plan name")
    repo: str = Field(default="", description="Repository (owner/name)")
    branch: str = Field(default="main", description="Base branch")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation timestamp")


class Plan(BaseModel):
    """Human readable execution plan, stored as plan.md."""

    metadata: PlanMetadata = Field(default_factory=PlanMetadata, description="Plan metadata")
    context: str = Field(default="", description="Free-form plan context")
    tasks: list[Task] = Field(default_factory=list, description="Tasks in plan order")

    def get_task(self, task_id: str) -> Task | None:
        """Find a task by ID."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class BackgroundJob(BaseModel):
    """Entry of the machine-wide background job registry."""

    job_id: str = Field(description="Remote job handle")
    session_id: str = Field(description="Owning session ID")
    status: JobStatus = Field(default=JobStatus.RUNNING, description="Job status")
    started_at: datetime = Field(default_factory=datetime.now, description="Start timestamp")
    completed_at: datetime | None = Field(default=None, description="End timestamp")
    stream_url: str | None = Field(default=None, description="Event stream URL")
    repo: str | None = Field(default=None, description="Repository (owner/name)")


class Progress(BaseModel):
    """Task counts of a session."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    running: int = 0
    percent: int = 0


class ShipResult(BaseModel):
    """Structured outcome of a ship run."""

    success: bool = Field(description="Whether the run ended without failure")
    outcome: ShipOutcome = Field(description="How the run ended")
    pr_url: str | None = Field(default=None, description="Pull request URL")
    completed_tasks: int = Field(default=0, description="Completed task count")
    total_tasks: int = Field(default=0, description="Total task count")
    error: str | None = Field(default=None, description="Error message")
    job_id: str | None = Field(default=None, description="Remote job handle")


# ============================================================================
# Remote API payloads
# ============================================================================


class ExecuteRequest(BaseModel):
    """Body of the remote execute call."""

    repo: str = Field(description="Repository (owner/name)")
    task: str = Field(description="Prompt for the remote agent")
    branch: str | None = Field(default=None, description="Base branch")
    metadata: dict[str, Any] | None = Field(default=None, description="Opaque metadata")


class ExecuteResponse(BaseModel):
    """Job handle returned by the execute call."""

    job_id: str = Field(alias="jobId", description="Remote job handle")
    stream_url: str = Field(alias="streamUrl", description="Event stream path or URL")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class JobSummary(BaseModel):
    """Remote job as reported by the jobs endpoints."""

    id: str = Field(description="Job ID")
    status: str = Field(description="Remote job status")
    repo_full_name: str = Field(default="", alias="repoFullName", description="Repository")
    task: str = Field(default="", description="Task prompt")
    pr_url: str | None = Field(default=None, alias="prUrl", description="Pull request URL")
    files_changed: int = Field(default=0, alias="filesChanged", description="Files changed")
    error_message: str | None = Field(default=None, alias="errorMessage")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    model_config = {"populate_by_name": True, "extra": "ignore"}


# ============================================================================
# Stream events
# ============================================================================

_EVENT_CONFIG = {"populate_by_name": True, "extra": "ignore"}


class StatusEvent(BaseModel):
    """Phase change reported by the backend (sandbox, clone, agent, push, pr)."""

    type: Literal["status"] = "status"
    phase: str | None = None
    message: str = ""

    model_config = _EVENT_CONFIG


class AgentEvent(BaseModel):
    """Tool call, tool result, thinking or message emitted by the remote agent."""

    type: Literal["agent"] = "agent"
    event_type: str = Field(default="message", alias="eventType")
    tool: str | None = None
    display: str | None = None
    content: str | None = None
    output: str | None = None

    model_config = _EVENT_CONFIG

    @property
    def text(self) -> str:
        """Tool output if present, otherwise message content."""
        return self.output or self.content or ""


class JobResult(BaseModel):
    """Payload of the terminal result event."""

    success: bool = False
    pr_url: str | None = Field(default=None, alias="prUrl")
    pr_number: int | None = Field(default=None, alias="prNumber")
    commit_sha: str | None = Field(default=None, alias="commitSha")
    files_changed: int = Field(default=0, alias="filesChanged")
    additions: int | None = None
    deletions: int | None = None
    sandbox_duration_seconds: float | None = Field(default=None, alias="sandboxDurationSeconds")
    estimated_cost_usd: float | None = Field(default=None, alias="estimatedCostUsd")
    error: str | None = None

    model_config = _EVENT_CONFIG


class ResultEvent(BaseModel):
    """Terminal event carrying the job result."""

    type: Literal["result"] = "result"
    result: JobResult = Field(default_factory=JobResult)

    model_config = _EVENT_CONFIG


class ErrorEvent(BaseModel):
    """Terminal event reporting a backend failure."""

    type: Literal["error"] = "error"
    error: str = "Unknown error"

    model_config = _EVENT_CONFIG


StreamEvent = Annotated[
    Union[StatusEvent, AgentEvent, ResultEvent, ErrorEvent],
    Field(discriminator="type"),
]

_stream_event_adapter = TypeAdapter(StreamEvent)


def parse_stream_event(data: Any) -> StreamEvent:
    """Validate a decoded stream payload into its typed event.

    Raises:
        pydantic.ValidationError: If the payload has no known ``type``
    """
    return _stream_event_adapter.validate_python(data)


# ============================================================================
# Configuration
# ============================================================================


class ApiConfig(BaseModel):
    """Remote backend settings."""

    base_url: str = Field(
        default="https://api.useinvariant.com", description="Backend base URL"
    )
    github_token: str | None = Field(default=None, description="GitHub token forwarded to jobs")
    github_username: str | None = Field(default=None, description="GitHub username for job lookup")
    timeout: float = Field(default=30.0, description="Request timeout (seconds)")
    stream_timeout: float | None = Field(
        default=None, description="Read timeout on the event stream (None = wait forever)"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate base URL is an http(s) URL without trailing slash."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid base URL: {v}. Must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate request timeout is reasonable."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        if v > 600:
            raise ValueError("Timeout cannot exceed 10 minutes")
        return v


class RateLimitSettings(BaseModel):
    """Client-side throttling of backend calls."""

    enable_rate_limiting: bool = Field(default=True, description="Throttle outbound calls")
    api_requests_per_minute: int = Field(default=60, description="Burst/minute budget")
    api_requests_per_hour: int = Field(default=1000, description="Hourly ceiling")
    max_retries: int = Field(default=3, description="Retries on throttling")
    base_delay: float = Field(default=1.0, description="Initial backoff (seconds)")
    max_delay: float = Field(default=30.0, description="Backoff ceiling (seconds)")

    @field_validator("api_requests_per_minute", "api_requests_per_hour")
    @classmethod
    def validate_budget(cls, v: int) -> int:
        """Validate request budgets are positive."""
        if v < 1:
            raise ValueError("Request budget must be at least 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate max retries is reasonable."""
        if v < 0:
            raise ValueError("Max retries cannot be negative")
        if v > 10:
            raise ValueError("Max retries cannot exceed 10")
        return v

    @model_validator(mode="after")
    def validate_delays(self) -> "RateLimitSettings":
        """Validate backoff delays."""
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay cannot be smaller than base_delay")
        return self

    def minute_limit(self) -> RateLimitConfig:
        """Bucket refilled to full every minute."""
        return RateLimitConfig(
            max_tokens=self.api_requests_per_minute,
            refill_rate=self.api_requests_per_minute,
            refill_interval=60.0,
        )

    def hour_limit(self) -> RateLimitConfig:
        """Bucket refilled to full every hour."""
        return RateLimitConfig(
            max_tokens=self.api_requests_per_hour,
            refill_rate=self.api_requests_per_hour,
            refill_interval=3600.0,
        )

    def retry_config(self) -> RetryConfig:
        """Backoff parameters for the executor."""
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


class ShipConfig(BaseModel):
    """Defaults of the ship command."""

    single_session: bool = Field(default=True, description="Run the whole plan in one job")
    step_mode: bool = Field(default=False, description="Pause after each task")
    auto_mode: bool = Field(default=False, description="Continue past failed tasks")
    job_retention_days: int = Field(default=7, description="Background job retention")

    @field_validator("job_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        """Validate retention window."""
        if v < 1:
            raise ValueError("Job retention must be at least 1 day")
        if v > 365:
            raise ValueError("Job retention cannot exceed 365 days")
        return v

    @model_validator(mode="after")
    def validate_modes(self) -> "ShipConfig":
        """Step and auto mode are mutually exclusive."""
        if self.step_mode and self.auto_mode:
            raise ValueError("step_mode and auto_mode cannot both be enabled")
        return self


class DefaultsConfig(BaseModel):
    """Default values for new sessions."""

    default_branch: str = Field(default="main", description="Base branch for new plans")


class Config(BaseModel):
    """Main configuration model."""

    version: str = Field(default="1.0", description="Config version")
    api: ApiConfig = Field(default_factory=ApiConfig, description="Backend settings")
    rate_limits: RateLimitSettings = Field(
        default_factory=RateLimitSettings, description="Rate limiting settings"
    )
    ship: ShipConfig = Field(default_factory=ShipConfig, description="Ship defaults")
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig, description="Defaults")

    model_config = {"extra": "allow"}
