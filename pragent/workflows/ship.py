"""
Ship workflow: execute a plan on the remote backend.

Two execution modes are supported:
- per-task: one remote job per task, in dependency order, with optional
  pause between tasks (step mode) or continuation past failures (auto mode)
- single-session: one remote job for every remaining task; per-task
  progress is inferred from the agent's output

A single-session job can also be dispatched in the background and followed
later with ``attach``. The session file is the authority for task status:
it is reloaded before every change and saved right after.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..core import SessionStore
from ..integrations.api import ApiClient, ApiError, stream_path
from ..integrations.plan import PlanError, session_tasks_to_plan_tasks, update_task_status
from ..integrations.prompts import format_plan_prompt, format_task_prompt
from ..models import (
    AgentEvent,
    ErrorEvent,
    ExecuteRequest,
    JobResult,
    JobStatus,
    Plan,
    PlanMetadata,
    ResultEvent,
    Session,
    SessionStatus,
    ShipOutcome,
    ShipResult,
    StatusEvent,
    Task,
    TaskStatus,
)
from ..utils.logger import get_logger
from ..utils.rate_limiter import RateLimitExceededError
from .detection import detect_completions
from .execution_log import ExecutionLog
from .jobs import BackgroundJobRegistry
from .state import (
    can_transition_session,
    complete_session,
    complete_task,
    explain_blocked,
    fail_task,
    find_dependency_cycle,
    find_missing_dependencies,
    get_next_task,
    get_progress,
    incomplete_dependencies,
    is_session_done,
    reset_running_tasks,
    restart_session,
    start_task,
    transition_session,
)

logger = get_logger(__name__)

CONNECTION_LOST = "Connection lost"
CANCELLED = "Cancelled"


class ShipError(Exception):
    """Exception raised for invalid ship options."""

    pass


class _Abort(Exception):
    """Stops a run early with a given outcome."""

    def __init__(self, outcome: ShipOutcome, message: str):
        super().__init__(message)
        self.outcome = outcome
        self.message = message


@dataclass
class ShipOptions:
    """Options of a ship run."""

    cwd: Path
    repo: Optional[str] = None
    branch: Optional[str] = None
    step_mode: bool = False
    auto_mode: bool = False
    background_mode: bool = False
    single_session: bool = True

    def __post_init__(self) -> None:
        """Validate option combinations."""
        self.cwd = Path(self.cwd)
        if self.step_mode and self.auto_mode:
            raise ShipError("Step mode and auto mode cannot be combined")
        if self.step_mode and self.background_mode:
            raise ShipError("Step mode cannot run in the background")


@dataclass
class ShipCallbacks:
    """Optional progress hooks. Only ``on_step_pause`` is awaited."""

    on_task_start: Optional[Callable[[Task], None]] = None
    on_task_complete: Optional[Callable[[Task], None]] = None
    on_task_failed: Optional[Callable[[Task, str], None]] = None
    on_progress: Optional[Callable[[int, int], None]] = None
    on_status: Optional[Callable[[str, Optional[str]], None]] = None
    on_agent: Optional[Callable[[AgentEvent], None]] = None
    on_complete: Optional[Callable[[Optional[str]], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_step_pause: Optional[Callable[[Task], Awaitable[bool]]] = None


@dataclass
class _StreamOutcome:
    """How a consumed event stream ended."""

    result: Optional[JobResult] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success


@dataclass
class _CompletionTracker:
    """Heuristic matches of one single-session job."""

    sent_ids: list[str]
    matched: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)


class ShipEngine:
    """
    Drives a session's plan through the remote backend.

    Runtime failures (network, throttling, remote errors, lost streams) are
    reported through the returned ShipResult, never raised.
    """

    def __init__(
        self,
        options: ShipOptions,
        client: ApiClient,
        callbacks: Optional[ShipCallbacks] = None,
        registry: Optional[BackgroundJobRegistry] = None,
        store: Optional[SessionStore] = None,
    ):
        self.options = options
        self.client = client
        self.callbacks = callbacks or ShipCallbacks()
        self.registry = registry or BackgroundJobRegistry()
        self.store = store or SessionStore(options.cwd)
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run(self) -> ShipResult:
        """Run in the mode selected by the options.

        Step mode needs task boundaries, so it always runs per task.
        """
        if self.options.background_mode:
            return await self.run_background()
        if self.options.single_session and not self.options.step_mode:
            return await self.run_single_session()
        return await self.run_per_task()

    async def run_per_task(self) -> ShipResult:
        """Execute pending tasks one remote job at a time."""
        return await self._guarded(self._run_per_task)

    async def run_single_session(self) -> ShipResult:
        """Execute every remaining task in one remote job."""
        return await self._guarded(self._run_single_session)

    async def run_background(self) -> ShipResult:
        """Dispatch a single-session job without following its stream."""
        return await self._guarded(self._run_background)

    async def attach(self, job_id: Optional[str] = None) -> ShipResult:
        """Follow a running job of this session with single-session semantics.

        Args:
            job_id: Job to follow; defaults to the session's job, then the
                newest running job in the registry
        """
        return await self._guarded(lambda: self._attach(job_id))

    def cancel(self) -> None:
        """Stop the current run. The active stream is closed; the remote job keeps running."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            logger.info("Cancelling ship run")
            self._task.cancel()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _guarded(self, run: Callable[[], Awaitable[ShipResult]]) -> ShipResult:
        self._cancelled = False
        self._task = asyncio.current_task()
        try:
            return await run()
        except _Abort as abort:
            return self._fail(abort.message, abort.outcome)
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            return self._result(ShipOutcome.CANCELLED, error=CANCELLED)
        finally:
            self._task = None

    def _emit(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is not None:
            callback(*args)

    def _load(self) -> Session:
        session = self.store.load_session()
        if session is None:
            raise _Abort(ShipOutcome.FAILED, "No session found")
        return session

    def _result(
        self,
        outcome: ShipOutcome,
        error: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> ShipResult:
        session = self.store.load_session()
        progress = get_progress(session) if session else None
        return ShipResult(
            success=outcome in (ShipOutcome.COMPLETED, ShipOutcome.PAUSED, ShipOutcome.DETACHED),
            outcome=outcome,
            pr_url=session.execution.pr_url if session else None,
            completed_tasks=progress.completed if progress else 0,
            total_tasks=progress.total if progress else 0,
            error=error,
            job_id=job_id or (session.execution.job_id if session else None),
        )

    def _fail(self, message: str, outcome: ShipOutcome = ShipOutcome.FAILED) -> ShipResult:
        self._emit("on_error", message)
        return self._result(outcome, error=message)

    def _repo(self, session: Session) -> str:
        repo = self.options.repo or session.repo
        if not repo:
            raise _Abort(ShipOutcome.FAILED, "No repository configured (use --repo)")
        return repo

    def _begin(self) -> Session:
        """Bring the session to shipping and clear leftovers of interrupted runs."""
        session = self._load()
        if session.status != SessionStatus.PAUSED:
            restart_session(session)
        transition_session(session, SessionStatus.SHIPPING)
        reset = reset_running_tasks(session)
        if reset:
            logger.warning(f"Tasks left running by an earlier run were reset: {', '.join(reset)}")
        if self.options.repo:
            session.repo = self.options.repo
        if self.options.branch:
            session.branch = self.options.branch
        if session.execution.started_at is None:
            session.execution.started_at = session.updated_at
        self.store.save_session(session)
        return session

    def _finish_session(self, status: SessionStatus) -> None:
        session = self._load()
        if not can_transition_session(session.status, status):
            logger.warning(f"Session is {session.status.value}, not moving to {status.value}")
            return
        if status == SessionStatus.COMPLETED:
            complete_session(session)
        else:
            transition_session(session, status)
        self.store.save_session(session)

    def _update_plan(self, task_id: str, status: TaskStatus) -> None:
        try:
            update_task_status(self.store.plan_path, task_id, status)
        except PlanError as e:
            logger.warning(f"Could not update plan file: {e}")

    def _record_result(self, result: JobResult) -> None:
        session = self._load()
        if result.pr_url:
            session.execution.pr_url = result.pr_url
        if result.commit_sha and result.commit_sha not in session.execution.commits:
            session.execution.commits.append(result.commit_sha)
        self.store.save_session(session)

    def _register_job(self, session: Session, job_id: str, stream_url: str) -> None:
        self.registry.register(job_id, session.session_id, stream_url=stream_url, repo=session.repo)
        session = self._load()
        session.execution.job_id = job_id
        session.execution.stream_url = stream_url
        self.store.save_session(session)

    async def _dispatch(self, session: Session, prompt: str, metadata: dict) -> tuple[str, str]:
        response = await self.client.execute(
            ExecuteRequest(
                repo=self._repo(session),
                task=prompt,
                branch=self.options.branch or session.branch,
                metadata=metadata,
            )
        )
        self._register_job(session, response.job_id, response.stream_url)
        return response.job_id, response.stream_url

    async def _consume(
        self,
        job_id: str,
        stream_url: str,
        log: ExecutionLog,
        on_agent: Optional[Callable[[AgentEvent], None]] = None,
    ) -> _StreamOutcome:
        """Read events until a terminal event or the end of the stream."""
        stream = self.client.stream_job(stream_url)
        try:
            async for event in stream:
                log.append(event)

                if isinstance(event, StatusEvent):
                    self._emit("on_status", event.message, event.phase)
                elif isinstance(event, AgentEvent):
                    self._emit("on_agent", event)
                    if on_agent is not None:
                        on_agent(event)
                elif isinstance(event, ResultEvent):
                    status = JobStatus.COMPLETED if event.result.success else JobStatus.FAILED
                    self.registry.update(job_id, status)
                    return _StreamOutcome(result=event.result)
                elif isinstance(event, ErrorEvent):
                    self.registry.update(job_id, JobStatus.FAILED)
                    return _StreamOutcome(error=event.error)
        except ApiError as e:
            logger.warning(f"Event stream of job {job_id} failed: {e}")
        finally:
            await stream.aclose()

        logger.warning(f"Event stream of job {job_id} ended without a result")
        log.note(CONNECTION_LOST)
        self.registry.update(job_id, JobStatus.FAILED)
        return _StreamOutcome(error=CONNECTION_LOST)

    # ------------------------------------------------------------------
    # Per-task mode
    # ------------------------------------------------------------------

    async def _run_per_task(self) -> ShipResult:
        self._repo(self._begin())

        while True:
            session = self._load()
            if session.status == SessionStatus.PAUSED:
                logger.info("Session paused")
                return self._result(ShipOutcome.PAUSED)

            task = get_next_task(session)
            if task is None:
                if is_session_done(session):
                    self._finish_session(SessionStatus.COMPLETED)
                    self._emit("on_complete", session.execution.pr_url)
                    return self._result(ShipOutcome.COMPLETED)
                return self._fail(explain_blocked(session), ShipOutcome.BLOCKED)

            start_task(session, task.id)
            self.store.save_session(session)
            self._update_plan(task.id, TaskStatus.RUNNING)
            self._emit("on_task_start", task)

            outcome = await self._execute_task(session, task)

            session = self._load()
            if outcome.success:
                if outcome.result is not None:
                    self._record_result(outcome.result)
                    session = self._load()
                task = complete_task(session, task.id)
                self.store.save_session(session)
                self._update_plan(task.id, TaskStatus.COMPLETED)
                self._emit("on_task_complete", task)
                progress = get_progress(session)
                self._emit("on_progress", progress.completed, progress.total)
            else:
                error = outcome.error or (outcome.result.error if outcome.result else None) or "Task failed"
                task = fail_task(session, task.id, error)
                self.store.save_session(session)
                self._update_plan(task.id, TaskStatus.FAILED)
                self._emit("on_task_failed", task, error)
                if not self.options.auto_mode:
                    return self._fail(f"Task {task.id} failed: {error}", ShipOutcome.PARTIAL_FAILURE)

            if self.options.step_mode and self.callbacks.on_step_pause is not None:
                upcoming = get_next_task(session)
                if upcoming is not None and not await self.callbacks.on_step_pause(upcoming):
                    session = self._load()
                    transition_session(session, SessionStatus.PAUSED)
                    self.store.save_session(session)
                    logger.info(f"Paused before task {upcoming.id}")
                    return self._result(ShipOutcome.PAUSED)

    async def _execute_task(self, session: Session, task: Task) -> _StreamOutcome:
        prompt = format_task_prompt(task)
        metadata = {"taskId": task.id, "taskTitle": task.title}
        try:
            job_id, stream_url = await self._dispatch(session, prompt, metadata)
        except (ApiError, RateLimitExceededError) as e:
            logger.error(f"Dispatch of task {task.id} failed: {e}")
            return _StreamOutcome(error=str(e))

        log = ExecutionLog.for_task(self.store.logs_dir, task)
        return await self._consume(job_id, stream_url, log)

    # ------------------------------------------------------------------
    # Single-session mode
    # ------------------------------------------------------------------

    def _sendable_tasks(self, session: Session) -> list[Task]:
        """Pending tasks whose dependencies can all be met within this run."""
        reachable = {t.id for t in session.tasks if t.status == TaskStatus.COMPLETED}
        sendable: list[Task] = []
        changed = True
        while changed:
            changed = False
            for task in session.tasks:
                if task.status != TaskStatus.PENDING or task.id in reachable:
                    continue
                if all(dep in reachable for dep in task.dependencies):
                    reachable.add(task.id)
                    sendable.append(task)
                    changed = True
        order = {task.id: index for index, task in enumerate(session.tasks)}
        return sorted(sendable, key=lambda t: order[t.id])

    def _plan_for(self, session: Session) -> Plan:
        try:
            plan = self.store.load_plan()
        except PlanError as e:
            logger.warning(f"Ignoring unreadable plan file: {e}")
            plan = None
        if plan is None:
            plan = Plan(
                metadata=PlanMetadata(
                    name=session.plan_name or "Untitled Plan",
                    repo=session.repo or "",
                    branch=session.branch or "main",
                ),
                tasks=session_tasks_to_plan_tasks(session.tasks),
            )
        return plan

    def _prepare_single_session(self) -> tuple[Session, Plan, list[Task]]:
        session = self._begin()
        self._repo(session)

        cycle = find_dependency_cycle(session.tasks)
        missing = find_missing_dependencies(session.tasks)
        if cycle or missing:
            raise _Abort(ShipOutcome.BLOCKED, explain_blocked(session))

        tasks = self._sendable_tasks(session)
        if not tasks and not is_session_done(session):
            raise _Abort(ShipOutcome.BLOCKED, explain_blocked(session))
        return session, self._plan_for(session), tasks

    async def _dispatch_plan(self, session: Session, plan: Plan, tasks: list[Task]) -> tuple[str, str]:
        prompt = format_plan_prompt(plan, tasks)
        metadata = {
            "planName": plan.metadata.name,
            "taskCount": len(tasks),
            "taskIds": [t.id for t in tasks],
        }
        return await self._dispatch(session, prompt, metadata)

    async def _run_single_session(self) -> ShipResult:
        session, plan, tasks = self._prepare_single_session()
        if not tasks:
            self._finish_session(SessionStatus.COMPLETED)
            self._emit("on_complete", session.execution.pr_url)
            return self._result(ShipOutcome.COMPLETED)

        progress = get_progress(session)
        self._emit("on_status", f"Executing {len(tasks)} tasks in single session...", "agent")
        self._emit("on_progress", progress.completed, progress.total)

        try:
            job_id, stream_url = await self._dispatch_plan(session, plan, tasks)
        except (ApiError, RateLimitExceededError) as e:
            logger.error(f"Dispatch failed: {e}")
            self._finish_session(SessionStatus.ERROR)
            return self._fail(str(e))

        return await self._follow(job_id, stream_url, [t.id for t in tasks], plan.metadata.name)

    async def _run_background(self) -> ShipResult:
        session, plan, tasks = self._prepare_single_session()
        if not tasks:
            self._finish_session(SessionStatus.COMPLETED)
            self._emit("on_complete", session.execution.pr_url)
            return self._result(ShipOutcome.COMPLETED)

        try:
            job_id, _ = await self._dispatch_plan(session, plan, tasks)
        except (ApiError, RateLimitExceededError) as e:
            logger.error(f"Dispatch failed: {e}")
            self._finish_session(SessionStatus.ERROR)
            return self._fail(str(e))

        logger.info(f"Job {job_id} running in the background")
        return self._result(ShipOutcome.DETACHED, job_id=job_id)

    async def _attach(self, job_id: Optional[str]) -> ShipResult:
        session = self._load()
        job_id = job_id or session.execution.job_id
        if job_id is None:
            job = self.registry.latest_running(session.session_id) or self.registry.latest_running()
            job_id = job.job_id if job else None
        if job_id is None:
            return self._fail("No job to watch")

        stream_url = None
        if session.execution.job_id == job_id:
            stream_url = session.execution.stream_url
        if stream_url is None:
            job = self.registry.get(job_id)
            stream_url = job.stream_url if job and job.stream_url else stream_path(job_id)

        sent_ids = [t.id for t in session.tasks if t.status in (TaskStatus.PENDING, TaskStatus.RUNNING)]
        logger.info(f"Attaching to job {job_id}")
        return await self._follow(job_id, stream_url, sent_ids, session.plan_name or "Untitled Plan")

    async def _follow(self, job_id: str, stream_url: str, sent_ids: list[str], plan_name: str) -> ShipResult:
        """Consume a single-session stream and settle task status from it."""
        tracker = _CompletionTracker(sent_ids=sent_ids)
        log = ExecutionLog.for_job(self.store.logs_dir, job_id, plan_name, len(sent_ids))

        def on_agent(event: AgentEvent) -> None:
            found = detect_completions([event], tracker.sent_ids, tracker.matched)
            if found:
                tracker.matched.extend(found)
                tracker.held.extend(found)
                for task_id in found:
                    log.note(f"Detected completion of {task_id}")
                self._settle(tracker)

        outcome = await self._consume(job_id, stream_url, log, on_agent=on_agent)

        if outcome.result is not None:
            self._record_result(outcome.result)

        if not outcome.success:
            error = outcome.error or (outcome.result.error if outcome.result else None) or "Execution failed"
            self._finish_session(SessionStatus.ERROR)
            return self._fail(error)

        tracker.held.extend(t for t in tracker.sent_ids if t not in tracker.held)
        self._settle(tracker)

        session = self._load()
        if not is_session_done(session):
            return self._fail(explain_blocked(session), ShipOutcome.BLOCKED)

        self._finish_session(SessionStatus.COMPLETED)
        self._emit("on_complete", session.execution.pr_url)
        return self._result(ShipOutcome.COMPLETED, job_id=job_id)

    def _settle(self, tracker: _CompletionTracker) -> None:
        """Complete held tasks, in plan order, as soon as their dependencies allow."""
        session = self._load()
        settled: list[Task] = []

        progressed = True
        while progressed and tracker.held:
            progressed = False
            for task in session.tasks:
                if task.id not in tracker.held:
                    continue
                if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED):
                    tracker.held.remove(task.id)
                    continue
                if incomplete_dependencies(session, task):
                    continue
                if task.status == TaskStatus.PENDING:
                    start_task(session, task.id)
                settled.append(complete_task(session, task.id))
                tracker.held.remove(task.id)
                progressed = True

        if not settled:
            return

        self.store.save_session(session)
        progress = get_progress(session)
        completed = progress.completed - len(settled)
        for task in settled:
            completed += 1
            self._update_plan(task.id, TaskStatus.COMPLETED)
            self._emit("on_task_complete", task)
            self._emit("on_progress", completed, progress.total)
