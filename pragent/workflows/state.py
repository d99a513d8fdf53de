"""
Session and task state machine.

Transitions are applied in place on a loaded Session; callers persist the
session afterwards. Scheduling helpers pick the next runnable task, count
progress and explain why a plan cannot make progress.
"""

import math
from datetime import datetime

from ..models import Progress, Session, SessionStatus, Task, TaskStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class StateError(Exception):
    """Base exception for state machine errors."""

    pass


class InvalidTransitionError(StateError):
    """Exception raised when a status change is not allowed."""

    def __init__(self, kind: str, current: str, target: str):
        super().__init__(f"Invalid {kind} transition: {current} -> {target}")
        self.current = current
        self.target = target


class DependencyNotMetError(StateError):
    """Exception raised when a task starts before its dependencies completed."""

    def __init__(self, task_id: str, missing: list[str]):
        super().__init__(f"Task {task_id} has incomplete dependencies: {', '.join(missing)}")
        self.task_id = task_id
        self.missing = missing


class TaskNotFoundError(StateError):
    """Exception raised when a task ID is not part of the session."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.IDLE: {SessionStatus.PLANNING},
    SessionStatus.PLANNING: {SessionStatus.PLAN_READY},
    SessionStatus.PLAN_READY: {SessionStatus.SHIPPING},
    SessionStatus.SHIPPING: {SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.ERROR},
    SessionStatus.PAUSED: {SessionStatus.SHIPPING},
    SessionStatus.COMPLETED: {SessionStatus.IDLE},
    SessionStatus.ERROR: {SessionStatus.IDLE},
}

TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.SKIPPED: set(),
}


def can_transition_session(current: SessionStatus, target: SessionStatus) -> bool:
    """Check whether a session status change is allowed."""
    return current == target or target in SESSION_TRANSITIONS[current]


def transition_session(session: Session, target: SessionStatus) -> Session:
    """
    Move a session to a new status.

    Moving to the current status is a no-op. Entering ``completed`` requires
    every task to be completed.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if session.status == target:
        return session
    if target not in SESSION_TRANSITIONS[session.status]:
        raise InvalidTransitionError("session", session.status.value, target.value)
    if target == SessionStatus.COMPLETED:
        incomplete = [t.id for t in session.tasks if t.status != TaskStatus.COMPLETED]
        if incomplete:
            raise InvalidTransitionError(
                "session", session.status.value, f"{target.value} (incomplete: {', '.join(incomplete)})"
            )

    logger.debug(f"Session {session.session_id}: {session.status.value} -> {target.value}")
    session.status = target
    session.touch()
    return session


def restart_session(session: Session) -> Session:
    """Bring a session back to ``plan_ready`` through legal transitions.

    Terminal sessions (completed, error) walk idle -> planning -> plan_ready.
    Sessions already on that path continue along it. Shipping and paused
    sessions are left alone.
    """
    path = [SessionStatus.IDLE, SessionStatus.PLANNING, SessionStatus.PLAN_READY]
    if session.status in (SessionStatus.SHIPPING, SessionStatus.PAUSED):
        return session
    if session.status in (SessionStatus.COMPLETED, SessionStatus.ERROR):
        transition_session(session, SessionStatus.IDLE)
    for status in path[path.index(session.status) + 1:]:
        transition_session(session, status)
    return session


def _require_task(session: Session, task_id: str) -> Task:
    task = session.get_task(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _transition_task(task: Task, target: TaskStatus) -> None:
    if target not in TASK_TRANSITIONS[task.status]:
        raise InvalidTransitionError("task", task.status.value, target.value)
    task.status = target


def incomplete_dependencies(session: Session, task: Task) -> list[str]:
    """Dependencies of ``task`` that are not completed (or not defined)."""
    missing = []
    for dep_id in task.dependencies:
        dep = session.get_task(dep_id)
        if dep is None or dep.status != TaskStatus.COMPLETED:
            missing.append(dep_id)
    return missing


def start_task(session: Session, task_id: str) -> Task:
    """
    Mark a pending task as running and make it the current task.

    Raises:
        TaskNotFoundError: If the task does not exist
        InvalidTransitionError: If the task is not pending
        DependencyNotMetError: If a dependency is not completed
    """
    task = _require_task(session, task_id)
    if task.status != TaskStatus.PENDING:
        raise InvalidTransitionError("task", task.status.value, TaskStatus.RUNNING.value)
    missing = incomplete_dependencies(session, task)
    if missing:
        raise DependencyNotMetError(task_id, missing)

    _transition_task(task, TaskStatus.RUNNING)
    session.current_task_id = task_id
    session.touch()
    logger.info(f"Task {task_id} started: {task.title}")
    return task


def complete_task(session: Session, task_id: str) -> Task:
    """Mark a running task as completed.

    Raises:
        TaskNotFoundError: If the task does not exist
        InvalidTransitionError: If the task is not running
    """
    task = _require_task(session, task_id)
    _transition_task(task, TaskStatus.COMPLETED)
    task.completed_at = datetime.now()
    task.error = None
    if session.current_task_id == task_id:
        session.current_task_id = None
    session.touch()
    logger.info(f"Task {task_id} completed")
    return task


def fail_task(session: Session, task_id: str, error: str) -> Task:
    """Mark a running task as failed and record the error.

    Raises:
        TaskNotFoundError: If the task does not exist
        InvalidTransitionError: If the task is not running
    """
    task = _require_task(session, task_id)
    _transition_task(task, TaskStatus.FAILED)
    task.completed_at = datetime.now()
    task.error = error
    if session.current_task_id == task_id:
        session.current_task_id = None
    session.touch()
    logger.error(f"Task {task_id} failed: {error}")
    return task


def retry_task(session: Session, task_id: str) -> Task:
    """Reset a failed task to pending, clearing its error and timestamp."""
    task = _require_task(session, task_id)
    _transition_task(task, TaskStatus.PENDING)
    task.completed_at = None
    task.error = None
    session.touch()
    logger.info(f"Task {task_id} reset for retry")
    return task


def skip_task(session: Session, task_id: str) -> Task:
    """Mark a pending task as skipped."""
    task = _require_task(session, task_id)
    _transition_task(task, TaskStatus.SKIPPED)
    session.touch()
    logger.info(f"Task {task_id} skipped")
    return task


def reset_running_tasks(session: Session) -> list[str]:
    """Return tasks left running by an interrupted run to pending.

    Returns:
        IDs of the tasks that were reset
    """
    reset = []
    for task in session.tasks:
        if task.status == TaskStatus.RUNNING:
            task.status = TaskStatus.PENDING
            reset.append(task.id)
    if session.current_task_id in reset:
        session.current_task_id = None
    if reset:
        session.touch()
    return reset


def complete_session(session: Session) -> Session:
    """Move a shipping session to completed, stamping the execution end."""
    transition_session(session, SessionStatus.COMPLETED)
    session.current_task_id = None
    session.execution.completed_at = datetime.now()
    return session


def get_next_task(session: Session) -> Task | None:
    """First pending task, in plan order, whose dependencies are all completed."""
    for task in session.tasks:
        if task.status != TaskStatus.PENDING:
            continue
        if not incomplete_dependencies(session, task):
            return task
    return None


def get_progress(session: Session) -> Progress:
    """Count tasks by status."""
    total = len(session.tasks)
    counts = {status: 0 for status in TaskStatus}
    for task in session.tasks:
        counts[task.status] += 1

    completed = counts[TaskStatus.COMPLETED]
    return Progress(
        total=total,
        completed=completed,
        failed=counts[TaskStatus.FAILED],
        pending=counts[TaskStatus.PENDING],
        running=counts[TaskStatus.RUNNING],
        percent=math.floor(100 * completed / total + 0.5) if total else 0,
    )


def is_session_done(session: Session) -> bool:
    """Whether every task is completed."""
    return all(task.status == TaskStatus.COMPLETED for task in session.tasks)


def find_missing_dependencies(tasks: list[Task]) -> list[str]:
    """IDs referenced as dependencies but not defined, in first-seen order."""
    defined = {task.id for task in tasks}
    missing: list[str] = []
    for task in tasks:
        for dep_id in task.dependencies:
            if dep_id not in defined and dep_id not in missing:
                missing.append(dep_id)
    return missing


def find_dependency_cycle(tasks: list[Task]) -> list[str] | None:
    """
    Find a dependency cycle among tasks.

    Returns:
        The cycle as an ID path whose first and last element are equal
        (e.g. ``["A", "B", "A"]``), or None when the graph is acyclic
    """
    graph = {task.id: [d for d in task.dependencies] for task in tasks}
    visiting: list[str] = []
    done: set[str] = set()

    def visit(task_id: str) -> list[str] | None:
        if task_id in visiting:
            return visiting[visiting.index(task_id):] + [task_id]
        if task_id in done or task_id not in graph:
            return None
        visiting.append(task_id)
        for dep_id in graph[task_id]:
            cycle = visit(dep_id)
            if cycle:
                return cycle
        visiting.pop()
        done.add(task_id)
        return None

    for task in tasks:
        cycle = visit(task.id)
        if cycle:
            return cycle
    return None


def explain_blocked(session: Session) -> str:
    """Describe why no task can run although the session is not done."""
    reasons = []

    cycle = find_dependency_cycle(session.tasks)
    if cycle:
        reasons.append(f"dependency cycle: {' -> '.join(cycle)}")

    missing = find_missing_dependencies(session.tasks)
    if missing:
        reasons.append(f"missing dependencies: {', '.join(missing)}")

    failed = [t.id for t in session.tasks if t.status == TaskStatus.FAILED]
    if failed:
        reasons.append(f"failed tasks: {', '.join(failed)}")

    skipped = [t.id for t in session.tasks if t.status == TaskStatus.SKIPPED]
    if skipped:
        reasons.append(f"skipped tasks: {', '.join(skipped)}")

    if not reasons:
        pending = [t.id for t in session.tasks if t.status == TaskStatus.PENDING]
        reasons.append(f"no runnable task among: {', '.join(pending) or 'none'}")

    return "Plan is blocked: " + "; ".join(reasons)
