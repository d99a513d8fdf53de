"""Workflow modules for plan execution."""

from pragent.workflows.detection import (
    detect_commit,
    detect_completions,
    detect_marker,
    detect_todo_update,
)
from pragent.workflows.execution_log import ExecutionLog
from pragent.workflows.jobs import (
    BackgroundJobRegistry,
    JobStore,
    MemoryJobStore,
    YamlJobStore,
)
from pragent.workflows.ship import (
    ShipCallbacks,
    ShipEngine,
    ShipError,
    ShipOptions,
)
from pragent.workflows.state import (
    DependencyNotMetError,
    InvalidTransitionError,
    StateError,
    TaskNotFoundError,
    complete_session,
    complete_task,
    explain_blocked,
    fail_task,
    find_dependency_cycle,
    find_missing_dependencies,
    get_next_task,
    get_progress,
    restart_session,
    retry_task,
    skip_task,
    start_task,
    transition_session,
)

__all__ = [
    # State machine
    "transition_session",
    "restart_session",
    "complete_session",
    "start_task",
    "complete_task",
    "fail_task",
    "retry_task",
    "skip_task",
    "get_next_task",
    "get_progress",
    "find_dependency_cycle",
    "find_missing_dependencies",
    "explain_blocked",
    "StateError",
    "InvalidTransitionError",
    "DependencyNotMetError",
    "TaskNotFoundError",
    # Completion detection
    "detect_completions",
    "detect_marker",
    "detect_commit",
    "detect_todo_update",
    # Job registry
    "BackgroundJobRegistry",
    "JobStore",
    "YamlJobStore",
    "MemoryJobStore",
    # Execution
    "ExecutionLog",
    "ShipEngine",
    "ShipOptions",
    "ShipCallbacks",
    "ShipError",
]
