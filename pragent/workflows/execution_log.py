"""Markdown execution logs written under .pr-agent/logs/."""

from datetime import datetime
from pathlib import Path

from ..models import AgentEvent, ErrorEvent, ResultEvent, StatusEvent, StreamEvent, Task
from ..utils.logger import get_logger

logger = get_logger(__name__)


def format_event(event: StreamEvent, timestamp: datetime | None = None) -> str | None:
    """Render one stream event as a log entry, or None if it is not logged."""
    stamp = (timestamp or datetime.now()).isoformat(timespec="seconds")

    if isinstance(event, StatusEvent):
        return f"[{stamp}] **Status:** {event.message} ({event.phase or ''})"

    if isinstance(event, AgentEvent):
        if event.event_type == "tool_call":
            line = f"[{stamp}] **Tool:** {event.tool or 'unknown'}"
            if event.display:
                line += f"\n  {event.display}"
            return line
        if event.event_type == "message":
            return f"[{stamp}] **Message:** {event.text}"
        return None

    if isinstance(event, ResultEvent):
        line = f"[{stamp}] **Result:** {'Success' if event.result.success else 'Failed'}"
        if event.result.pr_url:
            line += f"\n  PR: {event.result.pr_url}"
        if event.result.error:
            line += f"\n  Error: {event.result.error}"
        return line

    if isinstance(event, ErrorEvent):
        return f"[{stamp}] **Error:** {event.error}"

    return None


class ExecutionLog:
    """Append-only markdown log of one task or one plan execution.

    Write failures are reported once and then ignored so a full disk never
    interrupts a running job.
    """

    def __init__(self, path: Path):
        self.path = path
        self._disabled = False

    @classmethod
    def for_task(cls, logs_dir: Path, task: Task) -> "ExecutionLog":
        """Log of a per-task run: ``<task-id>.md``."""
        log = cls(logs_dir / f"{task.id}.md")
        log._write_header(f"# Task Log: {task.id}", [f"**Title:** {task.title}"])
        return log

    @classmethod
    def for_job(cls, logs_dir: Path, job_id: str, plan_name: str, task_count: int) -> "ExecutionLog":
        """Log of a single-session run: ``execution-<job-id>.md``."""
        log = cls(logs_dir / f"execution-{job_id}.md")
        log._write_header(f"# Execution Log: {plan_name}", [f"**Tasks:** {task_count}"])
        return log

    def _write_header(self, title: str, fields: list[str]) -> None:
        lines = [title, "", *fields, f"**Started:** {datetime.now().isoformat(timespec='seconds')}", "", "---", ""]
        self._write("\n".join(lines) + "\n", mode="w")

    def append(self, event: StreamEvent) -> None:
        """Append an event entry."""
        entry = format_event(event)
        if entry:
            self._write(entry + "\n\n", mode="a")

    def note(self, message: str) -> None:
        """Append a free-form line (task completions, connection loss)."""
        stamp = datetime.now().isoformat(timespec="seconds")
        self._write(f"[{stamp}] {message}\n\n", mode="a")

    def _write(self, text: str, mode: str) -> None:
        if self._disabled:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, mode) as f:
                f.write(text)
        except OSError as e:
            logger.warning(f"Cannot write execution log {self.path}: {e}")
            self._disabled = True
