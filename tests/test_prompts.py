"""Tests for agent prompts and execution logs."""

from datetime import datetime

from pragent.integrations.plan import create_plan
from pragent.integrations.prompts import completion_marker, format_plan_prompt, format_task_prompt
from pragent.models import AgentEvent, ErrorEvent, JobResult, ResultEvent, StatusEvent, Task, TaskStatus
from pragent.workflows.execution_log import ExecutionLog, format_event


class TestPrompts:
    """Test prompt generation."""

    def test_task_prompt(self):
        task = Task(
            id="US-1",
            title="Add login",
            description="Build the login form.",
            acceptance_criteria=["Form validates email"],
        )

        prompt = format_task_prompt(task)

        assert prompt.startswith("## Task: US-1 - Add login")
        assert "Build the login form." in prompt
        assert "- [ ] Form validates email" in prompt
        assert prompt.endswith(completion_marker("US-1"))

    def test_plan_prompt_lists_remaining_tasks(self):
        tasks = [
            Task(id="A", title="a", status=TaskStatus.COMPLETED),
            Task(id="B", title="b", dependencies=["A"]),
            Task(id="C", title="c"),
        ]
        plan = create_plan("acme/widgets", context="Context here", tasks=tasks, name="calm-otter")

        prompt = format_plan_prompt(plan, tasks[1:])

        assert prompt.startswith("# Execution Plan")
        assert "Tasks to execute: B, C" in prompt
        assert "Already completed (do not redo): A" in prompt
        assert "# calm-otter" in prompt
        assert "Context here" in prompt
        assert "<task-complete>B</task-complete>" in prompt
        assert "Create ONE PR" in prompt


class TestExecutionLog:
    """Test markdown execution logs."""

    def test_format_events(self):
        stamp = datetime(2026, 1, 2, 3, 4, 5)

        assert format_event(StatusEvent(phase="clone", message="Cloning"), stamp) == (
            "[2026-01-02T03:04:05] **Status:** Cloning (clone)"
        )
        assert format_event(
            AgentEvent(eventType="tool_call", tool="Bash", display="ls"), stamp
        ) == "[2026-01-02T03:04:05] **Tool:** Bash\n  ls"
        assert format_event(AgentEvent(eventType="thinking", content="hmm"), stamp) is None
        assert "PR: https://gh/pr/1" in format_event(
            ResultEvent(result=JobResult(success=True, prUrl="https://gh/pr/1")), stamp
        )
        assert format_event(ErrorEvent(error="boom"), stamp).endswith("**Error:** boom")

    def test_job_log(self, tmp_path):
        log = ExecutionLog.for_job(tmp_path / "logs", "job-1", "calm-otter", 3)
        log.append(StatusEvent(phase="sandbox", message="Creating sandbox"))
        log.note("Detected completion of A")

        content = (tmp_path / "logs" / "execution-job-1.md").read_text()

        assert content.startswith("# Execution Log: calm-otter")
        assert "**Tasks:** 3" in content
        assert "Creating sandbox" in content
        assert "Detected completion of A" in content

    def test_task_log(self, tmp_path):
        log = ExecutionLog.for_task(tmp_path, Task(id="US-1", title="Add login"))
        log.append(AgentEvent(eventType="message", content="Working on it"))

        content = (tmp_path / "US-1.md").read_text()

        assert "# Task Log: US-1" in content
        assert "**Message:** Working on it" in content

    def test_unwritable_log_is_disabled(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        log = ExecutionLog.for_job(blocker / "logs", "job-1", "plan", 1)
        log.append(ErrorEvent(error="boom"))

        assert log._disabled is True
