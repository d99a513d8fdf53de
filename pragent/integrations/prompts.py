"""Prompts sent to the remote agent."""

from typing import List

from pragent.integrations.plan import generate_plan_md
from pragent.models import Plan, Task, TaskStatus


def completion_marker(task_id: str) -> str:
    """Marker the agent prints when a task is done."""
    return f"<task-complete>{task_id}</task-complete>"


def format_task_prompt(task: Task) -> str:
    """Prompt for executing a single task.

    Args:
        task: Task to execute

    Returns:
        Markdown prompt ending with the completion marker instruction
    """
    lines = [f"## Task: {task.id} - {task.title}", ""]

    if task.description:
        lines.extend([task.description, ""])

    if task.acceptance_criteria:
        lines.append("### Acceptance Criteria")
        lines.extend(f"- [ ] {criterion}" for criterion in task.acceptance_criteria)
        lines.append("")

    lines.extend([
        "### Instructions",
        "1. Complete the task described above",
        "2. Ensure all acceptance criteria are met",
        "3. Commit your changes with a clear message",
        f"4. When done, output: {completion_marker(task.id)}",
    ])
    return "\n".join(lines)


def format_plan_prompt(plan: Plan, tasks: List[Task]) -> str:
    """Prompt for executing every remaining task in one session.

    Only ``tasks`` are listed as work to do; the rest of the plan is
    included for context with its current status.

    Args:
        plan: Full plan
        tasks: Pending tasks to execute, in plan order

    Returns:
        Markdown prompt asking for one commit per task and one pull request
    """
    example_id = tasks[0].id if tasks else "TASK-ID"
    done = [t.id for t in plan.tasks if t.status == TaskStatus.COMPLETED]
    todo = ", ".join(t.id for t in tasks)

    sections = [
        "# Execution Plan",
        "",
        "You have been given a multi-task plan to execute. Complete ALL remaining tasks "
        "in order, respecting dependencies.",
        "",
        f"Tasks to execute: {todo}",
    ]
    if done:
        sections.append(f"Already completed (do not redo): {', '.join(done)}")

    sections.extend([
        "",
        generate_plan_md(plan),
        "",
        "## Instructions",
        "",
        "1. **Execute tasks in order** - Start with tasks that have no dependencies, "
        "then proceed to dependent tasks",
        "2. **Commit after each task** - Make a git commit with a clear message that "
        "includes the task ID after completing each task",
        f"3. **Report progress** - After completing each task, output: `{completion_marker('TASK-ID')}`",
        "4. **Handle failures gracefully** - If a task fails, report it and continue "
        "to the next independent task if possible",
        "5. **Create ONE PR at the end** - After all tasks are complete, create a single "
        "pull request with all changes",
        "",
        "## Task Completion Format",
        "",
        "After completing each task, output exactly:",
        "```",
        completion_marker(example_id),
        "```",
        "",
        f"Replace {example_id} with the actual task ID.",
        "",
        "## Important",
        "",
        "- DO NOT create multiple PRs - all changes go into ONE PR",
        "- Commit frequently (after each task) with descriptive messages",
        "- If you encounter issues, document them and continue where possible",
        "- The plan shows task dependencies - respect the order",
        "",
        "Begin executing the plan now.",
    ])
    return "\n".join(sections)
