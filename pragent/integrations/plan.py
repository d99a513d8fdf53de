"""Reading and writing plan.md execution plans."""

import random
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pragent.models import Plan, PlanMetadata, Task, TaskStatus
from pragent.utils.logger import get_logger

logger = get_logger(__name__)

TASK_HEADER = re.compile(r"^### ([\w-]+):\s*(.+)$")
CRITERION_ITEM = re.compile(r"^- \[[xX ]\] (.+)$")

STATUS_PREFIX = "- **Status**:"
PRIORITY_PREFIX = "- **Priority**:"
DEPENDENCIES_PREFIX = "- **Dependencies**:"
CRITERIA_HEADER = "**Acceptance Criteria:**"

ADJECTIVES = [
    "bold", "brave", "bright", "calm", "clever", "cool", "cosmic", "crisp",
    "daring", "eager", "epic", "fast", "fierce", "fresh", "golden", "grand",
    "happy", "keen", "lively", "lucky", "magic", "mighty", "noble", "polished",
    "proud", "quick", "rapid", "sharp", "shiny", "silent", "sleek", "steady",
    "stellar", "strong", "swift", "vivid", "wild", "witty", "zen", "zesty",
]

NOUNS = [
    "anchor", "arrow", "atlas", "beacon", "bolt", "breeze", "bridge", "canyon",
    "comet", "coral", "crystal", "delta", "eagle", "ember", "falcon", "forest",
    "galaxy", "glacier", "harbor", "hawk", "horizon", "lantern", "maple", "meadow",
    "meteor", "nebula", "ocean", "orbit", "otter", "phoenix", "pine", "prism",
    "quartz", "raven", "reef", "river", "rocket", "sail", "spark", "summit",
    "thunder", "tiger", "tower", "valley", "wave", "wolf", "zenith",
]


class PlanError(Exception):
    """Plan file error."""
    pass


class _TaskBuilder:
    """Accumulates the lines of one task block."""

    def __init__(self, task_id: str, title: str, position: int):
        self.id = task_id
        self.title = title.strip()
        self.status = TaskStatus.PENDING
        self.priority = position
        self.dependencies: List[str] = []
        self.description: List[str] = []
        self.criteria: List[str] = []
        self.in_criteria = False

    def build(self) -> Task:
        return Task(
            id=self.id,
            title=self.title,
            status=self.status,
            priority=self.priority,
            dependencies=self.dependencies,
            description="\n".join(self.description),
            acceptance_criteria=self.criteria,
        )


def _parse_metadata_line(line: str, metadata: PlanMetadata) -> None:
    for part in (p.strip() for p in line.lstrip(">").split("|")):
        if part.startswith("Created:"):
            value = part[len("Created:"):].strip()
            try:
                metadata.created_at = datetime.fromisoformat(value)
            except ValueError:
                logger.debug(f"Ignoring unparsable plan date: {value}")
        elif part.startswith("Repo:"):
            metadata.repo = part[len("Repo:"):].strip()
        elif part.startswith("Branch:"):
            metadata.branch = part[len("Branch:"):].strip() or metadata.branch


def parse_plan_md(content: str) -> Plan:
    """Parse plan.md content.

    Unknown lines are ignored; a plan without tasks parses to an empty task list.

    Args:
        content: Markdown text

    Returns:
        Parsed plan
    """
    metadata = PlanMetadata()
    context_lines: List[str] = []
    tasks: List[Task] = []
    section = ""
    current: Optional[_TaskBuilder] = None
    seen_title = False

    def flush() -> None:
        nonlocal current
        if current is not None:
            tasks.append(current.build())
            current = None

    for line in content.splitlines():
        stripped = line.strip()

        if line.startswith("# ") and not seen_title:
            metadata.name = line[2:].strip() or metadata.name
            seen_title = True
            continue

        if stripped.startswith(">"):
            _parse_metadata_line(stripped, metadata)
            continue

        if line.startswith("## "):
            flush()
            section = line[3:].strip().lower()
            continue

        match = TASK_HEADER.match(line)
        if match:
            flush()
            current = _TaskBuilder(match.group(1), match.group(2), len(tasks) + 1)
            continue

        if current is None:
            if section == "context" and stripped:
                context_lines.append(stripped)
            continue

        if stripped.startswith(STATUS_PREFIX):
            value = stripped[len(STATUS_PREFIX):].strip().lower()
            try:
                current.status = TaskStatus(value)
            except ValueError:
                logger.warning(f"Unknown status '{value}' for task {current.id}, using pending")
        elif stripped.startswith(PRIORITY_PREFIX):
            value = stripped[len(PRIORITY_PREFIX):].strip()
            if value.lstrip("-").isdigit():
                current.priority = int(value)
        elif stripped.startswith(DEPENDENCIES_PREFIX):
            value = stripped[len(DEPENDENCIES_PREFIX):].strip()
            if value.lower() != "none":
                current.dependencies = [d.strip() for d in value.split(",") if d.strip()]
        elif stripped.startswith(CRITERIA_HEADER):
            current.in_criteria = True
        elif stripped == "---":
            flush()
        elif current.in_criteria and stripped.startswith("- ["):
            item = CRITERION_ITEM.match(stripped)
            if item:
                current.criteria.append(item.group(1).strip())
        elif stripped and not current.in_criteria and not stripped.startswith("- **"):
            current.description.append(stripped)

    flush()
    return Plan(metadata=metadata, context="\n".join(context_lines), tasks=tasks)


def generate_plan_md(plan: Plan) -> str:
    """Render a plan as markdown.

    Acceptance criteria are checked once their task is completed.
    """
    lines = [f"# {plan.metadata.name}", ""]

    meta_parts = [f"Created: {plan.metadata.created_at.date().isoformat()}"]
    if plan.metadata.repo:
        meta_parts.append(f"Repo: {plan.metadata.repo}")
    if plan.metadata.branch:
        meta_parts.append(f"Branch: {plan.metadata.branch}")
    lines.extend([f"> {' | '.join(meta_parts)}", ""])

    if plan.context:
        lines.extend(["## Context", "", plan.context, ""])

    if plan.tasks:
        lines.extend(["## Tasks", ""])

        for index, task in enumerate(plan.tasks):
            lines.append(f"### {task.id}: {task.title}")
            lines.append(f"{STATUS_PREFIX} {task.status.value}")
            lines.append(f"{PRIORITY_PREFIX} {task.priority}")
            lines.append(f"{DEPENDENCIES_PREFIX} {', '.join(task.dependencies) or 'none'}")
            lines.append("")

            if task.description:
                lines.extend([task.description, ""])

            if task.acceptance_criteria:
                checked = "x" if task.status == TaskStatus.COMPLETED else " "
                lines.append(CRITERIA_HEADER)
                lines.extend(f"- [{checked}] {criterion}" for criterion in task.acceptance_criteria)
                lines.append("")

            if index < len(plan.tasks) - 1:
                lines.extend(["---", ""])

    return "\n".join(lines)


def load_plan(path: Path) -> Optional[Plan]:
    """Load plan.md, or None if it does not exist.

    Raises:
        PlanError: If the file cannot be read
    """
    if not path.exists():
        return None

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanError(f"Failed to read plan {path}: {e}")

    return parse_plan_md(content)


def save_plan(plan: Plan, path: Path) -> None:
    """Write plan.md, creating its directory.

    Raises:
        PlanError: If the file cannot be written
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_plan_md(plan), encoding="utf-8")
    except OSError as e:
        raise PlanError(f"Failed to save plan {path}: {e}")


def update_task_status(path: Path, task_id: str, status: TaskStatus) -> bool:
    """Set one task's status in plan.md.

    Returns:
        False if there is no plan or no such task
    """
    plan = load_plan(path)
    if plan is None:
        return False

    task = plan.get_task(task_id)
    if task is None:
        logger.debug(f"Task {task_id} not in plan {path}")
        return False

    task.status = status
    save_plan(plan, path)
    return True


def plan_tasks_to_session_tasks(plan_tasks: List[Task]) -> List[Task]:
    """Copy plan tasks for a session. Running tasks restart as pending."""
    session_tasks = []
    for task in plan_tasks:
        copy = task.model_copy(deep=True)
        if copy.status == TaskStatus.RUNNING:
            copy.status = TaskStatus.PENDING
        session_tasks.append(copy)
    return session_tasks


def session_tasks_to_plan_tasks(session_tasks: List[Task]) -> List[Task]:
    """Copy session tasks for the plan file, without runtime fields."""
    return [
        task.model_copy(update={"completed_at": None, "error": None}, deep=True)
        for task in session_tasks
    ]


def generate_plan_name() -> str:
    """Memorable plan name such as ``bold-falcon``."""
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}"


def create_plan(
    repo: str,
    context: str = "",
    branch: str = "main",
    tasks: Optional[List[Task]] = None,
    name: Optional[str] = None,
) -> Plan:
    """New plan with a generated name unless one is given."""
    return Plan(
        metadata=PlanMetadata(name=name or generate_plan_name(), repo=repo, branch=branch),
        context=context,
        tasks=list(tasks or []),
    )
