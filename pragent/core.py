"""Session persistence for a working directory."""

import secrets
import shutil
import time
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from pragent.integrations.plan import load_plan, plan_tasks_to_session_tasks
from pragent.models import Plan, Session, Task, TaskStatus
from pragent.utils.logger import get_logger

logger = get_logger(__name__)

STATE_DIR_NAME = ".pr-agent"
SESSION_FILE = "state.yaml"
PLAN_FILE = "plan.md"
LOGS_DIR = "logs"


def generate_session_id() -> str:
    """Short sortable ID: base36 timestamp plus random suffix."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = digits[rem] + stamp
    return f"{stamp}-{secrets.token_hex(3)}"


class SessionStore:
    """Session file, plan file and logs under ``<cwd>/.pr-agent``.

    The session file is the authority for task status. Callers reload it
    before each change and save right after; the last writer wins.
    """

    def __init__(self, cwd: Optional[Path] = None):
        """Initialize store.

        Args:
            cwd: Working directory (defaults to the current directory)
        """
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.base_dir = self.cwd / STATE_DIR_NAME

    @property
    def session_path(self) -> Path:
        return self.base_dir / SESSION_FILE

    @property
    def plan_path(self) -> Path:
        return self.base_dir / PLAN_FILE

    @property
    def logs_dir(self) -> Path:
        return self.base_dir / LOGS_DIR

    def has_session(self) -> bool:
        """Check if a session file exists."""
        return self.session_path.exists()

    def has_plan(self) -> bool:
        """Check if a plan file exists."""
        return self.plan_path.exists()

    def load_session(self) -> Optional[Session]:
        """Load the session.

        Returns:
            Session, or None if there is none or the file is corrupt
        """
        if not self.session_path.exists():
            return None

        try:
            with open(self.session_path) as f:
                data = yaml.safe_load(f)
            return Session.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.error(f"Failed to load session from {self.session_path}: {e}")
            return None

    def save_session(self, session: Session) -> None:
        """Write the session, stamping ``updated_at``."""
        session.touch()
        self.base_dir.mkdir(parents=True, exist_ok=True)

        # Use JSON mode to serialize enums and datetimes as strings
        data = session.model_dump(mode="json")
        with open(self.session_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

        logger.debug(f"Saved session {session.session_id} ({session.status.value})")

    def create_session(
        self,
        repo: Optional[str] = None,
        branch: Optional[str] = None,
        plan_name: Optional[str] = None,
    ) -> Session:
        """Create and save a new idle session."""
        session = Session(
            session_id=generate_session_id(),
            repo=repo,
            branch=branch,
            plan_name=plan_name,
        )
        self.save_session(session)
        logger.info(f"Created session {session.session_id}")
        return session

    def delete_session(self) -> bool:
        """Remove the session file.

        Returns:
            True if a file was removed
        """
        if not self.session_path.exists():
            return False
        self.session_path.unlink()
        logger.info(f"Deleted session file {self.session_path}")
        return True

    def reset(self) -> bool:
        """Remove the whole ``.pr-agent`` directory (session, plan and logs)."""
        if not self.base_dir.exists():
            return False
        shutil.rmtree(self.base_dir)
        logger.info(f"Removed {self.base_dir}")
        return True

    def load_plan(self) -> Optional[Plan]:
        """Load plan.md of this working directory."""
        return load_plan(self.plan_path)


def sync_session_tasks(session: Session, plan: Plan) -> Session:
    """Replace the session tasks with the plan's tasks.

    Tasks that keep their status keep their runtime fields (completion time,
    error). Tasks left running by an interrupted run become pending.
    """
    previous = {task.id: task for task in session.tasks}
    tasks: list[Task] = []

    for task in plan_tasks_to_session_tasks(plan.tasks):
        old = previous.get(task.id)
        if old is not None and old.status == task.status:
            task.completed_at = old.completed_at
            task.error = old.error
        elif task.status == TaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = session.updated_at
        tasks.append(task)

    session.tasks = tasks
    session.plan_name = plan.metadata.name
    session.repo = session.repo or plan.metadata.repo or None
    session.branch = session.branch or plan.metadata.branch or None
    session.touch()
    return session
