"""Tests for session persistence."""

import re

from pragent.core import SessionStore, generate_session_id, sync_session_tasks
from pragent.integrations.plan import create_plan
from pragent.models import SessionStatus, Task, TaskStatus


class TestSessionStore:
    """Test SessionStore functionality."""

    def test_paths(self, tmp_path):
        store = SessionStore(tmp_path)

        assert store.session_path == tmp_path / ".pr-agent" / "state.yaml"
        assert store.plan_path == tmp_path / ".pr-agent" / "plan.md"
        assert store.logs_dir == tmp_path / ".pr-agent" / "logs"

    def test_create_and_load(self, tmp_path):
        store = SessionStore(tmp_path)

        created = store.create_session(repo="acme/widgets", branch="main")
        loaded = store.load_session()

        assert store.has_session()
        assert loaded.session_id == created.session_id
        assert loaded.status == SessionStatus.IDLE
        assert loaded.repo == "acme/widgets"

    def test_save_persists_tasks(self, tmp_path):
        store = SessionStore(tmp_path)
        session = store.create_session()
        session.tasks = [Task(id="A", title="a", status=TaskStatus.FAILED, error="boom")]
        session.execution.pr_url = "https://gh/pr/1"

        store.save_session(session)
        loaded = store.load_session()

        assert loaded.tasks[0].status == TaskStatus.FAILED
        assert loaded.tasks[0].error == "boom"
        assert loaded.execution.pr_url == "https://gh/pr/1"

    def test_missing_session(self, tmp_path):
        assert SessionStore(tmp_path).load_session() is None

    def test_corrupt_session(self, tmp_path):
        store = SessionStore(tmp_path)
        store.base_dir.mkdir()
        store.session_path.write_text("session_id: [unclosed")

        assert store.load_session() is None

    def test_invalid_session(self, tmp_path):
        store = SessionStore(tmp_path)
        store.base_dir.mkdir()
        store.session_path.write_text("status: idle\n")

        assert store.load_session() is None

    def test_delete_and_reset(self, tmp_path):
        store = SessionStore(tmp_path)
        store.create_session()

        assert store.delete_session() is True
        assert store.delete_session() is False
        assert store.reset() is True
        assert not store.base_dir.exists()
        assert store.reset() is False


def test_generate_session_id():
    first = generate_session_id()

    assert re.fullmatch(r"[0-9a-z]+-[0-9a-f]{6}", first)
    assert generate_session_id() != first


class TestSyncSessionTasks:
    """Test merging plan tasks into a session."""

    def test_replaces_tasks_and_metadata(self, tmp_path):
        session = SessionStore(tmp_path).create_session()
        plan = create_plan(
            "acme/widgets",
            branch="develop",
            name="calm-otter",
            tasks=[Task(id="A", title="a"), Task(id="B", title="b", status=TaskStatus.RUNNING)],
        )

        sync_session_tasks(session, plan)

        assert [t.id for t in session.tasks] == ["A", "B"]
        assert session.tasks[1].status == TaskStatus.PENDING
        assert session.plan_name == "calm-otter"
        assert session.repo == "acme/widgets"
        assert session.branch == "develop"

    def test_keeps_runtime_fields_when_status_unchanged(self, tmp_path):
        session = SessionStore(tmp_path).create_session(repo="acme/mine")
        session.tasks = [Task(id="A", title="a", status=TaskStatus.FAILED, error="boom")]
        plan = create_plan("acme/other", tasks=[Task(id="A", title="a", status=TaskStatus.FAILED)])

        sync_session_tasks(session, plan)

        assert session.tasks[0].error == "boom"
        assert session.repo == "acme/mine"

    def test_status_change_in_plan_wins(self, tmp_path):
        session = SessionStore(tmp_path).create_session()
        session.tasks = [Task(id="A", title="a", status=TaskStatus.FAILED, error="boom")]
        plan = create_plan("acme/widgets", tasks=[Task(id="A", title="a", status=TaskStatus.COMPLETED)])

        sync_session_tasks(session, plan)

        assert session.tasks[0].status == TaskStatus.COMPLETED
        assert session.tasks[0].error is None
        assert session.tasks[0].completed_at is not None
