"""Tests for data models."""

import pytest
from pydantic import ValidationError

from pragent.models import (
    AgentEvent,
    ApiConfig,
    Config,
    ExecuteResponse,
    JobSummary,
    RateLimitSettings,
    ResultEvent,
    RetryConfig,
    Session,
    ShipConfig,
    StatusEvent,
    Task,
    TaskStatus,
    parse_stream_event,
)


class TestTask:
    """Test Task model."""

    def test_defaults(self):
        task = Task(id="US-1", title="Add login")

        assert task.status == TaskStatus.PENDING
        assert task.dependencies == []
        assert task.acceptance_criteria == []

    def test_id_is_stripped(self):
        assert Task(id="  US-1 ", title="t").id == "US-1"

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            Task(id="   ", title="t")

    def test_dependencies_behave_as_set(self):
        task = Task(id="C", title="t", dependencies=["A", "B", "A", " ", "B "])
        assert task.dependencies == ["A", "B"]


class TestSession:
    """Test Session model."""

    def test_get_task(self):
        session = Session(session_id="s", tasks=[Task(id="A", title="a")])

        assert session.get_task("A").title == "a"
        assert session.get_task("B") is None

    def test_touch_updates_timestamp(self):
        session = Session(session_id="s")
        before = session.updated_at

        session.touch()

        assert session.updated_at >= before


class TestStreamEvents:
    """Test stream event decoding."""

    def test_status_event(self):
        event = parse_stream_event({"type": "status", "phase": "clone", "message": "Cloning"})

        assert isinstance(event, StatusEvent)
        assert event.phase == "clone"

    def test_agent_event_text_prefers_output(self):
        event = parse_stream_event({
            "type": "agent", "eventType": "tool_result", "output": "ok", "content": "ignored",
        })

        assert isinstance(event, AgentEvent)
        assert event.text == "ok"
        assert AgentEvent(content="hello").text == "hello"
        assert AgentEvent().text == ""

    def test_result_event_aliases(self):
        event = parse_stream_event({
            "type": "result",
            "result": {"success": True, "prUrl": "https://gh/pr/1", "commitSha": "abc", "extra": 1},
        })

        assert isinstance(event, ResultEvent)
        assert event.result.pr_url == "https://gh/pr/1"
        assert event.result.commit_sha == "abc"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_stream_event({"type": "mystery"})


class TestApiPayloads:
    """Test backend payload models."""

    def test_execute_response_aliases(self):
        response = ExecuteResponse.model_validate({"jobId": "j1", "streamUrl": "/s", "other": True})

        assert response.job_id == "j1"
        assert response.stream_url == "/s"

    def test_job_summary(self):
        job = JobSummary.model_validate({
            "id": "j1", "status": "completed", "repoFullName": "acme/widgets",
            "createdAt": "2026-04-01T10:00:00Z",
        })

        assert job.repo_full_name == "acme/widgets"
        assert job.created_at.year == 2026
        assert job.pr_url is None


class TestConfigModels:
    """Test configuration validation."""

    def test_base_url_validation(self):
        assert ApiConfig(base_url=" https://api.test/ ").base_url == "https://api.test"
        with pytest.raises(ValidationError):
            ApiConfig(base_url="api.test")

    def test_timeout_validation(self):
        with pytest.raises(ValidationError):
            ApiConfig(timeout=0)
        with pytest.raises(ValidationError):
            ApiConfig(timeout=601)

    def test_rate_limit_budgets(self):
        settings = RateLimitSettings(api_requests_per_minute=10, api_requests_per_hour=100)

        minute = settings.minute_limit()
        hour = settings.hour_limit()

        assert (minute.max_tokens, minute.refill_rate, minute.refill_interval) == (10, 10, 60.0)
        assert (hour.max_tokens, hour.refill_rate, hour.refill_interval) == (100, 100, 3600.0)

    def test_rate_limit_validation(self):
        with pytest.raises(ValidationError):
            RateLimitSettings(api_requests_per_minute=0)
        with pytest.raises(ValidationError):
            RateLimitSettings(max_retries=11)
        with pytest.raises(ValidationError):
            RateLimitSettings(base_delay=5.0, max_delay=1.0)

    def test_retry_config_validation(self):
        with pytest.raises(ValidationError):
            RetryConfig(base_delay=2.0, max_delay=1.0)

    def test_ship_modes_exclusive(self):
        with pytest.raises(ValidationError):
            ShipConfig(step_mode=True, auto_mode=True)

    def test_ship_retention_bounds(self):
        with pytest.raises(ValidationError):
            ShipConfig(job_retention_days=0)

    def test_config_allows_extra_sections(self):
        config = Config.model_validate({"custom": {"key": "value"}})
        assert config.model_dump()["custom"] == {"key": "value"}
