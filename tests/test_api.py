"""Tests for the backend HTTP client."""

import json

import httpx
import pytest

from pragent.integrations.api import (
    ApiClient,
    ApiConnectionError,
    ApiError,
    RemoteThrottledError,
    parse_stream_line,
    raise_for_status,
    stream_path,
)
from pragent.models import (
    AgentEvent,
    Config,
    ErrorEvent,
    ExecuteRequest,
    ResultEvent,
    StatusEvent,
)
from pragent.utils.rate_limiter import RateLimitExceededError, is_throttling_error

from conftest import sse_body


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_client(transport, config=None, sleep=None):
    config = config or Config.model_validate({"api": {"base_url": "https://backend.test"}})
    return ApiClient(config, transport=transport, sleep=sleep or RecordingSleep())


class TestParseStreamLine:
    """Test event stream line decoding."""

    def test_data_line(self):
        event = parse_stream_line('data: {"type": "status", "phase": "sandbox", "message": "Starting"}')

        assert isinstance(event, StatusEvent)
        assert event.phase == "sandbox"

    def test_bare_json_line(self):
        event = parse_stream_line('{"type": "agent", "eventType": "tool_call", "tool": "Bash"}')

        assert isinstance(event, AgentEvent)
        assert event.event_type == "tool_call"

    def test_result_line(self):
        event = parse_stream_line(
            'data: {"type": "result", "result": {"success": true, "prUrl": "https://gh/pr/1"}}'
        )

        assert isinstance(event, ResultEvent)
        assert event.result.success is True
        assert event.result.pr_url == "https://gh/pr/1"

    def test_error_line(self):
        event = parse_stream_line('data: {"type": "error", "error": "sandbox crashed"}')
        assert isinstance(event, ErrorEvent)
        assert event.error == "sandbox crashed"

    @pytest.mark.parametrize("line", [
        "",
        "   ",
        ":heartbeat",
        ": keep-alive",
        "data: :heartbeat",
        "data:",
        "event: message",
        "id: 42",
        "retry: 1000",
        "data: {not json",
        'data: {"type": "mystery"}',
    ])
    def test_ignored_lines(self, line):
        assert parse_stream_line(line) is None


class TestRaiseForStatus:
    """Test error response translation."""

    def test_success_passes(self):
        raise_for_status(httpx.Response(200))

    def test_429_is_throttling(self):
        with pytest.raises(RemoteThrottledError) as exc_info:
            raise_for_status(httpx.Response(429))
        assert exc_info.value.status_code == 429

    def test_error_body_message(self):
        with pytest.raises(ApiError, match="repo not found"):
            raise_for_status(httpx.Response(404, json={"error": "repo not found"}))

    def test_plain_status_message(self):
        with pytest.raises(ApiError, match="HTTP 500"):
            raise_for_status(httpx.Response(500, text="oops"))


class TestExecute:
    """Test job dispatch."""

    @pytest.mark.anyio
    async def test_execute_sends_request(self, mock_transport_factory):
        transport = mock_transport_factory(
            lambda request: httpx.Response(200, json={"jobId": "j1", "streamUrl": stream_path("j1")})
        )
        config = Config.model_validate({
            "api": {"base_url": "https://backend.test", "github_token": "ghp_test"},
        })

        async with make_client(transport, config) as client:
            response = await client.execute(
                ExecuteRequest(repo="acme/widgets", task="Do it", branch="main")
            )

        assert response.job_id == "j1"
        assert response.stream_url == "/api/pr-agent/j1/stream"

        request = transport.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/pr-agent/execute"
        body = json.loads(request.content)
        assert body["repo"] == "acme/widgets"
        assert body["task"] == "Do it"
        assert body["branch"] == "main"
        assert body["githubToken"] == "ghp_test"
        assert len(body["clientFingerprint"]) == 16
        assert "metadata" not in body

    @pytest.mark.anyio
    async def test_execute_retries_on_429(self, mock_transport_factory, fast_config):
        responses = iter([
            httpx.Response(429),
            httpx.Response(429),
            httpx.Response(200, json={"jobId": "j2", "streamUrl": "/s"}),
        ])
        transport = mock_transport_factory(lambda request: next(responses))
        sleep = RecordingSleep()

        async with make_client(transport, fast_config, sleep) as client:
            response = await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))

        assert response.job_id == "j2"
        assert len(transport.requests) == 3
        assert sleep.delays == [0.01, 0.02]

    @pytest.mark.anyio
    async def test_execute_gives_up_after_retries(self, mock_transport_factory, fast_config):
        transport = mock_transport_factory(lambda request: httpx.Response(429))

        async with make_client(transport, fast_config) as client:
            with pytest.raises(RemoteThrottledError):
                await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))

        assert len(transport.requests) == 4

    @pytest.mark.anyio
    async def test_execute_other_errors_not_retried(self, mock_transport_factory, fast_config):
        transport = mock_transport_factory(
            lambda request: httpx.Response(400, json={"message": "task is required"})
        )

        async with make_client(transport, fast_config) as client:
            with pytest.raises(ApiError, match="task is required"):
                await client.execute(ExecuteRequest(repo="acme/widgets", task=""))

        assert len(transport.requests) == 1

    @pytest.mark.anyio
    async def test_hourly_limit(self, mock_transport_factory):
        transport = mock_transport_factory(
            lambda request: httpx.Response(200, json={"jobId": "j", "streamUrl": "/s"})
        )
        config = Config.model_validate({
            "api": {"base_url": "https://backend.test"},
            "rate_limits": {"api_requests_per_hour": 1},
        })

        async with make_client(transport, config) as client:
            await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))
            with pytest.raises(RateLimitExceededError, match="1 requests per hour"):
                await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))

            status = client.rate_limit_status()

        assert len(transport.requests) == 1
        assert status.enabled is True
        assert status.hour_remaining == 0
        assert status.minute_remaining == 59

    @pytest.mark.anyio
    async def test_rate_limiting_disabled(self, mock_transport_factory):
        transport = mock_transport_factory(
            lambda request: httpx.Response(200, json={"jobId": "j", "streamUrl": "/s"})
        )
        config = Config.model_validate({
            "api": {"base_url": "https://backend.test"},
            "rate_limits": {"enable_rate_limiting": False, "api_requests_per_hour": 1},
        })

        async with make_client(transport, config) as client:
            await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))
            await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))

            assert client.rate_limit_status().enabled is False

        assert len(transport.requests) == 2

    @pytest.mark.anyio
    async def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(httpx.MockTransport(refuse)) as client:
            with pytest.raises(ApiConnectionError, match="Cannot connect to API"):
                await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))

    @pytest.mark.anyio
    async def test_connection_error_with_429_in_url_not_retried(self):
        attempts = []

        def refuse(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        config = Config.model_validate({"api": {"base_url": "http://localhost:4290"}})
        sleep = RecordingSleep()

        async with make_client(httpx.MockTransport(refuse), config, sleep) as client:
            with pytest.raises(ApiConnectionError):
                await client.execute(ExecuteRequest(repo="acme/widgets", task="t"))

        assert len(attempts) == 1
        assert sleep.delays == []

    def test_client_errors_are_not_throttling(self):
        assert not is_throttling_error(ApiConnectionError("Cannot connect to API at http://localhost:4290"))
        assert not is_throttling_error(ApiError("Rate limit config invalid", status_code=400))
        assert is_throttling_error(RemoteThrottledError("slow down", status_code=429))


class TestJobs:
    """Test job lookups."""

    @pytest.mark.anyio
    async def test_get_job(self, mock_transport_factory):
        transport = mock_transport_factory(lambda request: httpx.Response(200, json={
            "job": {"id": "j1", "status": "completed", "repoFullName": "acme/widgets",
                    "prUrl": "https://gh/pr/3", "filesChanged": 4},
        }))

        async with make_client(transport) as client:
            job = await client.get_job("j1")

        assert transport.requests[0].url.path == "/api/pr-agent/j1"
        assert job.status == "completed"
        assert job.pr_url == "https://gh/pr/3"
        assert job.files_changed == 4

    @pytest.mark.anyio
    async def test_list_jobs_by_fingerprint(self, mock_transport_factory):
        transport = mock_transport_factory(lambda request: httpx.Response(200, json={
            "jobs": [{"id": "j1", "status": "running"}, {"id": "j2", "status": "failed"}],
        }))

        async with make_client(transport) as client:
            jobs = await client.list_jobs(status="running", limit=5)

        params = transport.requests[0].url.params
        assert params["fingerprint"] == client.fingerprint
        assert params["status"] == "running"
        assert params["limit"] == "5"
        assert [j.id for j in jobs] == ["j1", "j2"]

    @pytest.mark.anyio
    async def test_list_jobs_by_username(self, mock_transport_factory):
        transport = mock_transport_factory(lambda request: httpx.Response(200, json={"jobs": []}))
        config = Config.model_validate({
            "api": {"base_url": "https://backend.test", "github_username": "octocat"},
        })

        async with make_client(transport, config) as client:
            assert await client.list_jobs() == []

        params = transport.requests[0].url.params
        assert params["github_username"] == "octocat"
        assert "fingerprint" not in params


class TestJobStream:
    """Test event stream consumption."""

    @pytest.mark.anyio
    async def test_stream_yields_typed_events(self, mock_transport_factory):
        body = sse_body(
            ":heartbeat",
            'data: {"type": "status", "phase": "sandbox", "message": "Creating sandbox"}',
            "",
            "event: message",
            'data: {"type": "agent", "eventType": "tool_call", "tool": "Bash", "display": "ls"}',
            "data: not-json",
            'data: {"type": "result", "result": {"success": true}}',
        )
        transport = mock_transport_factory(
            lambda request: httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
        )

        async with make_client(transport) as client:
            stream = client.stream_job(stream_path("j1"))
            events = [event async for event in stream]

        assert [type(e) for e in events] == [StatusEvent, AgentEvent, ResultEvent]
        assert stream.closed
        request = transport.requests[0]
        assert str(request.url) == "https://backend.test/api/pr-agent/j1/stream"
        assert request.headers["accept"] == "text/event-stream"

    @pytest.mark.anyio
    async def test_stream_absolute_url(self, mock_transport_factory):
        transport = mock_transport_factory(lambda request: httpx.Response(200, content=b""))

        async with make_client(transport) as client:
            events = [e async for e in client.stream_job("https://events.test/jobs/j1")]

        assert events == []
        assert str(transport.requests[0].url) == "https://events.test/jobs/j1"

    @pytest.mark.anyio
    async def test_stream_error_status(self, mock_transport_factory):
        transport = mock_transport_factory(lambda request: httpx.Response(404, json={"error": "Job not found"}))

        async with make_client(transport) as client:
            with pytest.raises(ApiError, match="Job not found"):
                [e async for e in client.stream_job(stream_path("missing"))]

    @pytest.mark.anyio
    async def test_stream_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(httpx.MockTransport(refuse)) as client:
            with pytest.raises(ApiConnectionError):
                [e async for e in client.stream_job(stream_path("j1"))]

    @pytest.mark.anyio
    async def test_closed_stream_yields_nothing(self, mock_transport_factory):
        transport = mock_transport_factory(lambda request: httpx.Response(200, content=b""))

        async with make_client(transport) as client:
            stream = client.stream_job(stream_path("j1"))
            await stream.aclose()
            events = [e async for e in stream]

        assert events == []
        assert transport.requests == []
