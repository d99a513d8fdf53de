"""HTTP client for the remote execution backend."""

import asyncio
import hashlib
import json
import math
import platform
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
from pydantic import ValidationError

from pragent.models import (
    Config,
    ExecuteRequest,
    ExecuteResponse,
    JobSummary,
    StreamEvent,
    parse_stream_event,
)
from pragent.utils.logger import get_logger
from pragent.utils.rate_limiter import (
    RateLimitedExecutor,
    RateLimitExceededError,
    RateLimiterManager,
    ServiceError,
    ThrottledError,
)

logger = get_logger(__name__)

T = TypeVar("T")

API_PREFIX = "/api/pr-agent"
MINUTE_LIMITER = "api-minute"
HOUR_LIMITER = "api-hour"
HEARTBEAT = ":heartbeat"


class ApiError(ServiceError):
    """Backend request error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteThrottledError(ApiError, ThrottledError):
    """Backend answered 429."""
    pass


class ApiConnectionError(ApiError):
    """Backend could not be reached or the connection dropped."""
    pass


@dataclass
class RateLimitStatus:
    """Remaining client-side request budget."""

    enabled: bool
    minute_remaining: Optional[int] = None
    hour_remaining: Optional[int] = None


def client_fingerprint() -> str:
    """Stable identifier of this machine and user, sent for backend throttling."""
    data = f"{platform.system()}-{platform.machine()}-{platform.python_version()}-{Path.home()}"
    return hashlib.sha256(data.encode()).hexdigest()[:16]


def stream_path(job_id: str) -> str:
    """Conventional event stream path of a job."""
    return f"{API_PREFIX}/{job_id}/stream"


def parse_stream_line(line: str) -> Optional[StreamEvent]:
    """Decode one line of the event stream.

    Returns:
        The typed event, or None for blank lines, comments, heartbeats,
        other SSE fields, malformed JSON and unknown event types
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None

    if line.startswith("data:"):
        line = line[len("data:"):].strip()
        if not line or line == HEARTBEAT:
            return None
    elif line.split(":", 1)[0] in ("event", "id", "retry"):
        return None

    try:
        data = json.loads(line)
    except ValueError:
        logger.debug(f"Skipping malformed stream line: {line[:200]}")
        return None

    try:
        return parse_stream_event(data)
    except ValidationError:
        logger.debug(f"Skipping unknown stream event: {line[:200]}")
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


def raise_for_status(response: httpx.Response) -> None:
    """Translate an error response into an ApiError.

    Raises:
        RemoteThrottledError: On 429
        ApiError: On any other non-2xx status
    """
    if response.is_success:
        return
    if response.status_code == 429:
        raise RemoteThrottledError(
            "429: Rate limited by server. Please wait and try again.", status_code=429
        )
    raise ApiError(_error_message(response), status_code=response.status_code)


class JobStream:
    """Async iterator over the typed events of one job.

    The connection opens on first iteration. ``aclose`` ends the iteration
    and closes the connection.
    """

    def __init__(self, client: httpx.AsyncClient, url: str, read_timeout: Optional[float] = None):
        self._client = client
        self.url = url
        self._read_timeout = read_timeout
        self._response: Optional[httpx.Response] = None
        self._closed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        if self._closed:
            return

        timeout = httpx.Timeout(self._client.timeout.connect, read=self._read_timeout)
        request = self._client.build_request(
            "GET", self.url, headers={"Accept": "text/event-stream"}, timeout=timeout
        )
        try:
            self._response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise ApiConnectionError(f"Cannot connect to event stream {self.url}: {e}")

        try:
            if not self._response.is_success:
                await self._response.aread()
                raise_for_status(self._response)

            async for line in self._response.aiter_lines():
                if self._closed:
                    break
                event = parse_stream_line(line)
                if event is not None:
                    yield event
        except httpx.TransportError as e:
            if not self._closed:
                raise ApiConnectionError(f"Event stream interrupted: {e}")
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the connection. Safe to call more than once."""
        self._closed = True
        if self._response is not None:
            response, self._response = self._response, None
            await response.aclose()

    @property
    def closed(self) -> bool:
        return self._closed


class ApiClient:
    """
    Client of the remote execution backend.

    Execute and list calls are admitted through two token buckets keyed by
    the client fingerprint: the hourly ceiling is checked first, then the
    per-minute bucket is consumed by the retrying executor, which also
    backs off when the backend answers 429.
    """

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limiters: Optional[RateLimiterManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize API client.

        Args:
            config: Application configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
            limiters: Shared limiter manager; a new one is created if omitted
            sleep: Backoff sleep function
            clock: Monotonic clock for the token buckets
        """
        self.config = config
        self.base_url = config.api.base_url
        self.fingerprint = client_fingerprint()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(config.api.timeout),
            transport=transport,
        )

        settings = config.rate_limits
        self.limiters = limiters or RateLimiterManager(clock=clock)
        if self.limiters.get(MINUTE_LIMITER) is None:
            self.limiters.register(MINUTE_LIMITER, settings.minute_limit())
        if self.limiters.get(HOUR_LIMITER) is None:
            self.limiters.register(HOUR_LIMITER, settings.hour_limit())
        self.executor = RateLimitedExecutor(
            self.limiters.get(MINUTE_LIMITER), settings.retry_config(), sleep=sleep
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def resolve_url(self, url: str) -> str:
        """Absolute URL for a backend path."""
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    async def _admit(self, fn: Callable[[], Awaitable[T]]) -> T:
        if not self.config.rate_limits.enable_rate_limiting:
            return await fn()

        hourly = self.limiters.consume(HOUR_LIMITER, self.fingerprint)
        if not hourly.allowed:
            per_hour = self.config.rate_limits.api_requests_per_hour
            raise RateLimitExceededError(
                f"Rate limit exceeded: {per_hour} requests per hour. "
                f"Retry after {math.ceil(hourly.retry_after or 0)} seconds.",
                retry_after=hourly.retry_after,
                attempts=1,
            )

        return await self.executor.execute(self.fingerprint, fn)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ApiConnectionError(
                f"Cannot connect to API at {self.base_url}. Is the backend running? ({e})"
            )
        raise_for_status(response)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise ApiError("Invalid JSON in API response", status_code=response.status_code)

    async def execute(self, request: ExecuteRequest) -> ExecuteResponse:
        """
        Start a remote job.

        Args:
            request: Repository, prompt and options

        Returns:
            Job handle and stream URL

        Raises:
            RateLimitExceededError: If the client-side budget is exhausted
            RemoteThrottledError: If the backend keeps answering 429
            ApiConnectionError: If the backend cannot be reached
            ApiError: On any other error response
        """
        body: Dict[str, Any] = request.model_dump(exclude_none=True)
        body["clientFingerprint"] = self.fingerprint
        if self.config.api.github_token:
            body["githubToken"] = self.config.api.github_token

        async def send() -> ExecuteResponse:
            response = await self._request("POST", f"{API_PREFIX}/execute", json=body)
            try:
                return ExecuteResponse.model_validate(self._json(response))
            except ValidationError as e:
                raise ApiError(f"Unexpected execute response: {e}", status_code=response.status_code)

        result = await self._admit(send)
        logger.info(f"Dispatched job {result.job_id} for {request.repo}")
        return result

    def stream_job(self, stream_url: str) -> JobStream:
        """Event stream of a job (path relative to the base URL, or absolute)."""
        return JobStream(self._client, self.resolve_url(stream_url), self.config.api.stream_timeout)

    async def get_job(self, job_id: str) -> JobSummary:
        """Fetch one job.

        Raises:
            ApiError: On error responses
        """
        response = await self._request("GET", f"{API_PREFIX}/{job_id}")
        data = self._json(response)
        try:
            return JobSummary.model_validate(data.get("job", data) if isinstance(data, dict) else data)
        except ValidationError as e:
            raise ApiError(f"Unexpected job response: {e}", status_code=response.status_code)

    async def list_jobs(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[JobSummary]:
        """List recent jobs of this user (GitHub username) or machine (fingerprint).

        Raises:
            RateLimitExceededError: If the client-side budget is exhausted
            ApiError: On error responses
        """
        params: Dict[str, Any] = {}
        if self.config.api.github_username:
            params["github_username"] = self.config.api.github_username
        else:
            params["fingerprint"] = self.fingerprint
        if status:
            params["status"] = status
        if limit:
            params["limit"] = limit

        async def send() -> List[JobSummary]:
            response = await self._request("GET", f"{API_PREFIX}/jobs", params=params)
            data = self._json(response)
            try:
                return [JobSummary.model_validate(item) for item in data.get("jobs", [])]
            except (ValidationError, AttributeError) as e:
                raise ApiError(f"Unexpected jobs response: {e}", status_code=response.status_code)

        return await self._admit(send)

    def rate_limit_status(self) -> RateLimitStatus:
        """Remaining request budget without consuming any."""
        if not self.config.rate_limits.enable_rate_limiting:
            return RateLimitStatus(enabled=False)
        return RateLimitStatus(
            enabled=True,
            minute_remaining=self.limiters.get_tokens(MINUTE_LIMITER, self.fingerprint),
            hour_remaining=self.limiters.get_tokens(HOUR_LIMITER, self.fingerprint),
        )
