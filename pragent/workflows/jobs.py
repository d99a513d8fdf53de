"""Machine-wide registry of background jobs."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..models import BackgroundJob, JobStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_RETENTION_DAYS = 7


def default_jobs_path() -> Path:
    """Registry file shared by every working directory."""
    return Path.home() / ".pr-agent" / "jobs.yaml"


class JobStore(ABC):
    """Storage backend of the job registry."""

    @abstractmethod
    def read(self) -> list[BackgroundJob]:
        """Load all entries."""

    @abstractmethod
    def write(self, jobs: list[BackgroundJob]) -> None:
        """Replace all entries."""


class MemoryJobStore(JobStore):
    """In-process store, used by tests and dry runs."""

    def __init__(self, jobs: list[BackgroundJob] | None = None):
        self._jobs = [job.model_copy() for job in jobs or []]

    def read(self) -> list[BackgroundJob]:
        return [job.model_copy() for job in self._jobs]

    def write(self, jobs: list[BackgroundJob]) -> None:
        self._jobs = [job.model_copy() for job in jobs]


class YamlJobStore(JobStore):
    """YAML file store. A missing or corrupt file reads as empty."""

    def __init__(self, path: Path | None = None):
        self.path = path or default_jobs_path()

    def read(self) -> list[BackgroundJob]:
        if not self.path.exists():
            return []

        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
            return [BackgroundJob.model_validate(item) for item in data.get("jobs", [])]
        except (OSError, yaml.YAMLError, ValidationError, AttributeError, TypeError) as e:
            logger.warning(f"Ignoring corrupt job registry {self.path}: {e}")
            return []

    def write(self, jobs: list[BackgroundJob]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"jobs": [job.model_dump(mode="json") for job in jobs]}
        with open(self.path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


class BackgroundJobRegistry:
    """
    Ledger of remote jobs started from this machine.

    The registry only helps find a job to reattach to; task status always
    comes from the session file.
    """

    def __init__(self, store: JobStore | None = None, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.store = store or YamlJobStore()
        self.retention_days = retention_days

    def register(
        self,
        job_id: str,
        session_id: str,
        stream_url: str | None = None,
        repo: str | None = None,
    ) -> BackgroundJob:
        """Record a newly dispatched job as running."""
        jobs = self.store.read()
        job = BackgroundJob(
            job_id=job_id,
            session_id=session_id,
            stream_url=stream_url,
            repo=repo,
        )
        jobs.append(job)
        self.store.write(jobs)
        logger.debug(f"Registered background job {job_id} for session {session_id}")
        return job

    def update(self, job_id: str, status: JobStatus) -> bool:
        """
        Set the status of a job.

        Returns:
            False if no job with that ID is registered
        """
        jobs = self.store.read()
        for job in jobs:
            if job.job_id == job_id:
                job.status = status
                if status in (JobStatus.COMPLETED, JobStatus.FAILED):
                    job.completed_at = datetime.now()
                self.store.write(jobs)
                logger.debug(f"Background job {job_id} -> {status.value}")
                return True
        return False

    def running(self) -> list[BackgroundJob]:
        """Jobs still marked running."""
        return [job for job in self.store.read() if job.status == JobStatus.RUNNING]

    def get(self, job_id: str) -> BackgroundJob | None:
        """Find a job by ID."""
        for job in self.store.read():
            if job.job_id == job_id:
                return job
        return None

    def latest_running(self, session_id: str | None = None) -> BackgroundJob | None:
        """Newest running job, optionally restricted to one session."""
        candidates = [
            job for job in self.running() if session_id is None or job.session_id == session_id
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda job: job.started_at)

    def cleanup(self, now: datetime | None = None) -> int:
        """
        Drop jobs started before the retention window.

        Returns:
            Number of entries removed
        """
        cutoff = (now or datetime.now()) - timedelta(days=self.retention_days)
        jobs = self.store.read()
        kept = [job for job in jobs if job.started_at > cutoff]
        removed = len(jobs) - len(kept)
        if removed:
            self.store.write(kept)
            logger.info(f"Removed {removed} background job(s) older than {self.retention_days} days")
        return removed

    def list(self) -> list[BackgroundJob]:
        """All registered jobs, oldest first."""
        return self.store.read()
