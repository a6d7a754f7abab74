"""
Defines the download job model and the manager that owns its persisted state.

A job's id is derived from its URL, so submitting the same URL twice maps to
the same record. The job's lifecycle state is not stored in the record: it is
the container the record currently lives in (see ``ytqueue.store``).
"""

import copy
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import JobExistsError, JobNotFoundError, ValidationError
from .store import JobStore, Record


class JobState(str, Enum):
    QUEUED = 'queued'
    ACTIVE = 'active'
    FINISHED = 'finished'
    FAILED = 'failed'


def job_id_for_url(url: str) -> str:
    """Returns the content-addressed id for a URL (surrounding whitespace ignored)."""
    if not isinstance(url, str):
        url = ''
    return hashlib.sha256(url.strip().encode('utf-8')).hexdigest()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_millis() -> int:
    return int(time.time() * 1000)


def _timestamp_key(value: Optional[str]) -> datetime:
    """Parses an ISO-8601 timestamp for ordering; unparseable values sort first."""
    if not value or not isinstance(value, str):
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    """
    Represents a single download request.

    Attributes:
        id: The SHA-256 of the trimmed URL.
        url: The URL provided by the user.
        title: The human-readable name, None until known.
        retry_count: How many times this job has failed.
        timestamp: ISO-8601 creation time.
        sort_order: FIFO ordering key, creation time in milliseconds by default.
        state: The lifecycle state.
        metadata: Free-form details (filesize estimate, duration, uploader, ...).
    """
    id: str
    url: str
    title: Optional[str] = None
    retry_count: int = 0
    timestamp: str = field(default_factory=_now_iso)
    sort_order: int = field(default_factory=_now_millis)
    state: JobState = JobState.QUEUED
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, url: str, *, title: Optional[str] = None, retry_count: int = 0,
            timestamp: Optional[str] = None, sort_order: Optional[int] = None,
            metadata: Optional[Dict[str, Any]] = None) -> 'Job':
        """Builds a queued job for ``url`` with its id derived from the URL."""
        url = url.strip() if isinstance(url, str) else url
        return cls(
            id=job_id_for_url(url),
            url=url,
            title=title,
            retry_count=retry_count,
            timestamp=timestamp or _now_iso(),
            sort_order=sort_order if sort_order is not None else _now_millis(),
            state=JobState.QUEUED,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def from_record(cls, record: Record, job_id: str, state: JobState) -> 'Job':
        """Rebuilds a job from its persisted record."""
        return cls(
            id=job_id,
            url=record.get('url'),
            title=record.get('title'),
            retry_count=record.get('retryCount') or 0,
            timestamp=record.get('timestamp') or _now_iso(),
            sort_order=record.get('sortOrder') if record.get('sortOrder') is not None else 0,
            state=JobState(state),
            metadata=dict(record.get('metadata') or {}),
        )

    def to_record(self) -> Record:
        """The persisted form. ``id`` and ``state`` are encoded by the store's key."""
        return {
            'url': self.url,
            'title': self.title,
            'retryCount': self.retry_count,
            'timestamp': self.timestamp,
            'sortOrder': self.sort_order,
            'metadata': self.metadata,
        }

    def to_dict(self) -> Dict[str, Any]:
        """The full view used by the JSON API."""
        return {'id': self.id, 'state': self.state.value, **self.to_record()}

    def validate(self) -> None:
        """
        Checks the job's invariants.

        Raises:
            ValidationError: If the URL is empty, the state unknown, the retry count negative,
                or the timestamp or sort order of the wrong type.
        """
        if not isinstance(self.url, str) or not self.url.strip():
            raise ValidationError("Job URL is required and must be a non-empty string")
        if not isinstance(self.state, JobState):
            raise ValidationError(f"Invalid job state: {self.state}")
        if not isinstance(self.retry_count, int) or self.retry_count < 0:
            raise ValidationError("Retry count cannot be negative")
        if not isinstance(self.timestamp, str):
            raise ValidationError("Timestamp must be an ISO-8601 string")
        if isinstance(self.sort_order, bool) or not isinstance(self.sort_order, (int, float)):
            raise ValidationError("Sort order must be a number")

    def with_state(self, state: JobState) -> 'Job':
        """Returns a copy of this job in ``state``."""
        return Job(
            id=self.id,
            url=self.url,
            title=self.title,
            retry_count=self.retry_count,
            timestamp=self.timestamp,
            sort_order=self.sort_order,
            state=JobState(state),
            metadata=copy.deepcopy(self.metadata),
        )

    def increment_retry(self) -> 'Job':
        self.retry_count += 1
        return self

    def update_title(self, title: Optional[str]) -> 'Job':
        self.title = title
        return self


def _coerce_state(state: Any) -> JobState:
    try:
        return JobState(state)
    except ValueError:
        raise ValidationError(f"Invalid job state: {state}") from None


class JobManager:
    """
    Owns the job store and every state transition.

    Other components only hold transient copies of jobs and must go through
    this class to change them. Methods that accept ``expected_state`` re-read
    the job right before writing and return None instead of writing when the
    job has moved on.
    """
    UPDATABLE_FIELDS = frozenset({'title', 'retry_count', 'metadata'})

    def __init__(self, store: JobStore, max_retries: int = 3):
        """
        Initializes the JobManager.

        Args:
            store: The backend holding the job records.
            max_retries: Failures after which a job moves to the failed state.
        """
        self.store = store
        self.max_retries = max_retries
        self.logger = logging.getLogger(__name__)

    async def _write(self, job: Job):
        job.validate()
        await self.store.write(job.state.value, job.id, job.to_record())

    async def _transition(self, current: Job, new_job: Job) -> Job:
        new_job.validate()
        await self.store.move(new_job.id, current.state.value, new_job.state.value, new_job.to_record())
        return new_job

    async def create_job(self, url: str, *, title: Optional[str] = None, retry_count: int = 0,
                         timestamp: Optional[str] = None, sort_order: Optional[int] = None,
                         metadata: Optional[Dict[str, Any]] = None) -> Job:
        """
        Creates and persists a queued job.

        Raises:
            ValidationError: If the URL is empty.
            JobExistsError: If a job for the same URL exists in any state.
        """
        job = Job.new(url, title=title, retry_count=retry_count, timestamp=timestamp,
                      sort_order=sort_order, metadata=metadata)
        job.validate()

        if await self.get_job(job.id):
            raise JobExistsError(job.id)

        await self._write(job)
        self.logger.info(f"Created job: {job.url} (id: {job.id})")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Looks the id up in every state, in lifecycle order. Returns None if absent."""
        for state in JobState:
            try:
                record = await self.store.read(state.value, job_id)
                if record is not None:
                    return Job.from_record(record, job_id, state)
            except (ValueError, TypeError, OSError) as e:
                self.logger.error(f"Error reading job {job_id} from {state.value}: {e}")
        return None

    async def get_jobs_by_state(self, state: JobState) -> List[Job]:
        """Returns the jobs in ``state`` ordered by sort order, then timestamp."""
        state = _coerce_state(state)
        try:
            entries = await self.store.list(state.value)
        except OSError as e:
            self.logger.error(f"Error reading {state.value} jobs: {e}")
            return []

        jobs = []
        for job_id, record in entries:
            try:
                job = Job.from_record(record, job_id, state)
                job.validate()
            except (ValidationError, TypeError, ValueError) as e:
                self.logger.error(f"Skipping malformed {state.value} job {job_id}: {e}")
                continue
            jobs.append(job)

        jobs.sort(key=lambda j: (j.sort_order, _timestamp_key(j.timestamp)))
        return jobs

    async def get_queued_jobs(self) -> List[Job]:
        return await self.get_jobs_by_state(JobState.QUEUED)

    async def get_active_jobs(self) -> List[Job]:
        return await self.get_jobs_by_state(JobState.ACTIVE)

    async def get_finished_jobs(self) -> List[Job]:
        return await self.get_jobs_by_state(JobState.FINISHED)

    async def get_failed_jobs(self) -> List[Job]:
        return await self.get_jobs_by_state(JobState.FAILED)

    async def move_job(self, job_id: str, new_state: JobState,
                       expected_state: Optional[JobState] = None) -> Optional[Job]:
        """
        Moves a job to ``new_state``.

        Returns the job unchanged when it is already there. With
        ``expected_state``, returns None (and writes nothing) when the job is
        missing or no longer in that state.

        Raises:
            ValidationError: If ``new_state`` is not a job state.
            JobNotFoundError: If the job does not exist and no ``expected_state`` was given.
        """
        new_state = _coerce_state(new_state)
        current = await self.get_job(job_id)
        if expected_state is not None:
            if current is None or current.state != _coerce_state(expected_state):
                self.logger.debug(f"Not moving job {job_id}: no longer {JobState(expected_state).value}")
                return None
        if current is None:
            raise JobNotFoundError(job_id)

        if current.state == new_state:
            return current

        moved = await self._transition(current, current.with_state(new_state))
        self.logger.info(f"Moved job {job_id} from {current.state.value} to {new_state.value}")
        return moved

    async def update_job(self, job_id: str, updates: Dict[str, Any],
                         expected_state: Optional[JobState] = None) -> Optional[Job]:
        """
        Applies a partial update. ``metadata`` is merged into the existing mapping.

        Raises:
            ValidationError: For unknown fields or an invalid result.
            JobNotFoundError: If the job does not exist and no ``expected_state`` was given.
        """
        unknown = set(updates) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update job field(s): {', '.join(sorted(unknown))}")

        current = await self.get_job(job_id)
        if expected_state is not None:
            if current is None or current.state != _coerce_state(expected_state):
                self.logger.debug(f"Not updating job {job_id}: no longer {JobState(expected_state).value}")
                return None
        if current is None:
            raise JobNotFoundError(job_id)

        if 'title' in updates:
            current.update_title(updates['title'])
        if 'retry_count' in updates:
            current.retry_count = updates['retry_count']
        if updates.get('metadata') is not None:
            current.metadata = {**current.metadata, **updates['metadata']}

        await self._write(current)
        self.logger.debug(f"Updated job {job_id}")
        return current

    async def delete_job(self, job_id: str) -> None:
        """
        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self.get_job(job_id)
        if job is None or not await self.store.delete(job.state.value, job_id):
            raise JobNotFoundError(job_id)
        self.logger.info(f"Deleted job {job_id}: {job.url}")

    async def handle_job_failure(self, job_id: str, error: Optional[BaseException] = None) -> Job:
        """
        Records a failed attempt.

        The retry count goes up by one. Below ``max_retries`` the job goes
        back to the queue; at the limit it moves to the failed state for good.

        Returns:
            The job in its new state.
        """
        current = await self.get_job(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        retry_count = current.retry_count + 1
        if retry_count >= self.max_retries:
            target = current.with_state(JobState.FAILED)
        else:
            target = current.with_state(JobState.QUEUED)
        target.retry_count = retry_count
        if error is not None:
            target.metadata['last_error'] = str(error)[:500]

        job = await self._transition(current, target)
        if job.state == JobState.FAILED:
            self.logger.warning(f"Max retries ({self.max_retries}) reached for job {job_id}, marking as failed")
        else:
            self.logger.info(f"Moved failed job {job_id} back to queue (retry {retry_count}/{self.max_retries})")
        return job

    async def retry_failed_job(self, job_id: str) -> Job:
        """
        Puts a failed job back in the queue with a fresh retry budget.

        Raises:
            JobNotFoundError: If the job does not exist.
            ValidationError: If the job is not in the failed state.
        """
        current = await self.get_job(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        if current.state != JobState.FAILED:
            raise ValidationError(f"Only failed jobs can be retried (job is {current.state.value})")

        target = current.with_state(JobState.QUEUED)
        target.retry_count = 0
        target.metadata.pop('last_error', None)
        job = await self._transition(current, target)
        self.logger.info(f"Requeued failed job {job_id}")
        return job

    async def cleanup_interrupted_jobs(self) -> int:
        """
        Treats every active job as interrupted by a previous crash.

        Returns:
            The number of jobs that went through the failure policy.
        """
        active_jobs = await self.get_active_jobs()
        count = 0
        for job in active_jobs:
            try:
                await self.handle_job_failure(job.id, RuntimeError('Job interrupted'))
                count += 1
            except (JobNotFoundError, ValidationError, OSError) as e:
                self.logger.error(f"Error recovering interrupted job {job.id}: {e}")
        self.logger.info(f"Cleaned up {count} interrupted job(s)")
        return count

    async def get_job_stats(self) -> Dict[str, int]:
        counts = {state.value: len(await self.get_jobs_by_state(state)) for state in JobState}
        counts['total'] = sum(counts.values())
        return counts
