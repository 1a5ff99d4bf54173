"""
payroll_batch.domain.types -- Pure frozen dataclasses for the job runner.

ZERO I/O.  Frozen dataclasses with enum status fields, in the same shape
as the kernel value objects.

Invariants enforced:
    - ``job_key`` is the deduplication key: one live job per key.
    - ``attempts_made`` never exceeds ``max_attempts``.
    - Backoff delays are pure functions of the policy and the attempt count.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID


class JobStatus(str, Enum):
    """Queued job lifecycle status."""

    WAITING = "waiting"  # Ready (or scheduled) to be leased
    ACTIVE = "active"  # Leased by a worker
    COMPLETED = "completed"  # Handler returned normally
    FAILED = "failed"  # Attempts exhausted

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between attempts.

    Exponential backoff doubles the base delay for every attempt already
    made: 2000 ms, 4000 ms, 8000 ms ...
    """

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 2000

    def __post_init__(self):
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")

    def delay_for(self, attempts_made: int) -> timedelta:
        """Delay before the next attempt after ``attempts_made`` failures."""
        if attempts_made < 1:
            return timedelta(0)
        if self.type == BackoffType.FIXED:
            return timedelta(milliseconds=self.delay_ms)
        return timedelta(milliseconds=self.delay_ms * 2 ** (attempts_made - 1))


@dataclass(frozen=True)
class JobOptions:
    """Submission options for one job."""

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    delay_ms: int = 0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")


@dataclass(frozen=True)
class QueuedJob:
    """Immutable snapshot of a queued job."""

    job_id: UUID
    queue_name: str
    job_key: str
    status: JobStatus
    payload: dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    available_at: datetime | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    completed_at: datetime | None = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)


class JobOutcome(str, Enum):
    """What happened to a leased job after its handler ran."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class JobRunResult:
    """Result of processing one leased job (returned by ``JobWorker.run_once``)."""

    job_id: UUID
    job_key: str
    outcome: JobOutcome
    attempt: int
    error: str | None = None
    result: dict[str, Any] | None = None
    next_attempt_at: datetime | None = None
