"""
ORM model for the durable job queue.

Contract:
    QueuedJobModel persists one submitted job: its deduplication key,
    payload, attempt accounting, backoff parameters, and the lease held by
    the worker currently executing it.  ``to_dto()`` returns the frozen
    ``QueuedJob`` snapshot.

Architecture: payroll_batch/models. Imports from payroll_kernel.db.base only.

Invariants enforced:
    - ``job_key`` is UNIQUE: re-submitting a live key is a no-op.
    - ``attempts_made`` is incremented when a lease is granted, so a crash
      mid-handler still consumes an attempt.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from payroll_kernel.db.base import TrackedBase
from payroll_kernel.domain.values import as_utc

from payroll_batch.domain.types import (
    BackoffPolicy,
    BackoffType,
    JobStatus,
    QueuedJob,
)


class QueuedJobModel(TrackedBase):
    """Persistent queued job."""

    __tablename__ = "queue_jobs"

    __table_args__ = (
        Index("ix_queue_jobs_ready", "queue_name", "status", "available_at"),
        Index("ix_queue_jobs_lease", "status", "lease_expires_at"),
    )

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    job_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    backoff_type: Mapped[str] = mapped_column(
        String(20), default=BackoffType.EXPONENTIAL.value, nullable=False,
    )
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, default=2000, nullable=False)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    lease_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> QueuedJob:
        return QueuedJob(
            job_id=self.id,
            queue_name=self.queue_name,
            job_key=self.job_key,
            status=JobStatus(self.status),
            payload=self.payload or {},
            attempts_made=self.attempts_made,
            max_attempts=self.max_attempts,
            backoff=BackoffPolicy(
                type=BackoffType(self.backoff_type),
                delay_ms=self.backoff_delay_ms,
            ),
            available_at=as_utc(self.available_at),
            lease_owner=self.lease_owner,
            lease_expires_at=as_utc(self.lease_expires_at),
            last_error=self.last_error,
            result=self.result,
            completed_at=as_utc(self.completed_at),
        )

    def __repr__(self) -> str:
        return f"<QueuedJob {self.job_key} {self.status} {self.attempts_made}/{self.max_attempts}>"
