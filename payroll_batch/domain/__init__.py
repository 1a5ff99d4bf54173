"""
payroll_batch.domain -- Pure types for the job runner.

ZERO I/O.  All types are frozen dataclasses.
"""

from payroll_batch.domain.types import (
    BackoffPolicy,
    BackoffType,
    JobOptions,
    JobOutcome,
    JobRunResult,
    JobStatus,
    QueuedJob,
)

__all__ = [
    "BackoffPolicy",
    "BackoffType",
    "JobOptions",
    "JobOutcome",
    "JobRunResult",
    "JobStatus",
    "QueuedJob",
]
