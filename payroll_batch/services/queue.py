"""
JobQueue -- Durable, database-backed job queue.

Contract:
    Submit (deduplicated by job key), lease (exclusive, time-bounded),
    heartbeat, complete, and fail-with-backoff for jobs in one named queue.

Architecture: payroll_batch/services.  Imports from payroll_batch.domain,
    payroll_batch.models, and the kernel.

Invariants enforced:
    - One live job per ``job_key``.  Re-submitting a WAITING/ACTIVE key is a
      no-op; re-submitting a COMPLETED/FAILED key resets it.
    - A lease is granted by one conditional UPDATE whose WHERE clause
      re-checks the leasable predicate, so exactly one of N concurrent
      workers wins a given job.
    - ``attempts_made`` is incremented with the lease, never on failure.
    - All timestamps from the injected Clock.

Failure modes:
    - IntegrityError on ``enqueue`` when two transactions insert the same
      new key at once.  Propagates to the caller.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.exceptions import JobNotFoundError
from payroll_kernel.logging_config import get_logger

from payroll_batch.domain.types import JobOptions, JobStatus, QueuedJob
from payroll_batch.models.job import QueuedJobModel

logger = get_logger("batch.queue")

DEFAULT_QUEUE = "payroll-runs"


class JobQueue:
    """Job queue bound to one session and one queue name.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries,
          which lets a service enqueue in the same transaction as its own
          state change.
        - Does NOT run handlers -- that is ``JobWorker``'s job.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        queue_name: str = DEFAULT_QUEUE,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._queue_name = queue_name

    @property
    def queue_name(self) -> str:
        return self._queue_name

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        job_key: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> QueuedJob:
        """Submit a job, or return the live job already holding ``job_key``."""
        options = options or JobOptions()
        now = self._clock.now()
        available_at = now + timedelta(milliseconds=options.delay_ms)

        existing = self._session.execute(
            select(QueuedJobModel)
            .where(QueuedJobModel.job_key == job_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if existing is not None and not JobStatus(existing.status).is_terminal:
            logger.info(
                "job_deduplicated",
                extra={"job_key": job_key, "status": existing.status},
            )
            return existing.to_dto()

        if existing is not None:
            previous = existing.status
            model = existing
            model.queue_name = self._queue_name
            model.completed_at = None
            model.result = None
            model.last_error = None
            model.lease_owner = None
            model.lease_expires_at = None
            model.attempts_made = 0
        else:
            previous = None
            model = QueuedJobModel(queue_name=self._queue_name, job_key=job_key)
            self._session.add(model)

        model.payload = dict(payload)
        model.status = JobStatus.WAITING.value
        model.max_attempts = options.attempts
        model.backoff_type = options.backoff.type.value
        model.backoff_delay_ms = options.backoff.delay_ms
        model.available_at = available_at
        self._session.flush()

        logger.info(
            "job_enqueued",
            extra={
                "job_key": job_key,
                "queue": self._queue_name,
                "max_attempts": options.attempts,
                "reset_from": previous,
            },
        )
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Lease
    # -------------------------------------------------------------------------

    def _leasable(self, now):
        return and_(
            QueuedJobModel.queue_name == self._queue_name,
            or_(
                and_(
                    QueuedJobModel.status == JobStatus.WAITING.value,
                    QueuedJobModel.available_at <= now,
                ),
                and_(
                    QueuedJobModel.status == JobStatus.ACTIVE.value,
                    QueuedJobModel.lease_expires_at < now,
                    QueuedJobModel.attempts_made < QueuedJobModel.max_attempts,
                ),
            ),
        )

    def lease_next(
        self,
        worker_id: str,
        lease_seconds: float = 30.0,
        candidates: int = 5,
    ) -> QueuedJob | None:
        """Lease the oldest ready job for ``worker_id``.

        Returns None when nothing is ready or every candidate was taken by
        another worker between the SELECT and the UPDATE.
        """
        now = self._clock.now()
        ids = self._session.execute(
            select(QueuedJobModel.id)
            .where(self._leasable(now))
            .order_by(QueuedJobModel.available_at, QueuedJobModel.created_at)
            .limit(candidates)
        ).scalars().all()

        for job_id in ids:
            result = self._session.execute(
                update(QueuedJobModel)
                .where(QueuedJobModel.id == job_id, self._leasable(now))
                .values(
                    status=JobStatus.ACTIVE.value,
                    lease_owner=worker_id,
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                    attempts_made=QueuedJobModel.attempts_made + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                job = self._load(job_id).to_dto()
                logger.info(
                    "job_leased",
                    extra={
                        "job_key": job.job_key,
                        "worker_id": worker_id,
                        "attempt": job.attempts_made,
                        "max_attempts": job.max_attempts,
                    },
                )
                return job

        return None

    def heartbeat(self, job_id: UUID, worker_id: str, lease_seconds: float = 30.0) -> bool:
        """Extend the lease.  False means the lease is no longer held."""
        result = self._session.execute(
            update(QueuedJobModel)
            .where(
                QueuedJobModel.id == job_id,
                QueuedJobModel.status == JobStatus.ACTIVE.value,
                QueuedJobModel.lease_owner == worker_id,
            )
            .values(
                lease_expires_at=self._clock.now() + timedelta(seconds=lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Settle
    # -------------------------------------------------------------------------

    def complete(
        self,
        job_id: UUID,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a leased job COMPLETED.  False if the lease was lost."""
        updated = self._session.execute(
            update(QueuedJobModel)
            .where(
                QueuedJobModel.id == job_id,
                QueuedJobModel.status == JobStatus.ACTIVE.value,
                QueuedJobModel.lease_owner == worker_id,
            )
            .values(
                status=JobStatus.COMPLETED.value,
                result=result,
                completed_at=self._clock.now(),
                lease_owner=None,
                lease_expires_at=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            logger.warning(
                "job_complete_lease_lost",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return False
        return True

    def fail(self, job_id: UUID, worker_id: str, error: str) -> QueuedJob:
        """Record a failed attempt.

        Schedules the next attempt with the job's backoff policy, or marks
        the job FAILED when ``attempts_made`` has reached ``max_attempts``.
        """
        model = self._session.execute(
            select(QueuedJobModel)
            .where(QueuedJobModel.id == job_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise JobNotFoundError(str(job_id))

        if model.status != JobStatus.ACTIVE.value or model.lease_owner != worker_id:
            logger.warning(
                "job_fail_lease_lost",
                extra={
                    "job_key": model.job_key,
                    "worker_id": worker_id,
                    "lease_owner": model.lease_owner,
                },
            )
            return model.to_dto()

        now = self._clock.now()
        model.last_error = error
        model.lease_owner = None
        model.lease_expires_at = None

        if model.attempts_made >= model.max_attempts:
            model.status = JobStatus.FAILED.value
            model.completed_at = now
            logger.error(
                "job_attempts_exhausted",
                extra={
                    "job_key": model.job_key,
                    "attempts_made": model.attempts_made,
                    "error": error,
                },
            )
        else:
            dto = model.to_dto()
            model.status = JobStatus.WAITING.value
            model.available_at = now + dto.backoff.delay_for(model.attempts_made)
            logger.warning(
                "job_retry_scheduled",
                extra={
                    "job_key": model.job_key,
                    "attempts_made": model.attempts_made,
                    "available_at": model.available_at.isoformat(),
                    "error": error,
                },
            )

        self._session.flush()
        return model.to_dto()

    def reap_expired(self) -> list[QueuedJob]:
        """Mark FAILED every ACTIVE job whose lease expired on its last attempt."""
        now = self._clock.now()
        models = self._session.execute(
            select(QueuedJobModel)
            .where(
                QueuedJobModel.queue_name == self._queue_name,
                QueuedJobModel.status == JobStatus.ACTIVE.value,
                QueuedJobModel.lease_expires_at < now,
                QueuedJobModel.attempts_made >= QueuedJobModel.max_attempts,
            )
            .with_for_update()
        ).scalars().all()

        reaped = []
        for model in models:
            model.status = JobStatus.FAILED.value
            model.completed_at = now
            model.last_error = f"lease held by {model.lease_owner} expired"
            model.lease_owner = None
            model.lease_expires_at = None
            reaped.append(model.to_dto())
            logger.error("job_lease_expired_exhausted", extra={"job_key": model.job_key})

        self._session.flush()
        return reaped

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def _load(self, job_id: UUID) -> QueuedJobModel:
        model = self._session.execute(
            select(QueuedJobModel)
            .where(QueuedJobModel.id == job_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise JobNotFoundError(str(job_id))
        return model

    def find(self, job_key: str) -> QueuedJob | None:
        model = self._session.execute(
            select(QueuedJobModel)
            .where(QueuedJobModel.job_key == job_key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def get(self, job_key: str) -> QueuedJob:
        """Return the job for ``job_key``.

        Raises:
            JobNotFoundError: If no job has that key.
        """
        job = self.find(job_key)
        if job is None:
            raise JobNotFoundError(job_key)
        return job

    def counts(self) -> dict[str, int]:
        """Number of jobs per status in this queue."""
        rows = self._session.execute(
            select(QueuedJobModel.status, func.count())
            .where(QueuedJobModel.queue_name == self._queue_name)
            .group_by(QueuedJobModel.status)
        ).all()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts
