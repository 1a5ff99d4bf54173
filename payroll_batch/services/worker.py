"""
JobWorker -- Polling consumer for the durable job queue.

Contract:
    Leases one job at a time, runs the registered handler with a heartbeat
    thread keeping the lease alive, and settles the job: COMPLETED when the
    handler returns, retry-with-backoff when it raises, FAILED (plus the
    exhaustion callback) when the last attempt raises.

Architecture: payroll_batch/services.  Each step (lease, heartbeat,
    complete, fail) runs in its own short transaction from the injected
    session factory; the handler manages its own transactions.

Invariants enforced:
    - At-least-once execution: a job whose worker dies is leased again
      after its lease expires.
    - All timestamps from the injected Clock.
    - Graceful shutdown: the stop signal is checked between jobs, never in
      the middle of a handler.
"""

from __future__ import annotations

import socket
import threading
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.exceptions import HandlerNotRegisteredError
from payroll_kernel.logging_config import LogContext, get_logger

from payroll_batch.domain.types import JobOutcome, JobRunResult, JobStatus, QueuedJob
from payroll_batch.services.queue import DEFAULT_QUEUE, JobQueue

logger = get_logger("batch.worker")

JobHandler = Callable[[QueuedJob], dict[str, Any] | None]
ExhaustedCallback = Callable[[QueuedJob, str], None]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


class _Heartbeat:
    """Background lease renewal for one job."""

    def __init__(self, worker: JobWorker, job: QueuedJob):
        self._worker = worker
        self._job = job
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"heartbeat-{job.job_key}",
            daemon=True,
        )

    def __enter__(self) -> _Heartbeat:
        self._thread.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self._stop.set()
        self._thread.join(timeout=self._worker.heartbeat_interval + 5)

    def _run(self) -> None:
        while not self._stop.wait(timeout=self._worker.heartbeat_interval):
            try:
                with session_scope(self._worker.session_factory) as session:
                    held = self._worker.queue_for(session).heartbeat(
                        self._job.job_id,
                        self._worker.worker_id,
                        self._worker.lease_seconds,
                    )
                if not held:
                    logger.warning(
                        "job_heartbeat_lease_lost",
                        extra={"job_key": self._job.job_key},
                    )
                    return
            except Exception:
                logger.exception(
                    "job_heartbeat_failed",
                    extra={"job_key": self._job.job_key},
                )


class JobWorker:
    """Queue consumer with one registered handler.

    Contract:
        - ``on_job(handler)`` registers the handler; it returns an optional
          JSON-serializable result or raises to request a retry.
        - ``on_exhausted(callback)`` is called once when a job fails on its
          final attempt.
        - ``run_once()`` / ``drain()`` process synchronously (tests, CLI).
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - No concurrency inside one worker; run more workers instead.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        queue_name: str = DEFAULT_QUEUE,
        worker_id: str | None = None,
        lease_seconds: float = 30.0,
        heartbeat_interval: float = 10.0,
        poll_interval: float = 1.0,
    ):
        if heartbeat_interval >= lease_seconds:
            raise ValueError("heartbeat_interval must be shorter than lease_seconds")
        self.session_factory = session_factory
        self._clock = clock or SystemClock()
        self._queue_name = queue_name
        self.worker_id = worker_id or default_worker_id()
        self.lease_seconds = lease_seconds
        self.heartbeat_interval = heartbeat_interval
        self._poll_interval = poll_interval
        self._handler: JobHandler | None = None
        self._exhausted: list[ExhaustedCallback] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def queue_for(self, session: Session) -> JobQueue:
        return JobQueue(session, self._clock, self._queue_name)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def on_job(self, handler: JobHandler) -> JobHandler:
        self._handler = handler
        return handler

    def on_exhausted(self, callback: ExhaustedCallback) -> ExhaustedCallback:
        self._exhausted.append(callback)
        return callback

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def run_once(self) -> JobRunResult | None:
        """Lease and process at most one job.  None when nothing is ready."""
        if self._handler is None:
            raise HandlerNotRegisteredError(self._queue_name)

        with session_scope(self.session_factory) as session:
            reaped = self.queue_for(session).reap_expired()
        for job in reaped:
            self._notify_exhausted(job, job.last_error or "lease expired")

        with session_scope(self.session_factory) as session:
            job = self.queue_for(session).lease_next(self.worker_id, self.lease_seconds)
        if job is None:
            return None

        with LogContext.bind(job_id=job.job_id, worker_id=self.worker_id):
            return self._process(job)

    def _process(self, job: QueuedJob) -> JobRunResult:
        try:
            with _Heartbeat(self, job):
                result = self._handler(job)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "job_handler_failed",
                extra={"job_key": job.job_key, "attempt": job.attempts_made},
                exc_info=True,
            )
            with session_scope(self.session_factory) as session:
                settled = self.queue_for(session).fail(job.job_id, self.worker_id, error)

            if settled.status == JobStatus.FAILED:
                self._notify_exhausted(settled, error)
                return JobRunResult(
                    job_id=job.job_id,
                    job_key=job.job_key,
                    outcome=JobOutcome.EXHAUSTED,
                    attempt=job.attempts_made,
                    error=error,
                )
            return JobRunResult(
                job_id=job.job_id,
                job_key=job.job_key,
                outcome=JobOutcome.RETRY_SCHEDULED,
                attempt=job.attempts_made,
                error=error,
                next_attempt_at=settled.available_at,
            )

        with session_scope(self.session_factory) as session:
            self.queue_for(session).complete(job.job_id, self.worker_id, result)
        logger.info(
            "job_completed",
            extra={"job_key": job.job_key, "attempt": job.attempts_made},
        )
        return JobRunResult(
            job_id=job.job_id,
            job_key=job.job_key,
            outcome=JobOutcome.COMPLETED,
            attempt=job.attempts_made,
            result=result,
        )

    def _notify_exhausted(self, job: QueuedJob, error: str) -> None:
        for callback in self._exhausted:
            try:
                callback(job, error)
            except Exception:
                logger.exception(
                    "job_exhausted_callback_failed",
                    extra={"job_key": job.job_key},
                )

    def drain(self, max_jobs: int | None = None) -> list[JobRunResult]:
        """Process ready jobs until none is ready (or ``max_jobs`` reached)."""
        results: list[JobRunResult] = []
        while max_jobs is None or len(results) < max_jobs:
            if self._stop_event.is_set():
                break
            result = self.run_once()
            if result is None:
                break
            results.append(result)
        return results

    # -------------------------------------------------------------------------
    # Background operation
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._handler is None:
            raise HandlerNotRegisteredError(self._queue_name)
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"job-worker-{self.worker_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "worker_started",
            extra={"worker_id": self.worker_id, "queue": self._queue_name},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current job to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("worker_stopped", extra={"worker_id": self.worker_id})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        """Poll in the calling thread until ``stop()`` is called."""
        self._stop_event.clear()
        self._run_loop()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                result = self.run_once()
            except Exception:
                logger.exception("worker_iteration_failed")
                result = None
            if result is None:
                self._stop_event.wait(timeout=self._poll_interval)
