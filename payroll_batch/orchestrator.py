"""
PayrollOrchestrator -- DI container for payroll run processing.

Contract:
    Wires the audit sink, payment provider, payment dispatcher, run
    processor, run service and job worker from one ``RuntimeSettings``.
    Single place where all payroll dependencies are composed.

Architecture: payroll_batch (top-level).  This is the canonical entry point
    for the CLI and for tests that exercise the full pipeline.  The run
    service reaches the queue only through ``_submit_run_job``.

Invariants enforced:
    - Clock injection (every service receives the same Clock).
    - Audit trail (one AuditorService shared by service, processor and
      dispatcher).
    - A job that exhausts its attempts marks its run FAILED.
    - A job never completes while its run is PROCESSING under another
      worker's claim; it is retried until that claim expires.
"""

from __future__ import annotations

from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from payroll_kernel.db.immutability import register_immutability_listeners
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.exceptions import TransientInfraError
from payroll_kernel.logging_config import get_logger
from payroll_kernel.services.auditor_service import (
    AuditorService,
    AuditSink,
    SqlAuditSink,
)
from payroll_modules.payroll.config import RuntimeSettings
from payroll_modules.payroll.models import EmployeeOutcome, PayrollRunStatus
from payroll_modules.payroll.payments import (
    PaymentDispatcher,
    PaymentProvider,
    build_payment_provider,
)
from payroll_modules.payroll.pipeline import PayrollRunProcessor
from payroll_modules.payroll.payslips import default_token
from payroll_modules.payroll.service import PayrollRunService

from payroll_batch.domain.types import (
    BackoffPolicy,
    BackoffType,
    JobOptions,
    JobRunResult,
    QueuedJob,
)
from payroll_batch.services.queue import JobQueue
from payroll_batch.services.worker import JobWorker

logger = get_logger("batch.orchestrator")


class PayrollOrchestrator:
    """DI container for the payroll system.

    Contract:
        - ``from_settings()`` builds the engine and a fully wired instance.
        - ``service`` is the caller-facing run service.
        - ``worker`` consumes run-processing jobs; ``process_pending()``
          drains it synchronously.

    Non-goals:
        - Does NOT start the worker automatically -- caller decides.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: RuntimeSettings | None = None,
        clock: Clock | None = None,
        provider: PaymentProvider | None = None,
        audit_sink: AuditSink | None = None,
        worker_id: str | None = None,
        token_factory: Callable[[], str] = default_token,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or RuntimeSettings()
        self._clock = clock or SystemClock()
        queue = self._settings.queue
        policy = self._settings.policy

        register_immutability_listeners()

        self._auditor = AuditorService(
            audit_sink or SqlAuditSink(session_factory), self._clock,
        )
        self._dispatcher = PaymentDispatcher(
            provider or build_payment_provider(self._settings.payment_provider),
            session_factory,
            self._auditor,
            self._clock,
            currency=policy.currency,
        )
        self._processor = PayrollRunProcessor(
            session_factory,
            self._auditor,
            self._dispatcher,
            policy=policy,
            clock=self._clock,
            claim_lease_seconds=queue.claim_lease_seconds,
            token_factory=token_factory,
        )
        self._service = PayrollRunService(
            session_factory,
            submit_job=self._submit_run_job,
            auditor=self._auditor,
            clock=self._clock,
        )
        self._job_options = JobOptions(
            attempts=queue.attempts,
            backoff=BackoffPolicy(
                type=BackoffType(queue.backoff_type),
                delay_ms=queue.backoff_delay_ms,
            ),
        )
        self._worker = JobWorker(
            session_factory,
            clock=self._clock,
            queue_name=queue.queue_name,
            worker_id=worker_id,
            lease_seconds=queue.lease_seconds,
            heartbeat_interval=queue.heartbeat_interval,
            poll_interval=queue.poll_interval,
        )
        self._worker.on_job(self._handle_run_job)
        self._worker.on_exhausted(self._on_run_job_exhausted)

        logger.info(
            "payroll_orchestrator_wired",
            extra={
                "queue": queue.queue_name,
                "provider": self._dispatcher.provider.name,
                "worker_id": self._worker.worker_id,
                "policy_version": policy.policy_version,
            },
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        clock: Clock | None = None,
        worker_id: str | None = None,
        create_schema: bool = False,
    ) -> PayrollOrchestrator:
        """Initialize the module engine for ``settings.database_url`` and wire everything.

        Args:
            settings: Loaded runtime settings.
            clock: Optional clock for deterministic testing.
            worker_id: Optional stable worker identity.
            create_schema: Create missing tables first (local / SQLite use).
        """
        engine = init_engine_from_url(settings.database_url)
        if create_schema:
            create_tables(engine)
        return cls(get_session_factory(), settings=settings, clock=clock, worker_id=worker_id)

    # -------------------------------------------------------------------------
    # Queue wiring
    # -------------------------------------------------------------------------

    def _submit_run_job(
        self, session: Session, job_key: str, payload: dict[str, Any],
    ) -> QueuedJob:
        queue = JobQueue(session, self._clock, self._settings.queue.queue_name)
        return queue.enqueue(job_key, payload, self._job_options)

    def _handle_run_job(self, job: QueuedJob) -> dict[str, Any]:
        run_id = UUID(job.payload["payroll_run_id"])
        result = self._processor.process(run_id, self._worker.worker_id)
        if result.skipped and result.status == PayrollRunStatus.PROCESSING:
            # Claimed by a worker that lost this job's lease: retry until the claim expires.
            raise TransientInfraError("run claim", result.reason or "run claimed elsewhere")
        return result.to_payload()

    def _on_run_job_exhausted(self, job: QueuedJob, error: str) -> None:
        run_id = UUID(job.payload["payroll_run_id"])
        self._processor.mark_failed_after_exhaustion(
            run_id, f"attempts exhausted: {error}",
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def process_pending(self, max_jobs: int | None = None) -> list[JobRunResult]:
        """Run every ready job in the calling thread."""
        return self._worker.drain(max_jobs)

    def retry_failed_payments(self, run_id: UUID) -> tuple[EmployeeOutcome, ...]:
        return self._processor.retry_failed_payments(run_id)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    @property
    def settings(self) -> RuntimeSettings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def auditor(self) -> AuditorService:
        return self._auditor

    @property
    def service(self) -> PayrollRunService:
        return self._service

    @property
    def processor(self) -> PayrollRunProcessor:
        return self._processor

    @property
    def dispatcher(self) -> PaymentDispatcher:
        return self._dispatcher

    @property
    def worker(self) -> JobWorker:
        return self._worker
