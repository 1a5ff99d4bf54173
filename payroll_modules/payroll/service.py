"""
PayrollRunService -- Caller-facing operations on payroll runs.

Responsibility:
    Get-or-create a run for a period, request its processing, re-open a
    failed run, and answer status / summary / payslip / audit queries.

Architecture position:
    Modules layer.  Owns transaction boundaries: each public method runs in
    its own ``session_scope`` (commit on success, rollback + re-raise on
    failure).  The job queue is reached through the injected ``submit_job``
    callable so this module never imports the job runner.

Invariants enforced:
    - One run per period: get-or-create retries the lookup when its insert
      loses the UNIQUE(period) race.
    - ``request_processing`` only acts on PENDING runs.  The PENDING ->
      QUEUED transition and the job insert commit in one transaction.
    - Ineligible runs are reported as ``EnqueueResult(enqueued=False)``,
      never raised.
    - FAILED is terminal for automatic processing; only ``reprocess_run``
      re-opens it.

Failure modes:
    - InvalidPeriodError: period text is not ``YYYY-MM``.
    - RunNotFoundError: unknown run id.
    - RunNotReprocessableError: ``reprocess_run`` on a non-FAILED run.
"""

from __future__ import annotations

from typing import Any, Callable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.values import PayPeriod, quantize_money
from payroll_kernel.exceptions import RunNotReprocessableError
from payroll_kernel.logging_config import LogContext, get_logger
from payroll_kernel.services.auditor_service import (
    AuditorService,
    AuditRecord,
    SqlAuditSink,
)
from payroll_modules.payroll.models import (
    EnqueueResult,
    PayrollRun,
    PayrollRunStatus,
    PayrollSummary,
    Payslip,
)
from payroll_modules.payroll.repository import PayrollRepository

logger = get_logger("modules.payroll.service")

SubmitJob = Callable[[Session, str, dict[str, Any]], Any]


def job_key_for(run_id: UUID) -> str:
    """Deterministic queue key: one live job per run."""
    return f"process-run-{run_id}"


def job_payload_for(run_id: UUID) -> dict[str, Any]:
    return {"payroll_run_id": str(run_id)}


def _period(period: PayPeriod | str) -> PayPeriod:
    return period if isinstance(period, PayPeriod) else PayPeriod.parse(period)


class PayrollRunService:
    """
    Run lifecycle operations for API handlers, the CLI, and tests.

    Non-goals:
        - Does NOT process runs -- that is ``PayrollRunProcessor``'s job,
          driven by the job worker.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        submit_job: SubmitJob,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._submit_job = submit_job
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def _repo(self, session: Session) -> PayrollRepository:
        return PayrollRepository(session, self._clock)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def get_or_create_run(
        self, period: PayPeriod | str, actor_id: UUID | None = None,
    ) -> PayrollRun:
        """Return the run for ``period``, creating a PENDING one if needed."""
        pay_period = _period(period)

        with session_scope(self._session_factory) as session:
            existing = self._repo(session).find_run_by_period(pay_period)
        if existing is not None:
            return existing

        try:
            with session_scope(self._session_factory) as session:
                run = self._repo(session).insert_run(pay_period, actor_id)
        except IntegrityError:
            logger.info("run_create_race_lost", extra={"period": pay_period.code})
            with session_scope(self._session_factory) as session:
                existing = self._repo(session).find_run_by_period(pay_period)
            if existing is None:
                raise
            return existing

        logger.info(
            "payroll_run_created",
            extra={"run_id": str(run.id), "period": pay_period.code},
        )
        self._auditor.record_run_created(run.id, pay_period.code, actor_id)
        return run

    def request_processing(
        self, run_id: UUID, actor_id: UUID | None = None,
    ) -> EnqueueResult:
        """Move a PENDING run to QUEUED and submit its processing job."""
        with LogContext.bind(run_id=run_id):
            key = job_key_for(run_id)
            with session_scope(self._session_factory) as session:
                repo = self._repo(session)
                run = repo.get_run(run_id)
                if run.status != PayrollRunStatus.PENDING:
                    reason = f"run is not pending (status={run.status.value})"
                    logger.info("run_enqueue_skipped", extra={"reason": reason})
                    return EnqueueResult(
                        enqueued=False, run_id=run_id, status=run.status, reason=reason,
                    )

                if not repo.mark_queued(run_id):
                    current = repo.get_run(run_id).status
                    reason = f"run is not pending (status={current.value})"
                    logger.info("run_enqueue_race_lost", extra={"reason": reason})
                    return EnqueueResult(
                        enqueued=False, run_id=run_id, status=current, reason=reason,
                    )

                self._submit_job(session, key, job_payload_for(run_id))

            logger.info("run_enqueued", extra={"job_key": key})
            self._auditor.record_run_enqueued(run_id, key, actor_id)
            return EnqueueResult(
                enqueued=True,
                run_id=run_id,
                status=PayrollRunStatus.QUEUED,
                job_key=key,
            )

    def reprocess_run(self, run_id: UUID, actor_id: UUID | None = None) -> EnqueueResult:
        """Re-open a FAILED run (FAILED -> QUEUED) and re-submit its job.

        Payslips created by the failed attempt are kept; the payslip
        existence check skips them on the new attempt.
        """
        with LogContext.bind(run_id=run_id):
            key = job_key_for(run_id)
            with session_scope(self._session_factory) as session:
                repo = self._repo(session)
                run = repo.get_run(run_id)
                if run.status != PayrollRunStatus.FAILED or not repo.reopen_run(run_id):
                    current = repo.get_run(run_id).status
                    raise RunNotReprocessableError(str(run_id), current.value)
                self._submit_job(session, key, job_payload_for(run_id))

            logger.warning(
                "run_reopened",
                extra={"job_key": key, "previous_error": run.error_log},
            )
            self._auditor.record_run_reopened(run_id, run.error_log, actor_id)
            self._auditor.record_run_enqueued(run_id, key, actor_id)
            return EnqueueResult(
                enqueued=True,
                run_id=run_id,
                status=PayrollRunStatus.QUEUED,
                job_key=key,
            )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_run(self, run_id: UUID) -> PayrollRun:
        with session_scope(self._session_factory) as session:
            return self._repo(session).get_run(run_id)

    def find_run_by_period(self, period: PayPeriod | str) -> PayrollRun | None:
        with session_scope(self._session_factory) as session:
            return self._repo(session).find_run_by_period(_period(period))

    def list_runs(self, skip: int = 0, take: int = 20) -> list[PayrollRun]:
        with session_scope(self._session_factory) as session:
            return self._repo(session).list_runs(skip, take)

    def list_payslips(self, run_id: UUID) -> list[Payslip]:
        with session_scope(self._session_factory) as session:
            repo = self._repo(session)
            repo.get_run(run_id)
            return repo.list_payslips(run_id)

    def list_payslips_for_employee(
        self, employee_id: UUID, skip: int = 0, take: int = 20,
    ) -> list[Payslip]:
        with session_scope(self._session_factory) as session:
            return self._repo(session).list_payslips_for_employee(employee_id, skip, take)

    def payroll_summary(self, period: PayPeriod | str) -> PayrollSummary:
        """Count and totals for the period's run (zeros when no run exists)."""
        pay_period = _period(period)
        with session_scope(self._session_factory) as session:
            repo = self._repo(session)
            run = repo.find_run_by_period(pay_period)
            if run is None:
                return PayrollSummary(period=pay_period, run_id=None, status=None)
            totals = repo.run_totals(run.id)

        return PayrollSummary(
            period=pay_period,
            run_id=run.id,
            status=run.status,
            payslip_count=totals["payslip_count"],
            total_gross=quantize_money(totals["gross"]),
            total_net=quantize_money(totals["net"]),
            total_statutory=quantize_money(totals["statutory"]),
            paid_count=totals["paid_count"],
            unpaid_count=totals["payslip_count"] - totals["paid_count"],
        )

    def audit_trail(self, entity: str, entity_id: UUID | str) -> tuple[AuditRecord, ...]:
        return SqlAuditSink(self._session_factory).entries_for(entity, str(entity_id))
