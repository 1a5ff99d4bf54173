"""
PayrollRunProcessor -- Processing of one claimed payroll run.

Contract:
    ``process(run_id, worker_id)`` is the job handler body: claim the run,
    compute and pay every active employee, then mark the run COMPLETED.
    It returns a ``RunProcessingResult`` in every case except a transient
    infrastructure failure, which it raises so the job runner retries.

Architecture position:
    Modules layer.  Wired by ``payroll_batch.orchestrator``; called by the
    job worker.  Every step runs in its own short transaction:

        claim -> [per employee: compute + payslip | dispatch payment |
        renew claim] -> totals -> complete

    The payment provider is always called with no transaction open.

Invariants enforced:
    - Exclusive ownership: nothing is computed unless ``claim_run`` affected
      the row.  A failed claim returns ``skipped`` with the observed status.
    - Partial failure: a per-employee error becomes a typed
      ``EmployeeOutcome`` plus an EMPLOYEE_FAILED audit entry; the loop
      continues.  Payment failures never abort the run.
    - Idempotent retries: an existing payslip is never recreated, and a
      paid or FAILED/SKIPPED one is not sent again by a rerun.  One left
      unsent or PENDING by a crashed attempt is sent, a PENDING one with
      the reference it was sent with.
    - Transient errors (``TransientInfraError``, SQLAlchemy
      ``OperationalError`` / ``InterfaceError``) release the claim and
      propagate.  Any other run-level error marks the run FAILED.

Failure modes:
    - TransientInfraError: raised for the job runner to retry.
"""

from __future__ import annotations

from datetime import date
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.values import as_utc, quantize_money
from payroll_kernel.exceptions import (
    MissingSalaryStructureError,
    PerEmployeeComputationError,
    RunNotReprocessableError,
    TransientInfraError,
)
from payroll_kernel.logging_config import LogContext, get_logger
from payroll_kernel.services.auditor_service import AuditorService
from payroll_modules.payroll.attendance import aggregate_attendance
from payroll_modules.payroll.calculator import calculate_compensation
from payroll_modules.payroll.config import PayrollPolicy
from payroll_modules.payroll.models import (
    Employee,
    EmployeeOutcome,
    OutcomeKind,
    PaymentStatus,
    PayrollRun,
    PayrollRunStatus,
    Payslip,
    RunProcessingResult,
    StatutoryRate,
)
from payroll_modules.payroll.payments import PaymentDispatcher
from payroll_modules.payroll.payslips import PayslipGenerator, default_token
from payroll_modules.payroll.repository import PayrollRepository

logger = get_logger("modules.payroll.pipeline")

_TRANSIENT = (TransientInfraError, OperationalError, InterfaceError)

_PAYMENT_OUTCOMES = {
    PaymentStatus.SUCCESS: OutcomeKind.PAID,
    PaymentStatus.FAILED: OutcomeKind.PAYMENT_FAILED,
    PaymentStatus.SKIPPED: OutcomeKind.PAYMENT_SKIPPED,
}


def _as_transient(exc: Exception) -> TransientInfraError:
    if isinstance(exc, TransientInfraError):
        return exc
    return TransientInfraError("run processing", f"{type(exc).__name__}: {exc}")


def _error_text(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


class _ClaimLost(Exception):
    """The claim lease was taken over by another worker mid-run."""


class PayrollRunProcessor:
    """Claims and processes payroll runs.

    Non-goals:
        - No concurrency inside one run: employees are processed in order.
        - No mid-run cancellation.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        auditor: AuditorService,
        dispatcher: PaymentDispatcher,
        policy: PayrollPolicy | None = None,
        clock: Clock | None = None,
        claim_lease_seconds: float = 60.0,
        token_factory: Callable[[], str] = default_token,
    ):
        self._session_factory = session_factory
        self._auditor = auditor
        self._dispatcher = dispatcher
        self._policy = policy or PayrollPolicy()
        self._clock = clock or SystemClock()
        self._claim_lease_seconds = claim_lease_seconds
        self._token_factory = token_factory

    @property
    def policy(self) -> PayrollPolicy:
        return self._policy

    def _repo(self, session: Session) -> PayrollRepository:
        return PayrollRepository(session, self._clock)

    # -------------------------------------------------------------------------
    # Run processing
    # -------------------------------------------------------------------------

    def process(self, run_id: UUID, worker_id: str) -> RunProcessingResult:
        with LogContext.bind(run_id=run_id, worker_id=worker_id):
            with session_scope(self._session_factory) as session:
                repo = self._repo(session)
                claimed = repo.claim_run(run_id, worker_id, self._claim_lease_seconds)
                run = repo.find_run(run_id)

            if not claimed:
                status = run.status if run is not None else None
                reason = (
                    f"run not claimable (status={status.value})"
                    if status is not None
                    else "run not found"
                )
                logger.info("run_claim_skipped", extra={"reason": reason})
                return RunProcessingResult(
                    run_id=run_id, status=status, skipped=True, reason=reason,
                )

            self._auditor.record_run_claimed(run_id, worker_id, run.attempt_count)
            logger.info("run_claimed", extra={"attempt": run.attempt_count})

            outcomes: list[EmployeeOutcome] = []
            try:
                return self._run(run, worker_id, outcomes)
            except _ClaimLost:
                logger.warning("run_claim_lost", extra={"processed": len(outcomes)})
                return RunProcessingResult(
                    run_id=run_id,
                    status=PayrollRunStatus.PROCESSING,
                    skipped=True,
                    reason="claim lost to another worker",
                    outcomes=tuple(outcomes),
                )
            except _TRANSIENT as exc:
                transient = _as_transient(exc)
                self._release_after_transient(run_id, worker_id, transient)
                if transient is exc:
                    raise
                raise transient from exc
            except Exception as exc:
                return self._fail(run_id, worker_id, exc, outcomes)

    def _run(
        self, run: PayrollRun, worker_id: str, outcomes: list[EmployeeOutcome],
    ) -> RunProcessingResult:
        with session_scope(self._session_factory) as session:
            repo = self._repo(session)
            employees = repo.active_employees()
            rates = repo.statutory_rates()

        as_of = (as_utc(run.run_at) or self._clock.now()).date()
        logger.info(
            "run_processing_started",
            extra={
                "period": run.period.code,
                "employees": len(employees),
                "statutory_rates": len(rates),
                "as_of": as_of.isoformat(),
            },
        )

        for employee in employees:
            outcomes.append(self._process_employee(run, employee, rates, as_of))
            with session_scope(self._session_factory) as session:
                held = self._repo(session).renew_claim(
                    run.id, worker_id, self._claim_lease_seconds,
                )
            if not held:
                raise _ClaimLost()

        with session_scope(self._session_factory) as session:
            totals = self._repo(session).run_totals(run.id)
        gross = quantize_money(totals["gross"])
        net = quantize_money(totals["net"])

        with session_scope(self._session_factory) as session:
            completed = self._repo(session).complete_run(run.id, worker_id)
        if not completed:
            raise _ClaimLost()

        result = RunProcessingResult(
            run_id=run.id,
            status=PayrollRunStatus.COMPLETED,
            payslip_count=totals["payslip_count"],
            total_gross=gross,
            total_net=net,
            outcomes=tuple(outcomes),
        )
        counts = {kind.value: result.count(kind) for kind in OutcomeKind}
        self._auditor.record_run_completed(
            run.id,
            {
                "gross": gross,
                "net": net,
                "payslip_count": totals["payslip_count"],
                "paid_count": totals["paid_count"],
                "policy_version": self._policy.policy_version,
            },
            counts,
        )
        logger.info(
            "run_completed",
            extra={"gross": str(gross), "net": str(net), "outcomes": counts},
        )
        return result

    def _release_after_transient(
        self, run_id: UUID, worker_id: str, error: TransientInfraError,
    ) -> None:
        logger.warning(
            "run_attempt_transient_failure",
            extra={"error_code": error.code, "detail": error.detail},
        )
        try:
            with session_scope(self._session_factory) as session:
                self._repo(session).release_claim(run_id, worker_id)
        except Exception:
            # Claim lease expiry covers this case.
            logger.exception("run_claim_release_failed")
        self._auditor.record_run_attempt_failed(run_id, str(error))

    def _fail(
        self,
        run_id: UUID,
        worker_id: str,
        exc: Exception,
        outcomes: list[EmployeeOutcome],
    ) -> RunProcessingResult:
        error = _error_text(exc)
        logger.exception("run_processing_failed", extra={"error": error})
        try:
            with session_scope(self._session_factory) as session:
                self._repo(session).fail_run(run_id, error, worker_id)
        except _TRANSIENT as mark_exc:
            raise _as_transient(mark_exc) from exc

        self._auditor.record_run_failed(run_id, error)
        return RunProcessingResult(
            run_id=run_id,
            status=PayrollRunStatus.FAILED,
            reason=error,
            outcomes=tuple(outcomes),
        )

    def mark_failed_after_exhaustion(self, run_id: UUID, error: str) -> bool:
        """Exhaustion callback: the job ran out of attempts."""
        with LogContext.bind(run_id=run_id):
            with session_scope(self._session_factory) as session:
                failed = self._repo(session).fail_run(run_id, error)
            if failed:
                logger.error("run_failed_attempts_exhausted", extra={"error": error})
                self._auditor.record_run_failed(run_id, error)
            else:
                logger.info("run_exhaustion_ignored_terminal")
            return failed

    # -------------------------------------------------------------------------
    # Per employee
    # -------------------------------------------------------------------------

    def _process_employee(
        self,
        run: PayrollRun,
        employee: Employee,
        rates: list[StatutoryRate],
        as_of: date,
    ) -> EmployeeOutcome:
        with LogContext.bind(employee_id=employee.id):
            try:
                with session_scope(self._session_factory) as session:
                    repo = self._repo(session)
                    existing = repo.find_payslip(run.id, employee.id)
                    if existing is None:
                        structure = repo.salary_structure_for(employee.id, as_of)
                        if structure is None:
                            raise MissingSalaryStructureError(
                                str(employee.id), as_of.isoformat(),
                            )
                        entries = repo.attendance_for(
                            employee.id, run.period.start_date, run.period.end_date,
                        )
                        summary = aggregate_attendance(
                            employee.id,
                            entries,
                            run.period.start_date,
                            run.period.end_date,
                            structure.monthly_base,
                            self._policy,
                        )
                        compensation = calculate_compensation(
                            structure, summary, rates, self._policy,
                        )
                        generator = PayslipGenerator(repo, self._clock, self._token_factory)
                        payslip, created = generator.generate(
                            run, employee, compensation, summary,
                        )
                        if not created:
                            existing = payslip
            except _TRANSIENT:
                raise
            except PerEmployeeComputationError as exc:
                return self._employee_failed(run, employee, exc.code, exc.reason)
            except Exception as exc:
                logger.exception("employee_processing_error")
                code = getattr(exc, "code", type(exc).__name__)
                return self._employee_failed(run, employee, code, _error_text(exc))

            if existing is not None:
                self._auditor.record_payslip_exists(existing.id, run.id, employee.id)
                if not existing.payment_unsettled:
                    return EmployeeOutcome(
                        employee_id=employee.id,
                        kind=OutcomeKind.ALREADY_EXISTS,
                        payslip_id=existing.id,
                        payment_status=existing.payment_status,
                        message="payslip already exists; payment not re-dispatched",
                    )
                # A previous attempt stopped before the payment outcome was recorded.
                logger.info(
                    "payslip_payment_resumed",
                    extra={
                        "payslip_id": str(existing.id),
                        "payment_status": (
                            existing.payment_status.value if existing.payment_status else None
                        ),
                    },
                )
                return self._pay(
                    existing, employee, self._dispatcher.resend_ref(existing),
                )

            self._auditor.record_payslip_created(
                payslip.id,
                run.id,
                employee.id,
                {
                    "gross": payslip.gross,
                    "net": payslip.net,
                    "overtime_pay": payslip.overtime_pay,
                    "statutory_deductions": payslip.statutory_deductions,
                    "structure_deductions": payslip.structure_deductions,
                    "days_worked": payslip.attendance_days_worked,
                    "late_count": summary.late_count,
                    "early_count": summary.early_count,
                    "is_negative_net": compensation.is_negative_net,
                    "policy_version": self._policy.policy_version,
                },
            )

            return self._pay(payslip, employee)

    def _pay(
        self, payslip: Payslip, employee: Employee, transaction_ref: str | None = None,
    ) -> EmployeeOutcome:
        payment = self._dispatcher.dispatch(payslip, employee, transaction_ref=transaction_ref)
        return EmployeeOutcome(
            employee_id=employee.id,
            kind=_PAYMENT_OUTCOMES[payment.status],
            payslip_id=payslip.id,
            payment_status=payment.status,
            message=payment.message,
        )

    def _employee_failed(
        self, run: PayrollRun, employee: Employee, code: str, message: str,
    ) -> EmployeeOutcome:
        logger.warning(
            "employee_computation_failed",
            extra={"error_code": code, "error": message},
        )
        self._auditor.record_employee_failed(run.id, employee.id, code, message)
        return EmployeeOutcome(
            employee_id=employee.id,
            kind=OutcomeKind.COMPUTATION_FAILED,
            error_code=code,
            message=message,
        )

    # -------------------------------------------------------------------------
    # Explicit payment retry
    # -------------------------------------------------------------------------

    def retry_failed_payments(self, run_id: UUID) -> tuple[EmployeeOutcome, ...]:
        """Re-dispatch every unpaid payslip of a COMPLETED run.

        A FAILED or SKIPPED payslip gets a fresh transaction reference; a
        PENDING one is resent with the reference already sent.  The
        payslip's stored reference is replaced only when a payment succeeds.

        Raises:
            RunNotFoundError: Unknown run.
            RunNotReprocessableError: Run is not COMPLETED.
        """
        with LogContext.bind(run_id=run_id):
            with session_scope(self._session_factory) as session:
                repo = self._repo(session)
                run = repo.get_run(run_id)
                if run.status != PayrollRunStatus.COMPLETED:
                    raise RunNotReprocessableError(str(run_id), run.status.value)
                pending = [
                    (payslip, repo.find_employee(payslip.employee_id))
                    for payslip in repo.unpaid_payslips(run_id)
                ]

            outcomes = []
            for payslip, employee in pending:
                if employee is None:
                    logger.warning(
                        "payment_retry_employee_missing",
                        extra={"payslip_id": str(payslip.id)},
                    )
                    continue
                outcomes.append(
                    self._pay(payslip, employee, self._dispatcher.resend_ref(payslip))
                )

            logger.info(
                "payment_retry_finished",
                extra={
                    "attempted": len(outcomes),
                    "paid": sum(1 for o in outcomes if o.kind == OutcomeKind.PAID),
                },
            )
            return tuple(outcomes)
