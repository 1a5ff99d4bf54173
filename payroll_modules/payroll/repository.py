"""
PayrollRepository -- Persistence access for payroll runs and their inputs.

Responsibility:
    Readers for employees, salary structures, statutory rates, and
    attendance; the run state machine as conditional UPDATEs; payslip
    insert/lookup/payment marking; aggregate totals.

Architecture position:
    Modules layer.  Used by ``PayrollRunService`` and the pipeline.  Never
    commits: the caller owns transaction boundaries.

Invariants enforced:
    - Every run status change is a single ``UPDATE ... WHERE id = :id AND
      status IN (...)``.  Success is ``rowcount == 1``; the ORM instance is
      never mutated for a status change, so concurrent writers cannot
      overwrite each other.
    - Claim predicate: QUEUED, or PROCESSING whose claim was released or
      whose lease expired.  Exactly one of N concurrent claims succeeds.
    - ``paid_at`` is set at most once per payslip.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.values import ZERO, PayPeriod, to_decimal
from payroll_kernel.exceptions import RunNotFoundError
from payroll_kernel.logging_config import get_logger
from payroll_modules.payroll.models import (
    AttendanceEntry,
    Employee,
    PaymentStatus,
    PayrollRun,
    PayrollRunStatus,
    Payslip,
    SalaryStructure,
    StatutoryRate,
)
from payroll_modules.payroll.orm import (
    AttendanceRecordModel,
    EmployeeModel,
    PaymentAttemptModel,
    PayrollRunModel,
    PayslipModel,
    SalaryStructureModel,
    StatutoryDeductionModel,
)

logger = get_logger("modules.payroll.repository")

_CLEARED_CLAIM = {"claimed_by": None, "claim_expires_at": None}


class PayrollRepository:
    """Session-scoped data access for payroll processing."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    @property
    def session(self) -> Session:
        return self._session

    # -------------------------------------------------------------------------
    # Runs: lookup
    # -------------------------------------------------------------------------

    def _run_model(self, run_id: UUID) -> PayrollRunModel | None:
        return self._session.execute(
            select(PayrollRunModel)
            .where(PayrollRunModel.id == run_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_run(self, run_id: UUID) -> PayrollRun | None:
        model = self._run_model(run_id)
        return model.to_dto() if model is not None else None

    def get_run(self, run_id: UUID) -> PayrollRun:
        """Raises RunNotFoundError if the run does not exist."""
        run = self.find_run(run_id)
        if run is None:
            raise RunNotFoundError(str(run_id))
        return run

    def find_run_by_period(self, period: PayPeriod) -> PayrollRun | None:
        model = self._session.execute(
            select(PayrollRunModel)
            .where(PayrollRunModel.period == period.code)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def insert_run(self, period: PayPeriod, actor_id: UUID | None = None) -> PayrollRun:
        """Insert a PENDING run.  IntegrityError if the period already has one."""
        model = PayrollRunModel(
            period=period.code,
            year=period.year,
            month=period.month,
            status=PayrollRunStatus.PENDING.value,
            run_at=self._clock.now(),
            attempt_count=0,
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def list_runs(self, skip: int = 0, take: int = 20) -> list[PayrollRun]:
        models = self._session.execute(
            select(PayrollRunModel)
            .order_by(PayrollRunModel.run_at.desc(), PayrollRunModel.period.desc())
            .offset(skip)
            .limit(take)
        ).scalars().all()
        return [m.to_dto() for m in models]

    # -------------------------------------------------------------------------
    # Runs: state machine
    # -------------------------------------------------------------------------

    def _transition(self, run_id: UUID, *conditions, **values: Any) -> bool:
        result = self._session.execute(
            update(PayrollRunModel)
            .where(PayrollRunModel.id == run_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_queued(self, run_id: UUID) -> bool:
        """PENDING -> QUEUED."""
        return self._transition(
            run_id,
            PayrollRunModel.status == PayrollRunStatus.PENDING.value,
            status=PayrollRunStatus.QUEUED.value,
        )

    def reopen_run(self, run_id: UUID) -> bool:
        """FAILED -> QUEUED (explicit reprocessing only)."""
        return self._transition(
            run_id,
            PayrollRunModel.status == PayrollRunStatus.FAILED.value,
            status=PayrollRunStatus.QUEUED.value,
            error_log=None,
            completed_at=None,
            **_CLEARED_CLAIM,
        )

    def claim_run(self, run_id: UUID, worker_id: str, lease_seconds: float) -> bool:
        """Atomically take exclusive ownership of a run.

        ``UPDATE payroll_runs SET status='PROCESSING', claimed_by=:worker,
        claim_expires_at=:now + lease WHERE id=:id AND (status='QUEUED' OR
        (status='PROCESSING' AND (claimed_by IS NULL OR claim_expires_at <
        :now)))``
        """
        now = self._clock.now()
        claimed = self._transition(
            run_id,
            or_(
                PayrollRunModel.status == PayrollRunStatus.QUEUED.value,
                and_(
                    PayrollRunModel.status == PayrollRunStatus.PROCESSING.value,
                    or_(
                        PayrollRunModel.claimed_by.is_(None),
                        PayrollRunModel.claim_expires_at < now,
                    ),
                ),
            ),
            status=PayrollRunStatus.PROCESSING.value,
            claimed_by=worker_id,
            claim_expires_at=now + timedelta(seconds=lease_seconds),
            attempt_count=PayrollRunModel.attempt_count + 1,
        )
        logger.info(
            "run_claim_attempted",
            extra={"run_id": str(run_id), "worker_id": worker_id, "claimed": claimed},
        )
        return claimed

    def renew_claim(self, run_id: UUID, worker_id: str, lease_seconds: float) -> bool:
        """Extend the claim lease.  False means the claim is no longer held."""
        return self._transition(
            run_id,
            PayrollRunModel.status == PayrollRunStatus.PROCESSING.value,
            PayrollRunModel.claimed_by == worker_id,
            claim_expires_at=self._clock.now() + timedelta(seconds=lease_seconds),
        )

    def release_claim(self, run_id: UUID, worker_id: str) -> bool:
        """Give up the claim so the next job attempt can reclaim immediately."""
        return self._transition(
            run_id,
            PayrollRunModel.status == PayrollRunStatus.PROCESSING.value,
            PayrollRunModel.claimed_by == worker_id,
            **_CLEARED_CLAIM,
        )

    def complete_run(self, run_id: UUID, worker_id: str) -> bool:
        """PROCESSING (held by ``worker_id``) -> COMPLETED."""
        return self._transition(
            run_id,
            PayrollRunModel.status == PayrollRunStatus.PROCESSING.value,
            PayrollRunModel.claimed_by == worker_id,
            status=PayrollRunStatus.COMPLETED.value,
            completed_at=self._clock.now(),
            error_log=None,
            **_CLEARED_CLAIM,
        )

    def fail_run(self, run_id: UUID, error: str, worker_id: str | None = None) -> bool:
        """QUEUED/PROCESSING -> FAILED.

        With ``worker_id`` the PROCESSING case requires that worker to hold
        the claim; without it (exhaustion callback) any QUEUED/PROCESSING
        run is failed.
        """
        conditions = [
            PayrollRunModel.status.in_(
                (PayrollRunStatus.QUEUED.value, PayrollRunStatus.PROCESSING.value)
            )
        ]
        if worker_id is not None:
            conditions.append(
                or_(
                    PayrollRunModel.status == PayrollRunStatus.QUEUED.value,
                    PayrollRunModel.claimed_by == worker_id,
                )
            )
        return self._transition(
            run_id,
            *conditions,
            status=PayrollRunStatus.FAILED.value,
            error_log=error,
            **_CLEARED_CLAIM,
        )

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def active_employees(self) -> list[Employee]:
        models = self._session.execute(
            select(EmployeeModel)
            .where(EmployeeModel.is_active == True)  # noqa: E712
            .order_by(EmployeeModel.employee_number)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def find_employee(self, employee_id: UUID) -> Employee | None:
        model = self._session.get(EmployeeModel, employee_id)
        return model.to_dto() if model is not None else None

    def salary_structure_for(self, employee_id: UUID, as_of: date) -> SalaryStructure | None:
        """Latest structure with ``effective_from <= as_of``."""
        model = self._session.execute(
            select(SalaryStructureModel)
            .where(
                SalaryStructureModel.employee_id == employee_id,
                SalaryStructureModel.effective_from <= as_of,
            )
            .order_by(SalaryStructureModel.effective_from.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def statutory_rates(self) -> list[StatutoryRate]:
        models = self._session.execute(
            select(StatutoryDeductionModel)
            .where(StatutoryDeductionModel.is_active == True)  # noqa: E712
            .order_by(StatutoryDeductionModel.name)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def attendance_for(self, employee_id: UUID, start: date, end: date) -> list[AttendanceEntry]:
        models = self._session.execute(
            select(AttendanceRecordModel)
            .where(
                AttendanceRecordModel.employee_id == employee_id,
                AttendanceRecordModel.work_date >= start,
                AttendanceRecordModel.work_date <= end,
            )
            .order_by(AttendanceRecordModel.work_date)
        ).unique().scalars().all()
        return [m.to_dto() for m in models]

    # -------------------------------------------------------------------------
    # Payslips
    # -------------------------------------------------------------------------

    def find_payslip(self, run_id: UUID, employee_id: UUID) -> Payslip | None:
        model = self._session.execute(
            select(PayslipModel).where(
                PayslipModel.payroll_run_id == run_id,
                PayslipModel.employee_id == employee_id,
            )
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def insert_payslip(self, model: PayslipModel) -> Payslip:
        """Insert a payslip.  IntegrityError if (run, employee) already has one."""
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def start_payment(self, payslip_id: UUID, payment_ref: str) -> bool:
        """Record that ``payment_ref`` is about to be sent.  False once paid.

        A reference already on file (a resend after an unrecorded outcome)
        is set back to PENDING rather than duplicated.
        """
        payslip = self._session.get(PayslipModel, payslip_id)
        if payslip is None or payslip.paid_at is not None:
            return False
        attempt = next(
            (a for a in payslip.payment_attempts if a.payment_ref == payment_ref), None,
        )
        if attempt is None:
            payslip.payment_attempts.append(
                PaymentAttemptModel(
                    attempt_no=len(payslip.payment_attempts) + 1,
                    payment_ref=payment_ref,
                    status=PaymentStatus.PENDING.value,
                    started_at=self._clock.now(),
                )
            )
        else:
            attempt.status = PaymentStatus.PENDING.value
            attempt.settled_at = None
        self._session.flush()
        return True

    def settle_payment(
        self,
        payslip_id: UUID,
        payment_ref: str,
        status: PaymentStatus,
        transaction_ref: str | None = None,
    ) -> bool:
        """Record the provider's answer for ``payment_ref``.

        SUCCESS also marks the payslip paid in the same transaction; the
        return value is then ``mark_paid``'s (False if already paid).
        """
        now = self._clock.now()
        self._session.execute(
            update(PaymentAttemptModel)
            .where(
                PaymentAttemptModel.payslip_id == payslip_id,
                PaymentAttemptModel.payment_ref == payment_ref,
            )
            .values(status=status.value, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        if status == PaymentStatus.SUCCESS:
            return self.mark_paid(payslip_id, now, transaction_ref=transaction_ref)
        return True

    def mark_paid(self, payslip_id: UUID, paid_at: datetime, transaction_ref: str | None = None) -> bool:
        values: dict[str, Any] = {"paid_at": paid_at}
        if transaction_ref is not None:
            values["transaction_ref"] = transaction_ref
        result = self._session.execute(
            update(PayslipModel)
            .where(PayslipModel.id == payslip_id, PayslipModel.paid_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_payslips(self, run_id: UUID) -> list[Payslip]:
        models = self._session.execute(
            select(PayslipModel)
            .where(PayslipModel.payroll_run_id == run_id)
            .order_by(PayslipModel.generated_at, PayslipModel.transaction_ref)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def unpaid_payslips(self, run_id: UUID) -> list[Payslip]:
        return [p for p in self.list_payslips(run_id) if p.paid_at is None]

    def list_payslips_for_employee(
        self, employee_id: UUID, skip: int = 0, take: int = 20,
    ) -> list[Payslip]:
        models = self._session.execute(
            select(PayslipModel)
            .where(PayslipModel.employee_id == employee_id)
            .order_by(PayslipModel.generated_at.desc())
            .offset(skip)
            .limit(take)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def run_totals(self, run_id: UUID) -> dict[str, Decimal | int]:
        """Count and sums over every payslip of the run."""
        count, gross, net, statutory, paid = self._session.execute(
            select(
                func.count(PayslipModel.id),
                func.sum(PayslipModel.gross),
                func.sum(PayslipModel.net),
                func.sum(PayslipModel.statutory_deductions),
                func.count(PayslipModel.paid_at),
            ).where(PayslipModel.payroll_run_id == run_id)
        ).one()
        return {
            "payslip_count": count or 0,
            "gross": to_decimal(gross) if gross is not None else ZERO,
            "net": to_decimal(net) if net is not None else ZERO,
            "statutory": to_decimal(statutory) if statutory is not None else ZERO,
            "paid_count": paid or 0,
        }
