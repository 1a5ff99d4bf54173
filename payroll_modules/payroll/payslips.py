"""
PayslipGenerator -- Idempotent payslip creation.

Contract:
    ``generate()`` returns the payslip for (run, employee), creating it
    from a ``CompensationResult`` only when none exists.  The boolean in
    the return value says whether this call created it.

Invariants enforced:
    - At most one payslip per (run, employee).  The existence check skips
      creation; a concurrent insert that loses the UNIQUE race is treated
      as "existing".
    - ``transaction_ref`` is ``PR<yyyymm>-<employee>-<token>`` and unique.

Failure modes:
    - IntegrityError that is not a lost (run, employee) race propagates.

Non-goals:
    - Does NOT commit.  Must be called in a session holding no other
      pending work: a lost race rolls the session back before re-reading.
"""

from __future__ import annotations

import secrets
from typing import Callable

from sqlalchemy.exc import IntegrityError

from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.logging_config import get_logger
from payroll_modules.payroll.models import (
    AttendanceSummary,
    CompensationResult,
    Employee,
    PaymentMethod,
    PayrollRun,
    Payslip,
)
from payroll_modules.payroll.orm import PayslipModel
from payroll_modules.payroll.repository import PayrollRepository

logger = get_logger("modules.payroll.payslips")


def default_token() -> str:
    return secrets.token_hex(4).upper()


def payment_method_for(employee: Employee) -> PaymentMethod:
    if employee.mobile_money_number:
        return PaymentMethod.MOBILE_MONEY
    return PaymentMethod.BANK_TRANSFER


class PayslipGenerator:
    def __init__(
        self,
        repository: PayrollRepository,
        clock: Clock | None = None,
        token_factory: Callable[[], str] = default_token,
    ):
        self._repo = repository
        self._clock = clock or SystemClock()
        self._token_factory = token_factory

    def transaction_ref(self, run: PayrollRun, employee: Employee) -> str:
        return (
            f"PR{run.period.year:04d}{run.period.month:02d}"
            f"-{employee.id.hex[:8].upper()}-{self._token_factory()}"
        )

    def generate(
        self,
        run: PayrollRun,
        employee: Employee,
        compensation: CompensationResult,
        attendance: AttendanceSummary,
    ) -> tuple[Payslip, bool]:
        existing = self._repo.find_payslip(run.id, employee.id)
        if existing is not None:
            logger.info(
                "payslip_exists_skipped",
                extra={"run_id": str(run.id), "employee_id": str(employee.id)},
            )
            return existing, False

        model = PayslipModel(
            payroll_run_id=run.id,
            employee_id=employee.id,
            month=run.period.month,
            year=run.period.year,
            gross=compensation.gross,
            net=compensation.net,
            overtime_pay=compensation.overtime_pay,
            absence_deductions=compensation.absence_deductions,
            late_deductions=compensation.late_deductions,
            early_deductions=compensation.early_deductions,
            leave_deductions=compensation.leave_deductions,
            statutory_deductions=compensation.statutory_amount,
            structure_deductions=compensation.structure_deductions,
            attendance_days_worked=compensation.days_worked,
            payment_method=payment_method_for(employee).value,
            transaction_ref=self.transaction_ref(run, employee),
            generated_at=self._clock.now(),
        )

        try:
            payslip = self._repo.insert_payslip(model)
        except IntegrityError:
            self._repo.session.rollback()
            existing = self._repo.find_payslip(run.id, employee.id)
            if existing is None:
                raise
            logger.info(
                "payslip_insert_race_lost",
                extra={"run_id": str(run.id), "employee_id": str(employee.id)},
            )
            return existing, False

        logger.info(
            "payslip_created",
            extra={
                "run_id": str(run.id),
                "employee_id": str(employee.id),
                "payslip_id": str(payslip.id),
                "gross": str(payslip.gross),
                "net": str(payslip.net),
                "late_count": attendance.late_count,
                "early_count": attendance.early_count,
            },
        )
        return payslip, True
