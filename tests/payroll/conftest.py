"""Fixtures for payroll module tests: runs and payslips written directly."""

from decimal import Decimal

import pytest

from payroll_kernel.db.engine import session_scope
from payroll_modules.payroll.models import PaymentMethod, PaymentStatus
from payroll_modules.payroll.orm import PaymentAttemptModel, PayslipModel
from payroll_modules.payroll.repository import PayrollRepository

@pytest.fixture
def make_payslip(session_factory, clock, january_run):
    """Insert a payslip for ``employee_id`` in the January run.

    A ``payment_status`` adds one payment attempt in that status (SUCCESS
    also sets ``paid_at``); its ``payment_ref`` defaults to the payslip's
    own reference.
    """
    counter = iter(range(1, 10_000))

    def _make(
        employee_id, net="2850.00", gross="3000.00", ref=None,
        payment_status=None, payment_ref=None,
    ):
        ref = ref or f"PR202501-TEST-{next(counter):08X}"
        model = PayslipModel(
            payroll_run_id=january_run.id,
            employee_id=employee_id,
            month=1,
            year=2025,
            gross=Decimal(gross),
            net=Decimal(net),
            overtime_pay=Decimal("0"),
            absence_deductions=Decimal("0"),
            late_deductions=Decimal("0"),
            early_deductions=Decimal("0"),
            leave_deductions=Decimal("0"),
            statutory_deductions=Decimal(gross) - Decimal(net),
            structure_deductions=Decimal("0"),
            attendance_days_worked=Decimal("22"),
            payment_method=PaymentMethod.BANK_TRANSFER.value,
            transaction_ref=ref,
            generated_at=clock.now(),
            paid_at=clock.now() if payment_status == PaymentStatus.SUCCESS else None,
        )
        if payment_status is not None:
            settled = payment_status != PaymentStatus.PENDING
            model.payment_attempts.append(
                PaymentAttemptModel(
                    attempt_no=1,
                    payment_ref=payment_ref or ref,
                    status=payment_status.value,
                    started_at=clock.now(),
                    settled_at=clock.now() if settled else None,
                )
            )
        with session_scope(session_factory) as s:
            return PayrollRepository(s, clock).insert_payslip(model)

    return _make


@pytest.fixture
def find_employee(session_factory, clock):
    def _find(employee_id):
        with session_scope(session_factory) as s:
            return PayrollRepository(s, clock).find_employee(employee_id)

    return _find
