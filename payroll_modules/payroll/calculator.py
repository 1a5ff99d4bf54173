"""
payroll_modules.payroll.calculator -- Gross-to-net compensation.

Responsibility:
    Compute one employee's gross pay, statutory withholding, and net pay
    from the salary structure, the attendance summary, the statutory rate
    table, and the payroll policy.

Architecture position:
    Modules -- pure calculation, zero I/O, no clock access.

Formulas:
    monthly_base         = base_salary + allowances
    daily_rate           = monthly_base / workdays_per_month
    total_deduction_days = absence + unpaid leave + late + early days
    days_worked          = max(0, workdays_per_month - total_deduction_days)
    gross                = days_worked / workdays_per_month * monthly_base
                           + overtime_pay
    statutory_amount     = gross * sum(rates) / 100
    net                  = gross - structure deductions - statutory_amount

Invariants enforced:
    - Decimal throughout; every monetary output quantized to 0.01
      (ROUND_HALF_UP).
    - Net is not floored.  A negative net is reported through
      ``CompensationResult.is_negative_net`` and logged.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from payroll_kernel.domain.values import ZERO, quantize_money
from payroll_kernel.logging_config import get_logger
from payroll_modules.payroll.config import PayrollPolicy
from payroll_modules.payroll.models import (
    AttendanceSummary,
    CompensationResult,
    SalaryStructure,
    StatutoryRate,
)

logger = get_logger("modules.payroll.calculator")

HUNDRED = Decimal("100")


def total_statutory_rate(rates: Iterable[StatutoryRate]) -> Decimal:
    return sum((r.rate for r in rates), ZERO)


def calculate_compensation(
    structure: SalaryStructure,
    attendance: AttendanceSummary,
    statutory_rates: Iterable[StatutoryRate],
    policy: PayrollPolicy,
) -> CompensationResult:
    workdays = Decimal(policy.workdays_per_month)
    monthly_base = structure.monthly_base
    daily_rate = monthly_base / workdays

    deduction_days = attendance.total_deduction_days
    days_worked = max(ZERO, workdays - deduction_days)

    gross = quantize_money(days_worked / workdays * monthly_base + attendance.overtime_pay)
    rate = total_statutory_rate(statutory_rates)
    statutory_amount = quantize_money(gross * rate / HUNDRED)
    structure_deductions = quantize_money(structure.deductions)
    net = gross - structure_deductions - statutory_amount

    result = CompensationResult(
        monthly_base=monthly_base,
        daily_rate=quantize_money(daily_rate),
        total_deduction_days=deduction_days,
        days_worked=days_worked,
        gross=gross,
        overtime_pay=attendance.overtime_pay,
        absence_deductions=quantize_money(attendance.absence_days * daily_rate),
        late_deductions=quantize_money(attendance.late_deduction_days * daily_rate),
        early_deductions=quantize_money(attendance.early_deduction_days * daily_rate),
        leave_deductions=quantize_money(attendance.unpaid_leave_days * daily_rate),
        statutory_rate=rate,
        statutory_amount=statutory_amount,
        structure_deductions=structure_deductions,
        net=net,
    )

    if result.is_negative_net:
        logger.warning(
            "compensation_negative_net",
            extra={
                "employee_id": str(structure.employee_id),
                "gross": str(gross),
                "net": str(net),
                "structure_deductions": str(structure_deductions),
                "statutory_amount": str(statutory_amount),
            },
        )

    return result
