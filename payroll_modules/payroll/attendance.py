"""
payroll_modules.payroll.attendance -- Attendance aggregation for one employee.

Responsibility:
    Reduce an employee's attendance records over a pay window to the
    deduction days and overtime pay that the compensation calculator
    consumes.

Architecture position:
    Modules -- pure calculation, zero I/O.  The repository loads the
    records; the pipeline passes them in.

Invariants enforced:
    - Identical inputs produce identical outputs; no clock access.
    - Thresholds and multipliers come from ``PayrollPolicy``.
    - Half-day penalties are whole multiples of 0.5 day:
      ``floor(count / threshold) * 0.5``.
    - Records outside [window_start, window_end] are ignored.

Failure modes:
    - InvalidAttendanceDataError for negative minute counters or a record
      that belongs to another employee.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from uuid import UUID

from payroll_kernel.domain.values import ZERO, quantize_money
from payroll_kernel.exceptions import InvalidAttendanceDataError
from payroll_kernel.logging_config import get_logger
from payroll_modules.payroll.config import PayrollPolicy
from payroll_modules.payroll.models import (
    AttendanceEntry,
    AttendanceStatus,
    AttendanceSummary,
)

logger = get_logger("modules.payroll.attendance")

HALF_DAY = Decimal("0.5")
MINUTES_PER_HOUR = Decimal("60")


def half_days(count: int, threshold: int) -> Decimal:
    """``floor(count / threshold) * 0.5``."""
    return Decimal(count // threshold) * HALF_DAY


def hourly_rate(monthly_base: Decimal, policy: PayrollPolicy) -> Decimal:
    return monthly_base / Decimal(policy.monthly_hours)


def _validate(entry: AttendanceEntry, employee_id: UUID) -> None:
    if entry.employee_id != employee_id:
        raise InvalidAttendanceDataError(
            str(employee_id), entry.date.isoformat(),
            f"record belongs to employee {entry.employee_id}",
        )
    for name in ("late_minutes", "early_departure_minutes", "overtime_minutes"):
        if getattr(entry, name) < 0:
            raise InvalidAttendanceDataError(
                str(employee_id), entry.date.isoformat(), f"{name} is negative",
            )


def aggregate_attendance(
    employee_id: UUID,
    entries: Iterable[AttendanceEntry],
    window_start: date,
    window_end: date,
    monthly_base: Decimal,
    policy: PayrollPolicy,
) -> AttendanceSummary:
    """Summarize attendance for ``employee_id`` within the window.

    late_count counts LATE records and any record with late minutes;
    early_count counts records with early-departure minutes.  ON_LEAVE
    records are unpaid only when linked to a leave request with
    ``is_paid`` false.  Overtime is paid only when approved.
    """
    rate = hourly_rate(monthly_base, policy)

    absences = 0
    unpaid_leave = 0
    late_count = 0
    early_count = 0
    considered = 0
    overtime_hours = ZERO
    overtime_pay = ZERO

    for entry in entries:
        if not window_start <= entry.date <= window_end:
            continue
        _validate(entry, employee_id)
        considered += 1

        if entry.status == AttendanceStatus.ABSENT:
            absences += 1
        elif entry.status == AttendanceStatus.ON_LEAVE and entry.leave_is_paid is False:
            unpaid_leave += 1

        if entry.status == AttendanceStatus.LATE or entry.late_minutes > 0:
            late_count += 1
        if entry.early_departure_minutes > 0:
            early_count += 1

        if entry.overtime_approved and entry.overtime_minutes > 0:
            hours = Decimal(entry.overtime_minutes) / MINUTES_PER_HOUR
            overtime_hours += hours
            overtime_pay += hours * rate * policy.overtime_multiplier(entry.date.weekday())

    summary = AttendanceSummary(
        absence_days=Decimal(absences) * policy.absence_deduction_days,
        unpaid_leave_days=Decimal(unpaid_leave),
        late_count=late_count,
        early_count=early_count,
        late_deduction_days=half_days(late_count, policy.late_count_for_half_day),
        early_deduction_days=half_days(early_count, policy.early_count_for_half_day),
        overtime_hours=overtime_hours,
        overtime_pay=quantize_money(overtime_pay),
        records_considered=considered,
    )

    logger.debug(
        "attendance_aggregated",
        extra={
            "employee_id": str(employee_id),
            "records": considered,
            "absence_days": str(summary.absence_days),
            "unpaid_leave_days": str(summary.unpaid_leave_days),
            "late_count": late_count,
            "early_count": early_count,
            "overtime_pay": str(summary.overtime_pay),
        },
    )
    return summary
