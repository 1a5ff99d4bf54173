"""
Payroll Domain Models (``payroll_modules.payroll.models``).

Responsibility
--------------
Frozen dataclass value objects for the nouns of a payroll run: employees,
salary structures, statutory rates, attendance entries, runs, payslips,
payment requests/results, and the typed results returned to callers of
the run service and the pipeline.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Produced by the
repository (``to_dto()``) and by the calculators; consumed by the service,
the pipeline, and tests.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* All monetary fields use ``Decimal`` -- NEVER ``float``.

Audit relevance
---------------
* ``EmployeeOutcome`` is the typed record of what happened to each employee
  in a run; every outcome is also written to the audit trail.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from payroll_kernel.domain.values import ZERO, PayPeriod


class PayrollRunStatus(str, Enum):
    """Payroll run lifecycle states (forward-only)."""
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AttendanceStatus(str, Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    LATE = "LATE"
    ON_LEAVE = "ON_LEAVE"


class PaymentMethod(str, Enum):
    MOBILE_MONEY = "MOBILE_MONEY"
    BANK_TRANSFER = "BANK_TRANSFER"


class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    # Sent to the provider; outcome not yet recorded.
    PENDING = "PENDING"


class OutcomeKind(str, Enum):
    """What happened to one employee within a run."""
    PAID = "PAID"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_SKIPPED = "PAYMENT_SKIPPED"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    COMPUTATION_FAILED = "COMPUTATION_FAILED"


# ---------------------------------------------------------------------------
# Read-only collaborator data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Employee:
    id: UUID
    employee_number: str
    full_name: str
    is_active: bool = True
    mobile_money_number: str | None = None
    bank_account: str | None = None


@dataclass(frozen=True)
class SalaryStructure:
    """Compensation terms effective from a date."""
    id: UUID
    employee_id: UUID
    base_salary: Decimal
    effective_from: date
    allowances: Decimal = ZERO
    deductions: Decimal = ZERO

    @property
    def monthly_base(self) -> Decimal:
        """Base compensation that attendance and overtime rates derive from."""
        return self.base_salary + self.allowances


@dataclass(frozen=True)
class StatutoryRate:
    """A percentage withheld from gross pay."""
    name: str
    rate: Decimal


@dataclass(frozen=True)
class AttendanceEntry:
    """One attendance record.  ``leave_is_paid`` is None without a linked leave request."""
    employee_id: UUID
    date: date
    status: AttendanceStatus
    late_minutes: int = 0
    early_departure_minutes: int = 0
    overtime_minutes: int = 0
    overtime_approved: bool = False
    leave_is_paid: bool | None = None


# ---------------------------------------------------------------------------
# Runs and payslips
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PayrollRun:
    id: UUID
    period: PayPeriod
    status: PayrollRunStatus
    run_at: datetime | None = None
    completed_at: datetime | None = None
    error_log: str | None = None
    claimed_by: str | None = None
    claim_expires_at: datetime | None = None
    attempt_count: int = 0


@dataclass(frozen=True)
class Payslip:
    id: UUID
    payroll_run_id: UUID
    employee_id: UUID
    month: int
    year: int
    gross: Decimal
    net: Decimal
    overtime_pay: Decimal
    absence_deductions: Decimal
    late_deductions: Decimal
    early_deductions: Decimal
    leave_deductions: Decimal
    statutory_deductions: Decimal
    structure_deductions: Decimal
    attendance_days_worked: Decimal
    payment_method: PaymentMethod
    transaction_ref: str
    paid_at: datetime | None = None
    generated_at: datetime | None = None
    payment_status: PaymentStatus | None = None
    payment_ref: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None

    @property
    def payment_unsettled(self) -> bool:
        """Unpaid, and either never sent or sent without a recorded outcome."""
        return self.paid_at is None and self.payment_status in (None, PaymentStatus.PENDING)


# ---------------------------------------------------------------------------
# Computation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttendanceSummary:
    """Aggregated attendance for one employee over one window."""
    absence_days: Decimal = ZERO
    unpaid_leave_days: Decimal = ZERO
    late_count: int = 0
    early_count: int = 0
    late_deduction_days: Decimal = ZERO
    early_deduction_days: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    overtime_pay: Decimal = ZERO
    records_considered: int = 0

    @property
    def total_deduction_days(self) -> Decimal:
        return (
            self.absence_days
            + self.unpaid_leave_days
            + self.late_deduction_days
            + self.early_deduction_days
        )


@dataclass(frozen=True)
class CompensationResult:
    """Gross-to-net breakdown for one employee."""
    monthly_base: Decimal
    daily_rate: Decimal
    total_deduction_days: Decimal
    days_worked: Decimal
    gross: Decimal
    overtime_pay: Decimal
    absence_deductions: Decimal
    late_deductions: Decimal
    early_deductions: Decimal
    leave_deductions: Decimal
    statutory_rate: Decimal
    statutory_amount: Decimal
    structure_deductions: Decimal
    net: Decimal

    @property
    def is_negative_net(self) -> bool:
        return self.net < 0


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentRequest:
    method: PaymentMethod
    amount: Decimal
    currency: str
    transaction_ref: str
    employee_id: UUID
    mobile_money_number: str | None = None
    bank_account: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    status: PaymentStatus
    transaction_ref: str
    message: str | None = None


# ---------------------------------------------------------------------------
# Results returned to callers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of a processing request.  Ineligible runs are not an error."""
    enqueued: bool
    run_id: UUID
    status: PayrollRunStatus
    reason: str | None = None
    job_key: str | None = None


@dataclass(frozen=True)
class EmployeeOutcome:
    employee_id: UUID
    kind: OutcomeKind
    payslip_id: UUID | None = None
    payment_status: PaymentStatus | None = None
    error_code: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class RunProcessingResult:
    """Result of one pipeline attempt for one run."""
    run_id: UUID
    status: PayrollRunStatus | None
    skipped: bool = False
    reason: str | None = None
    payslip_count: int = 0
    total_gross: Decimal = ZERO
    total_net: Decimal = ZERO
    outcomes: tuple[EmployeeOutcome, ...] = field(default_factory=tuple)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    def to_payload(self) -> dict:
        """JSON-safe summary stored as the queue job result."""
        return {
            "run_id": str(self.run_id),
            "status": self.status.value if self.status else None,
            "skipped": self.skipped,
            "reason": self.reason,
            "payslip_count": self.payslip_count,
            "gross": str(self.total_gross),
            "net": str(self.total_net),
            "outcomes": {kind.value: self.count(kind) for kind in OutcomeKind},
        }


@dataclass(frozen=True)
class PayrollSummary:
    """Totals for one period's run."""
    period: PayPeriod
    run_id: UUID | None
    status: PayrollRunStatus | None
    payslip_count: int = 0
    total_gross: Decimal = ZERO
    total_net: Decimal = ZERO
    total_statutory: Decimal = ZERO
    paid_count: int = 0
    unpaid_count: int = 0
