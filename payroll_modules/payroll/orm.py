"""
Payroll ORM Persistence Models (``payroll_modules.payroll.orm``).

Responsibility:
    SQLAlchemy ORM models for employees, leave requests, attendance,
    salary structures, statutory deductions, payroll runs, payslips and
    payment attempts.
    Each model that crosses the module boundary provides ``to_dto()``
    returning the frozen dataclass from ``payroll_modules.payroll.models``.

Architecture position:
    **Modules layer** -- persistence companions to the pure DTO models.
    Inherits from ``TrackedBase`` (kernel DB base) which provides:
    id (UUID PK, auto-generated), created_at, updated_at, created_by_id.

Invariants enforced:
    - All monetary fields use Decimal (maps to Numeric(38,9)) -- NEVER float.
    - Enum fields stored as String(20) containing the enum .value string.
    - At most one run per period (uq_payroll_run_period).
    - At most one payslip per (run, employee) (uq_payslip_run_employee);
      this constraint is the idempotency boundary of run processing.
    - ``transaction_ref`` is unique across payslips; ``payment_ref`` is
      unique across payment attempts.

Audit relevance:
    Runs and payslips are the financial record of a pay period.  Every
    state change on a run and every payslip creation is mirrored by an
    AuditLogEntry.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_kernel.db.base import TrackedBase
from payroll_kernel.domain.values import PayPeriod, as_utc
from payroll_modules.payroll.models import (
    AttendanceEntry,
    AttendanceStatus,
    Employee,
    PaymentMethod,
    PaymentStatus,
    PayrollRun,
    PayrollRunStatus,
    Payslip,
    SalaryStructure,
    StatutoryRate,
)

# ---------------------------------------------------------------------------
# EmployeeModel
# ---------------------------------------------------------------------------

class EmployeeModel(TrackedBase):
    """
    ORM model for ``Employee`` -- read-only collaborator data for payroll.

    Guarantees:
        - ``employee_number`` is unique (uq_payroll_employee_number).
        - Only ``is_active`` employees are included in a run.
    """

    __tablename__ = "payroll_employees"

    employee_number: Mapped[str] = mapped_column(String(50), nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    mobile_money_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("employee_number", name="uq_payroll_employee_number"),
        Index("idx_payroll_employee_active", "is_active"),
    )

    def to_dto(self) -> Employee:
        return Employee(
            id=self.id,
            employee_number=self.employee_number,
            full_name=self.full_name,
            is_active=self.is_active,
            mobile_money_number=self.mobile_money_number,
            bank_account=self.bank_account,
        )

    def __repr__(self) -> str:
        return f"<EmployeeModel {self.employee_number}: {self.full_name}>"


# ---------------------------------------------------------------------------
# LeaveRequestModel
# ---------------------------------------------------------------------------

class LeaveRequestModel(TrackedBase):
    """Approved leave; ``is_paid`` decides whether linked ON_LEAVE days are deducted."""

    __tablename__ = "payroll_leave_requests"

    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    leave_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    __table_args__ = (
        Index("idx_payroll_leave_employee", "employee_id"),
    )


# ---------------------------------------------------------------------------
# AttendanceRecordModel
# ---------------------------------------------------------------------------

class AttendanceRecordModel(TrackedBase):
    """
    ORM model for one day of attendance.

    Guarantees:
        - One record per employee per day (uq_attendance_employee_date).
        - Minute counters are non-negative integers.
    """

    __tablename__ = "payroll_attendance_records"

    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    work_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    late_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    early_departure_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overtime_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overtime_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    leave_request_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_leave_requests.id"), nullable=True,
    )

    leave_request: Mapped[LeaveRequestModel | None] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("employee_id", "date", name="uq_attendance_employee_date"),
        Index("idx_attendance_employee_date", "employee_id", "date"),
    )

    def to_dto(self) -> AttendanceEntry:
        return AttendanceEntry(
            employee_id=self.employee_id,
            date=self.work_date,
            status=AttendanceStatus(self.status),
            late_minutes=self.late_minutes,
            early_departure_minutes=self.early_departure_minutes,
            overtime_minutes=self.overtime_minutes,
            overtime_approved=self.overtime_approved,
            leave_is_paid=(
                self.leave_request.is_paid if self.leave_request is not None else None
            ),
        )


# ---------------------------------------------------------------------------
# SalaryStructureModel / StatutoryDeductionModel
# ---------------------------------------------------------------------------

class SalaryStructureModel(TrackedBase):
    """Compensation terms; the latest ``effective_from`` on or before the run date applies."""

    __tablename__ = "payroll_salary_structures"

    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    base_salary: Mapped[Decimal] = mapped_column(nullable=False)
    allowances: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    deductions: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        Index("idx_salary_structure_employee_effective", "employee_id", "effective_from"),
    )

    def to_dto(self) -> SalaryStructure:
        return SalaryStructure(
            id=self.id,
            employee_id=self.employee_id,
            base_salary=self.base_salary,
            allowances=self.allowances,
            deductions=self.deductions,
            effective_from=self.effective_from,
        )


class StatutoryDeductionModel(TrackedBase):
    """A statutory withholding rate (percentage of gross)."""

    __tablename__ = "payroll_statutory_deductions"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    rate: Mapped[Decimal] = mapped_column(nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_dto(self) -> StatutoryRate:
        return StatutoryRate(name=self.name, rate=self.rate)


# ---------------------------------------------------------------------------
# PayrollRunModel
# ---------------------------------------------------------------------------

class PayrollRunModel(TrackedBase):
    """
    ORM model for a payroll run.

    Contract:
        Status moves forward only: PENDING -> QUEUED -> PROCESSING ->
        COMPLETED, with FAILED reachable from QUEUED/PROCESSING.  Every
        transition is a conditional UPDATE in ``PayrollRepository``; the
        ORM instance is never mutated for status changes.

    Guarantees:
        - ``period`` ("YYYY-MM") is unique (uq_payroll_run_period).
        - ``claimed_by`` / ``claim_expires_at`` describe the current claim
          lease while PROCESSING and are cleared otherwise.
    """

    __tablename__ = "payroll_runs"

    period: Mapped[str] = mapped_column(String(7), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("period", name="uq_payroll_run_period"),
        Index("idx_payroll_run_status", "status"),
    )

    def to_dto(self) -> PayrollRun:
        return PayrollRun(
            id=self.id,
            period=PayPeriod(self.year, self.month),
            status=PayrollRunStatus(self.status),
            run_at=as_utc(self.run_at),
            completed_at=as_utc(self.completed_at),
            error_log=self.error_log,
            claimed_by=self.claimed_by,
            claim_expires_at=as_utc(self.claim_expires_at),
            attempt_count=self.attempt_count,
        )

    def __repr__(self) -> str:
        return f"<PayrollRunModel {self.period} {self.status}>"


# ---------------------------------------------------------------------------
# PaymentAttemptModel
# ---------------------------------------------------------------------------

class PaymentAttemptModel(TrackedBase):
    """
    One send of a payslip's net pay to the payment provider.

    Guarantees:
        - ``payment_ref`` is unique; it is the reference the provider saw.
        - Inserted PENDING before the provider is called and settled
          (SUCCESS / FAILED / SKIPPED) afterwards.  A row still PENDING
          means the outcome was never recorded.
    """

    __tablename__ = "payroll_payment_attempts"

    payslip_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_payslips.id"), nullable=False,
    )
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("payslip_id", "attempt_no", name="uq_payment_attempt_no"),
    )

    def __repr__(self) -> str:
        return f"<PaymentAttemptModel {self.payment_ref} {self.status}>"


# ---------------------------------------------------------------------------
# PayslipModel
# ---------------------------------------------------------------------------

class PayslipModel(TrackedBase):
    """
    ORM model for one employee's payslip within one run.

    Guarantees:
        - Unique per (payroll_run_id, employee_id).
        - Written once by the payslip generator; afterwards only ``paid_at``
          (and ``transaction_ref`` when a retry reference is paid) changes,
          via the payment dispatcher.  Sends are recorded as
          ``PaymentAttemptModel`` rows.
    """

    __tablename__ = "payroll_payslips"

    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_runs.id"), nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employees.id"), nullable=False,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    gross: Mapped[Decimal] = mapped_column(nullable=False)
    net: Mapped[Decimal] = mapped_column(nullable=False)
    overtime_pay: Mapped[Decimal] = mapped_column(nullable=False)
    absence_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    late_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    early_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    leave_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    statutory_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    structure_deductions: Mapped[Decimal] = mapped_column(nullable=False)
    attendance_days_worked: Mapped[Decimal] = mapped_column(nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payment_attempts: Mapped[list[PaymentAttemptModel]] = relationship(
        order_by=PaymentAttemptModel.attempt_no, lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("payroll_run_id", "employee_id", name="uq_payslip_run_employee"),
        Index("idx_payslip_run", "payroll_run_id"),
    )

    def to_dto(self) -> Payslip:
        latest = self.payment_attempts[-1] if self.payment_attempts else None
        return Payslip(
            id=self.id,
            payroll_run_id=self.payroll_run_id,
            employee_id=self.employee_id,
            month=self.month,
            year=self.year,
            gross=self.gross,
            net=self.net,
            overtime_pay=self.overtime_pay,
            absence_deductions=self.absence_deductions,
            late_deductions=self.late_deductions,
            early_deductions=self.early_deductions,
            leave_deductions=self.leave_deductions,
            statutory_deductions=self.statutory_deductions,
            structure_deductions=self.structure_deductions,
            attendance_days_worked=self.attendance_days_worked,
            payment_method=PaymentMethod(self.payment_method),
            transaction_ref=self.transaction_ref,
            paid_at=as_utc(self.paid_at),
            generated_at=as_utc(self.generated_at),
            payment_status=PaymentStatus(latest.status) if latest else None,
            payment_ref=latest.payment_ref if latest else None,
        )

    def __repr__(self) -> str:
        return f"<PayslipModel run={self.payroll_run_id} employee={self.employee_id}>"
