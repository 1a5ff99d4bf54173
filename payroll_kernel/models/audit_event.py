"""
Module: payroll_kernel.models.audit_event
Responsibility: ORM persistence for the append-only payroll audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit entries are append-only; UPDATE and DELETE are rejected by the
      ORM listeners in db/immutability.py.
    - ``seq`` is unique and increases with every append from one sink.

Audit relevance:
    AuditLogEntry IS the audit trail.  Run initiation, claim, every
    per-employee outcome (payslip, computation failure, payment result),
    and run completion/failure each produce one entry.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from payroll_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable payroll actions."""

    # Run lifecycle
    RUN_CREATED = "CREATE_RUN"
    RUN_ENQUEUED = "ENQUEUE_RUN"
    RUN_REOPENED = "REOPEN_RUN"
    RUN_CLAIMED = "CLAIM_RUN"
    RUN_ATTEMPT_FAILED = "PROCESS_RUN_ATTEMPT_FAILED"
    RUN_COMPLETED = "PROCESS_RUN"
    RUN_FAILED = "PROCESS_RUN_FAILED"

    # Per-employee outcomes
    PAYSLIP_CREATED = "CREATE_PAYSLIP"
    PAYSLIP_EXISTS = "PAYSLIP_EXISTS"
    EMPLOYEE_FAILED = "EMPLOYEE_FAILED"

    # Payment outcomes
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_SKIPPED = "PAYMENT_SKIPPED"


class AuditLogEntry(Base):
    """
    Append-only audit entry.

    Guarantees:
        - actor_id is None for system-initiated events (worker writes).
        - details is a JSON object of plain strings/numbers; monetary
          values are stored as decimal strings.
    """

    __tablename__ = "audit_log_entries"

    __table_args__ = (
        Index("idx_audit_entity", "entity", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    # Entity name (e.g., "PayrollRun", "Payslip", "Employee")
    entity: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)

    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AuditLogEntry {self.action} on {self.entity}:{self.entity_id}>"
