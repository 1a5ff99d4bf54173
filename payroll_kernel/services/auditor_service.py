"""
AuditorService -- append-only payroll audit trail.

Responsibility:
    Turns domain-specific recording requests (run created, run claimed,
    payslip created, payment outcome, run completed/failed) into
    ``AuditRecord`` values and appends them to an ``AuditSink``.

Architecture position:
    Kernel > Services.  Called by the run service, the payroll pipeline,
    and the payment dispatcher.  The sink is injected so tests can use a
    fake and production uses ``SqlAuditSink``.

Invariants enforced:
    - Append-only: records are never updated or deleted (ORM listeners on
      AuditLogEntry).
    - Fire-and-forget: a sink failure is logged with ``audit_append_failed``
      and NEVER propagates into the payroll run.

Audit relevance:
    This IS the audit recorder.  Every per-employee outcome, including
    computation failures that previously only reached a console warning,
    is written here so that reporting consumers can see it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.domain.values import as_utc
from payroll_kernel.logging_config import get_logger
from payroll_kernel.models.audit_event import AuditAction, AuditLogEntry
from payroll_kernel.services.sequence_service import SequenceService

logger = get_logger("services.auditor")


def _jsonable(value: Any) -> Any:
    """Convert Decimal/UUID/datetime/Enum values into JSON-safe primitives."""
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal | UUID):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class AuditRecord:
    """One audit trail entry as handed to a sink."""

    action: AuditAction
    entity: str
    entity_id: str
    occurred_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
    actor_id: UUID | None = None
    seq: int | None = None


@runtime_checkable
class AuditSink(Protocol):
    """Destination for audit records.  ``append`` may raise; the caller logs."""

    def append(self, record: AuditRecord) -> None: ...


class SqlAuditSink:
    """
    Audit sink backed by the ``audit_log_entries`` table.

    Each append runs in its own short transaction so an audit write never
    shares a transaction with the pipeline step that produced it.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def append(self, record: AuditRecord) -> None:
        with session_scope(self._session_factory) as session:
            seq = SequenceService(session).next_value(SequenceService.AUDIT_ENTRY)
            session.add(
                AuditLogEntry(
                    seq=seq,
                    actor_id=record.actor_id,
                    action=record.action.value,
                    entity=record.entity,
                    entity_id=record.entity_id,
                    details=record.details,
                    occurred_at=record.occurred_at,
                )
            )

    def entries_for(self, entity: str, entity_id: str) -> tuple[AuditRecord, ...]:
        """Return the trail for one entity in append order."""
        session = self._session_factory()
        try:
            rows = session.execute(
                select(AuditLogEntry)
                .where(
                    AuditLogEntry.entity == entity,
                    AuditLogEntry.entity_id == entity_id,
                )
                .order_by(AuditLogEntry.seq)
            ).scalars().all()
            return tuple(_to_record(row) for row in rows)
        finally:
            session.close()

    def entries_by_action(self, action: AuditAction) -> tuple[AuditRecord, ...]:
        session = self._session_factory()
        try:
            rows = session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.action == action.value)
                .order_by(AuditLogEntry.seq)
            ).scalars().all()
            return tuple(_to_record(row) for row in rows)
        finally:
            session.close()


def _to_record(row: AuditLogEntry) -> AuditRecord:
    return AuditRecord(
        action=AuditAction(row.action),
        entity=row.entity,
        entity_id=row.entity_id,
        occurred_at=as_utc(row.occurred_at),
        details=row.details or {},
        actor_id=row.actor_id,
        seq=row.seq,
    )


class AuditorService:
    """
    Domain-specific audit recording on top of an ``AuditSink``.

    Guarantees:
        - Every ``record_*`` method returns the ``AuditRecord`` it built,
          or None when the sink failed.
        - Sink exceptions are logged and swallowed.

    Non-goals:
        - Does NOT interpret audit records or drive any state transition.
    """

    def __init__(self, sink: AuditSink, clock: Clock | None = None):
        self._sink = sink
        self._clock = clock or SystemClock()

    @property
    def sink(self) -> AuditSink:
        return self._sink

    def _append(
        self,
        action: AuditAction,
        entity: str,
        entity_id: UUID | str,
        details: Mapping[str, Any] | None = None,
        actor_id: UUID | None = None,
    ) -> AuditRecord | None:
        record = AuditRecord(
            action=action,
            entity=entity,
            entity_id=str(entity_id),
            occurred_at=self._clock.now(),
            details=_jsonable(dict(details or {})),
            actor_id=actor_id,
        )
        try:
            self._sink.append(record)
        except Exception:
            logger.exception(
                "audit_append_failed",
                extra={
                    "action": action.value,
                    "entity": entity,
                    "entity_id": str(entity_id),
                },
            )
            return None

        logger.debug(
            "audit_entry_appended",
            extra={"action": action.value, "entity": entity, "entity_id": str(entity_id)},
        )
        return record

    # Run lifecycle

    def record_run_created(self, run_id: UUID, period: str, actor_id: UUID | None = None):
        return self._append(
            AuditAction.RUN_CREATED, "PayrollRun", run_id,
            {"period": period}, actor_id,
        )

    def record_run_enqueued(
        self, run_id: UUID, job_key: str, actor_id: UUID | None = None,
    ):
        return self._append(
            AuditAction.RUN_ENQUEUED, "PayrollRun", run_id,
            {"job_key": job_key}, actor_id,
        )

    def record_run_reopened(
        self, run_id: UUID, previous_error: str | None, actor_id: UUID | None = None,
    ):
        return self._append(
            AuditAction.RUN_REOPENED, "PayrollRun", run_id,
            {"previous_error": previous_error}, actor_id,
        )

    def record_run_claimed(self, run_id: UUID, worker_id: str, attempt: int):
        return self._append(
            AuditAction.RUN_CLAIMED, "PayrollRun", run_id,
            {"worker_id": worker_id, "attempt": attempt},
        )

    def record_run_attempt_failed(self, run_id: UUID, error: str):
        return self._append(
            AuditAction.RUN_ATTEMPT_FAILED, "PayrollRun", run_id, {"error": error},
        )

    def record_run_completed(
        self,
        run_id: UUID,
        totals: Mapping[str, Any],
        outcome_counts: Mapping[str, int],
    ):
        return self._append(
            AuditAction.RUN_COMPLETED, "PayrollRun", run_id,
            {**totals, "outcomes": dict(outcome_counts)},
        )

    def record_run_failed(self, run_id: UUID, error: str):
        return self._append(
            AuditAction.RUN_FAILED, "PayrollRun", run_id, {"error": error},
        )

    # Per-employee outcomes

    def record_payslip_created(
        self, payslip_id: UUID, run_id: UUID, employee_id: UUID, details: Mapping[str, Any],
    ):
        return self._append(
            AuditAction.PAYSLIP_CREATED, "Payslip", payslip_id,
            {"payroll_run_id": run_id, "employee_id": employee_id, **details},
        )

    def record_payslip_exists(self, payslip_id: UUID, run_id: UUID, employee_id: UUID):
        return self._append(
            AuditAction.PAYSLIP_EXISTS, "Payslip", payslip_id,
            {"payroll_run_id": run_id, "employee_id": employee_id},
        )

    def record_employee_failed(
        self, run_id: UUID, employee_id: UUID, error_code: str, error_message: str,
    ):
        return self._append(
            AuditAction.EMPLOYEE_FAILED, "Employee", employee_id,
            {
                "payroll_run_id": run_id,
                "error_code": error_code,
                "error_message": error_message,
            },
        )

    def record_payment_outcome(
        self,
        action: AuditAction,
        payslip_id: UUID,
        details: Mapping[str, Any],
        actor_id: UUID | None = None,
    ):
        return self._append(action, "Payslip", payslip_id, details, actor_id)
