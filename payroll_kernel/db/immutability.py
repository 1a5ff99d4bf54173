"""
ORM-level append-only enforcement for audit entries.

Audit entries are written once and never updated or deleted.  The
listeners below reject both operations with ImmutabilityViolationError
before any SQL is emitted.  Call ``register_immutability_listeners()``
once at application start (the orchestrator and the test suite do).
"""

from sqlalchemy import event

from payroll_kernel.exceptions import ImmutabilityViolationError
from payroll_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_immutability(mapper, connection, target):
    """Prevent any updates to AuditLogEntry records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditLogEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditLogEntry",
        entity_id=str(target.id),
        reason="Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent deletion of AuditLogEntry records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditLogEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditLogEntry",
        entity_id=str(target.id),
        reason="Audit entries cannot be deleted",
    )


def register_immutability_listeners() -> None:
    """Register the audit append-only listeners (idempotent)."""
    from payroll_kernel.models.audit_event import AuditLogEntry

    if not event.contains(AuditLogEntry, "before_update", _check_audit_entry_immutability):
        event.listen(AuditLogEntry, "before_update", _check_audit_entry_immutability)
    if not event.contains(AuditLogEntry, "before_delete", _check_audit_entry_delete):
        event.listen(AuditLogEntry, "before_delete", _check_audit_entry_delete)

