"""Kernel ORM models."""

from payroll_kernel.models.audit_event import AuditAction, AuditLogEntry

__all__ = ["AuditAction", "AuditLogEntry"]
